import pytest

from permitflow.auth.principal import MunicipalRole
from permitflow.core.errors import AuthorizationError, StateError
from permitflow.models.permit import DepartmentReview, Permit, PermitStatus, ReviewAction, ReviewStatus
from permitflow.models.permit_comment import CommentVisibility, PermitComment
from permitflow.services.review_service import aggregate_reviews, apply_review_update, review_service

from factories import (
    applicant_principal,
    create_permit,
    create_permit_type,
    municipal_principal,
)


def reviews(*statuses, required=True):
    return [
        DepartmentReview(department=f"dept-{i}", required=required, status=status)
        for i, status in enumerate(statuses)
    ]


class TestAggregation:
    """Permit decision implied by department reviews"""

    def test_all_required_approved(self):
        assert aggregate_reviews(reviews(
            ReviewStatus.APPROVED, ReviewStatus.CONDITIONALLY_APPROVED, ReviewStatus.APPROVED
        )) == PermitStatus.APPROVED

    def test_any_rejection_denies(self):
        assert aggregate_reviews(reviews(
            ReviewStatus.APPROVED, ReviewStatus.REJECTED, ReviewStatus.PENDING
        )) == PermitStatus.DENIED

    def test_pending_review_blocks_decision(self):
        assert aggregate_reviews(reviews(ReviewStatus.APPROVED, ReviewStatus.IN_REVIEW)) is None

    def test_revisions_requested_blocks_decision(self):
        assert aggregate_reviews(reviews(ReviewStatus.APPROVED, ReviewStatus.REVISIONS_REQUESTED)) is None

    def test_optional_departments_never_block(self):
        optional = reviews(ReviewStatus.PENDING, ReviewStatus.REJECTED, required=False)
        required = reviews(ReviewStatus.APPROVED)
        assert aggregate_reviews(required + optional) == PermitStatus.APPROVED


class TestReviewTransitions:
    def test_start_then_approve(self):
        review = DepartmentReview(department="zoning")
        apply_review_update(review, ReviewStatus.IN_REVIEW, "reviewer-1")
        apply_review_update(review, ReviewStatus.APPROVED, "reviewer-1", notes="OK")

        assert review.assigned_to == "reviewer-1"
        assert review.reviewed_by == "reviewer-1"
        assert [h.action for h in review.review_history] == [ReviewAction.STARTED, ReviewAction.APPROVED]

    def test_approved_review_is_final(self):
        review = DepartmentReview(department="zoning", status=ReviewStatus.APPROVED)
        with pytest.raises(StateError):
            apply_review_update(review, ReviewStatus.REJECTED, "reviewer-1")

    def test_rejected_review_can_be_reopened(self):
        review = DepartmentReview(department="fire", status=ReviewStatus.REJECTED)
        apply_review_update(review, ReviewStatus.IN_REVIEW, "reviewer-1")

        assert review.requires_re_review
        assert review.review_history[-1].action == ReviewAction.RE_REVIEW_REQUESTED

    def test_conditions_are_recorded(self):
        review = DepartmentReview(department="building")
        apply_review_update(review, ReviewStatus.CONDITIONALLY_APPROVED, "reviewer-1",
                            conditions=["Install smoke detectors"])
        assert review.conditions == ["Install smoke detectors"]


class TestReviewWorkflow:
    """Department reviews driving the permit status"""

    async def submitted_permit(self):
        permit_type = await create_permit_type()
        owner = applicant_principal()
        permit = await create_permit(permit_type, owner)
        permit.update_status(PermitStatus.SUBMITTED, owner.user_id)
        await permit.save()
        return permit

    async def test_all_three_departments_approve(self, clean_db, sent_notifications):
        permit = await self.submitted_permit()
        admin = municipal_principal(MunicipalRole.ADMIN)

        for department in ("building", "zoning"):
            permit = await review_service.update_review(permit, department, admin, ReviewStatus.APPROVED)
            assert permit.status == PermitStatus.UNDER_REVIEW

        permit = await review_service.update_review(permit, "fire", admin, ReviewStatus.APPROVED)

        assert permit.status == PermitStatus.APPROVED
        assert permit.approval_date is not None
        statuses = [h.status for h in permit.status_history]
        assert statuses[-2:] == [PermitStatus.UNDER_REVIEW, PermitStatus.APPROVED]
        completed = [n for n in sent_notifications if n["template_type"] == "department_review_completed"]
        assert len(completed) == 3

    async def test_first_rejection_denies(self, clean_db):
        permit = await self.submitted_permit()
        admin = municipal_principal(MunicipalRole.ADMIN)

        permit = await review_service.update_review(permit, "building", admin, ReviewStatus.APPROVED)
        permit = await review_service.update_review(permit, "zoning", admin, ReviewStatus.REJECTED,
                                                    comments="Setback violation")

        assert permit.status == PermitStatus.DENIED
        assert permit.find_review("fire").status == ReviewStatus.PENDING
        stored = await Permit.get(permit.id)
        assert stored.status == PermitStatus.DENIED

    async def test_re_review_reopens_a_denied_permit(self, clean_db):
        permit = await self.submitted_permit()
        admin = municipal_principal(MunicipalRole.ADMIN)
        permit = await review_service.update_review(permit, "zoning", admin, ReviewStatus.REJECTED)

        permit = await review_service.update_review(permit, "zoning", admin, ReviewStatus.IN_REVIEW)

        assert permit.status == PermitStatus.UNDER_REVIEW
        assert permit.find_review("zoning").requires_re_review

    async def test_reviewer_limited_to_own_department(self, clean_db):
        permit = await self.submitted_permit()
        zoning_reviewer = municipal_principal(MunicipalRole.STAFF, user_id="zoning-1", department="zoning")

        with pytest.raises(AuthorizationError, match="Only fire reviewers"):
            await review_service.update_review(permit, "fire", zoning_reviewer, ReviewStatus.APPROVED)

        permit = await review_service.update_review(permit, "zoning", zoning_reviewer, ReviewStatus.APPROVED)
        assert permit.find_review("zoning").status == ReviewStatus.APPROVED

    async def test_readonly_staff_cannot_review(self, clean_db):
        permit = await self.submitted_permit()
        auditor = municipal_principal(MunicipalRole.READONLY, user_id="auditor")

        with pytest.raises(AuthorizationError):
            await review_service.update_review(permit, "building", auditor, ReviewStatus.APPROVED)

    async def test_draft_permits_cannot_be_reviewed(self, clean_db):
        permit_type = await create_permit_type()
        permit = await create_permit(permit_type)

        with pytest.raises(StateError):
            await review_service.update_review(permit, "building", municipal_principal(), ReviewStatus.APPROVED)

    async def test_review_comments_are_internal(self, clean_db):
        permit = await self.submitted_permit()
        admin = municipal_principal(MunicipalRole.ADMIN)
        await review_service.update_review(permit, "building", admin, ReviewStatus.IN_REVIEW,
                                           comments="Checking the structural drawings")

        comments = await PermitComment.find({"permit_id": str(permit.id)}).to_list()
        assert len(comments) == 1
        assert comments[0].visibility == CommentVisibility.INTERNAL
        assert comments[0].department == "building"


class TestCommentVisibility:
    async def test_applicant_only_sees_public_comments(self, clean_db):
        permit_type = await create_permit_type()
        owner = applicant_principal()
        permit = await create_permit(permit_type, owner)
        staff = municipal_principal(MunicipalRole.STAFF, user_id="clerk")

        await review_service.add_comment(permit, staff, "Internal only")
        await review_service.add_comment(permit, staff, "Please upload a site plan",
                                         visibility=CommentVisibility.PUBLIC)
        await review_service.add_comment(permit, staff, "Reminder to self", visibility=CommentVisibility.PRIVATE)
        await review_service.add_comment(permit, owner, "Uploaded")

        seen_by_owner = [c.content for c in await review_service.list_comments(permit, owner)]
        seen_by_staff = [c.content for c in await review_service.list_comments(permit, staff)]
        seen_by_other_staff = [
            c.content for c in await review_service.list_comments(permit, municipal_principal(user_id="boss"))
        ]

        assert seen_by_owner == ["Please upload a site plan", "Uploaded"]
        assert seen_by_staff == ["Internal only", "Please upload a site plan", "Reminder to self", "Uploaded"]
        assert "Reminder to self" not in seen_by_other_staff

    async def test_applicant_cannot_post_internal(self, clean_db):
        permit_type = await create_permit_type()
        owner = applicant_principal()
        permit = await create_permit(permit_type, owner)

        with pytest.raises(AuthorizationError):
            await review_service.add_comment(permit, owner, "Psst", visibility=CommentVisibility.INTERNAL)
