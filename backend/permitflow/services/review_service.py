"""
Department review sub-workflow and the permit comment thread.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from ..auth.principal import AuthenticatedPrincipal, BUILDING_PERMITS, ModuleAction, MunicipalRole
from ..core.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from ..core.logging_config import get_permit_logger
from ..models.common import ACTIVE
from ..models.permit import (
    DepartmentReview,
    Permit,
    PermitStatus,
    REVIEWABLE_STATUSES,
    ReviewAction,
    ReviewHistoryEntry,
    ReviewStatus,
)
from ..models.permit_comment import PermitComment, CommentVisibility
from .notification_service import notification_service
from .permit_service import permit_service

logger = get_permit_logger(__name__)


DECISION_STATUSES = {
    ReviewStatus.APPROVED,
    ReviewStatus.CONDITIONALLY_APPROVED,
    ReviewStatus.REJECTED,
    ReviewStatus.REVISIONS_REQUESTED,
}
APPROVING_STATUSES = {ReviewStatus.APPROVED, ReviewStatus.CONDITIONALLY_APPROVED}

REVIEW_TRANSITIONS = {
    ReviewStatus.PENDING: {ReviewStatus.IN_REVIEW} | DECISION_STATUSES,
    ReviewStatus.IN_REVIEW: set(DECISION_STATUSES),
    ReviewStatus.REVISIONS_REQUESTED: {ReviewStatus.IN_REVIEW},
    ReviewStatus.REJECTED: {ReviewStatus.IN_REVIEW},
    ReviewStatus.APPROVED: set(),
    ReviewStatus.CONDITIONALLY_APPROVED: set(),
}


def apply_review_update(
    review: DepartmentReview,
    new_status: ReviewStatus,
    user_id: str,
    notes: Optional[str] = None,
    conditions: Optional[List[str]] = None,
    requested_revisions: Optional[List[str]] = None
) -> ReviewHistoryEntry:
    """Move one department review along its state machine and log it in the review history"""
    new_status = ReviewStatus(new_status)
    if new_status not in REVIEW_TRANSITIONS[review.status]:
        raise StateError(
            f"Cannot change {review.department} review from '{review.status.value}' to '{new_status.value}'"
        )

    now = datetime.utcnow()
    if new_status == ReviewStatus.IN_REVIEW:
        if review.status == ReviewStatus.PENDING:
            action = ReviewAction.STARTED
        else:
            action = ReviewAction.RE_REVIEW_REQUESTED
            review.requires_re_review = True
        if not review.assigned_to:
            review.assigned_to = user_id
            review.assigned_at = now
    else:
        action = ReviewAction(new_status.value)
        review.reviewed_by = user_id
        review.reviewed_at = now
        review.requires_re_review = False

    if conditions:
        review.conditions = list(conditions)
    if requested_revisions:
        review.requested_revisions = list(requested_revisions)

    review.status = new_status
    entry = ReviewHistoryEntry(action=action, status=new_status, performed_by=user_id,
                               performed_at=now, notes=notes)
    review.review_history.append(entry)
    return entry


def aggregate_reviews(reviews: Iterable[DepartmentReview]) -> Optional[PermitStatus]:
    """
    Permit decision implied by the department reviews, if any.

    A rejection by any required department denies the permit outright;
    approval needs every required department to approve (conditionally
    or not). Optional departments never block.
    """
    required = [r for r in reviews if r.required]
    if any(r.status == ReviewStatus.REJECTED for r in required):
        return PermitStatus.DENIED
    if all(r.status in APPROVING_STATUSES for r in required):
        return PermitStatus.APPROVED
    return None


def can_view_comment(comment: PermitComment, principal: AuthenticatedPrincipal, is_staff: bool) -> bool:
    if comment.visibility == CommentVisibility.PUBLIC:
        return True
    if comment.visibility == CommentVisibility.PRIVATE:
        return comment.author_id == principal.user_id
    return is_staff


class ReviewService:
    """Department reviews and comments on permits"""

    async def update_review(
        self,
        permit: Permit,
        department: str,
        principal: AuthenticatedPrincipal,
        new_status: ReviewStatus,
        comments: Optional[str] = None,
        conditions: Optional[List[str]] = None,
        requested_revisions: Optional[List[str]] = None
    ) -> Permit:
        """
        Record a department's review and re-evaluate the permit.

        Status changes the reviews imply are applied through the permit's
        own state machine so they show up in its status history.
        """
        if not principal.has_module_permission(permit.municipality_id, BUILDING_PERMITS, ModuleAction.UPDATE.value):
            raise AuthorizationError("Only municipal reviewers can update department reviews")

        review = permit.find_review(department)
        if review is None:
            raise NotFoundError(f"No review found for department: {department}")

        user_department = principal.department_for(permit.municipality_id)
        if (
            user_department
            and user_department != department
            and not principal.has_role(permit.municipality_id, MunicipalRole.ADMIN, MunicipalRole.MANAGER)
        ):
            raise AuthorizationError(f"Only {department} reviewers can update this review")

        new_status = ReviewStatus(new_status)
        reopening = permit.status == PermitStatus.DENIED and new_status == ReviewStatus.IN_REVIEW
        if permit.status not in REVIEWABLE_STATUSES and not reopening:
            raise StateError(
                f"Reviews cannot be updated while the permit is '{permit.status.value}'"
            )

        previous_status = permit.status
        apply_review_update(review, new_status, principal.user_id, notes=comments,
                            conditions=conditions, requested_revisions=requested_revisions)

        name = principal.display_name
        if permit.status in (PermitStatus.SUBMITTED, PermitStatus.DENIED):
            permit.update_status(PermitStatus.UNDER_REVIEW, principal.user_id,
                                 notes=f"{department} review started", user_name=name)

        decision = aggregate_reviews(permit.department_reviews)
        if decision is not None and permit.status in REVIEWABLE_STATUSES:
            if permit.status == PermitStatus.ON_HOLD:
                permit.update_status(PermitStatus.UNDER_REVIEW, principal.user_id,
                                     notes=f"{department} review resumed", user_name=name)
            permit.update_status(decision, principal.user_id,
                                 notes=f"All required department reviews complete ({department} last)"
                                 if decision == PermitStatus.APPROVED
                                 else f"Rejected by {department} review",
                                 user_name=name)

        permit.updated_at = datetime.utcnow()
        await permit.save()

        if comments and comments.strip():
            await PermitComment(
                municipality_id=permit.municipality_id,
                permit_id=str(permit.id),
                content=comments.strip(),
                visibility=CommentVisibility.INTERNAL,
                author_id=principal.user_id,
                author_name=name,
                department=department,
            ).insert()

        logger.info("Department review updated", permit_id=str(permit.id), department=department,
                    review_status=new_status.value, permit_status=permit.status.value)

        if permit.status != previous_status:
            await permit_service.after_status_change(permit, previous_status)

        applicant = permit.submitted_by or permit.created_by
        if new_status in DECISION_STATUSES:
            await notification_service.send_notification(
                applicant,
                "department_review_completed",
                {
                    "permit_number": permit.permit_number,
                    "department": department,
                    "review_status": new_status.value,
                    "reviewed_by": name,
                    "conditions": review.conditions,
                },
                municipality_id=permit.municipality_id,
            )
        return permit

    async def list_comments(self, permit: Permit, principal: AuthenticatedPrincipal) -> List[PermitComment]:
        is_staff = principal.is_staff_for(permit.municipality_id)
        query = {"permit_id": str(permit.id), **ACTIVE}
        if not is_staff:
            query["visibility"] = CommentVisibility.PUBLIC.value
        comments = await PermitComment.find(query).sort([("created_at", 1), ("_id", 1)]).to_list()
        return [c for c in comments if can_view_comment(c, principal, is_staff)]

    async def add_comment(
        self,
        permit: Permit,
        principal: AuthenticatedPrincipal,
        content: str,
        visibility: Optional[CommentVisibility] = None,
        department: Optional[str] = None,
        attachments: Optional[List[str]] = None
    ) -> PermitComment:
        if not content or not content.strip():
            raise ValidationError("Comment content is required")

        if principal.is_staff_for(permit.municipality_id):
            visibility = visibility or CommentVisibility.INTERNAL
            department = department or principal.department_for(permit.municipality_id)
        else:
            if not permit.is_owned_by(principal.user_id, principal.contractor_id):
                raise AuthorizationError()
            if visibility not in (None, CommentVisibility.PUBLIC):
                raise AuthorizationError("Applicants can only post public comments")
            visibility = CommentVisibility.PUBLIC
            department = None

        comment = PermitComment(
            municipality_id=permit.municipality_id,
            permit_id=str(permit.id),
            content=content.strip(),
            visibility=visibility,
            author_id=principal.user_id,
            author_name=principal.display_name,
            department=department,
            attachments=attachments or [],
        )
        await comment.insert()
        return comment


review_service = ReviewService()
