import pytest

from permitflow.auth.principal import MunicipalRole
from permitflow.core.errors import AuthorizationError, ConflictError, StateError, ValidationError
from permitflow.models.checklist_template import ChecklistTemplateItem, InspectionChecklistTemplate
from permitflow.models.inspection import InspectionAction, InspectionResult, InspectionStatus, PermitInspection
from permitflow.models.inspection_settings import InspectorProfile
from permitflow.models.inspector_schedule import InspectorDaySchedule
from permitflow.models.permit_type import InspectionType, RequiredInspection
from permitflow.schemas.inspection import (
    InspectionCreate,
    InspectionReschedule,
    InspectionStatusUpdate,
    ViolationCreate,
)
from permitflow.services.inspection_scheduler import inspection_scheduler
from permitflow.services.inspection_service import NO_INSPECTORS, inspection_service

from factories import (
    MUNICIPALITY_ID,
    applicant_principal,
    approve_permit,
    configure_inspections,
    create_permit,
    create_permit_type,
    days_from_now_at,
    municipal_principal,
)


async def approved_roofing_permit(owner=None):
    """Roofing needs two days' notice for its final inspection"""
    permit_type = await create_permit_type(
        name="Roofing",
        required_inspections=[RequiredInspection(type=InspectionType.FINAL, buffer_days=2, estimated_minutes=60)],
    )
    permit = await create_permit(permit_type, owner or applicant_principal())
    return await approve_permit(permit)


def final_at(days: int, hour: int = 10) -> InspectionCreate:
    return InspectionCreate(type=InspectionType.FINAL, scheduled_date=days_from_now_at(days, hour))


class TestScheduling:
    """Booking inspections against approved permits"""

    async def test_buffer_days_are_enforced(self, clean_db):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)

        with pytest.raises(ValidationError, match="requires at least 2 day\\(s\\) advance notice") as raised:
            await inspection_service.schedule_inspection(permit, final_at(1), owner)
        assert "min_allowed_date" in raised.value.details

        inspection = await inspection_service.schedule_inspection(permit, final_at(3), owner)
        assert inspection.status == InspectionStatus.SCHEDULED
        assert inspection.inspector_id == "inspector-1"
        assert [h.action for h in inspection.history] == [InspectionAction.CREATED, InspectionAction.SCHEDULED]

    async def test_only_approved_permits(self, clean_db):
        await configure_inspections()
        permit_type = await create_permit_type()
        owner = applicant_principal()
        permit = await create_permit(permit_type, owner)

        with pytest.raises(StateError, match="approved permits"):
            await inspection_service.schedule_inspection(permit, final_at(5), owner)

    async def test_conflicting_slot_goes_to_next_inspector(self, clean_db):
        await configure_inspections([
            InspectorProfile(user_id="inspector-1", name="Ned"),
            InspectorProfile(user_id="inspector-2", name="Maude"),
        ])
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)

        first = await inspection_service.schedule_inspection(permit, final_at(4), owner)
        second = await inspection_service.schedule_inspection(permit, final_at(4), owner)

        assert (first.inspector_id, second.inspector_id) == ("inspector-1", "inspector-2")

    async def test_no_free_inspector(self, clean_db):
        await configure_inspections([InspectorProfile(user_id="inspector-1", max_per_day=1)])
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        await inspection_service.schedule_inspection(permit, final_at(4, hour=9), owner)

        with pytest.raises(ValidationError, match=NO_INSPECTORS[:20]):
            await inspection_service.schedule_inspection(permit, final_at(4, hour=14), owner)

    async def test_applicant_cannot_pick_inspector(self, clean_db):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        request = final_at(4)
        request.inspector_id = "inspector-1"

        with pytest.raises(AuthorizationError):
            await inspection_service.schedule_inspection(permit, request, owner)

    async def test_available_slots_need_configuration(self, clean_db):
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)

        with pytest.raises(ValidationError, match="has not configured"):
            await inspection_service.available_slots(permit, "final")

    async def test_available_slots_start_after_notice_period(self, clean_db):
        await configure_inspections()
        permit = await approved_roofing_permit()

        response = await inspection_service.available_slots(permit, "final")

        assert response.buffer_days == 2
        earliest = days_from_now_at(2, hour=0)
        assert response.available_slots
        assert all(slot.start >= earliest for slot in response.available_slots)
        assert all(slot.inspector_id == "inspector-1" for slot in response.available_slots)


class TestRescheduling:
    async def test_reschedule_moves_the_booking(self, clean_db, sent_notifications):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        inspection = await inspection_service.schedule_inspection(permit, final_at(3), owner)
        old_date = inspection.scheduled_date
        new_date = days_from_now_at(5)

        inspection = await inspection_service.reschedule(
            inspection, InspectionReschedule(scheduled_date=new_date, reason="Roofer delayed"), owner
        )

        assert inspection.status == InspectionStatus.RESCHEDULED
        assert inspection.scheduled_date == new_date
        entry = inspection.history[-1]
        assert entry.action == InspectionAction.RESCHEDULED
        assert entry.details["old_date"] == old_date.isoformat()
        assert entry.details["reason"] == "Roofer delayed"

        old_ledger = await InspectorDaySchedule.peek("inspector-1", old_date)
        new_ledger = await InspectorDaySchedule.peek("inspector-1", new_date)
        assert old_ledger.bookings == []
        assert [b.inspection_id for b in new_ledger.bookings] == [str(inspection.id)]
        assert any(n["template_type"] == "inspection_rescheduled" for n in sent_notifications)

    async def test_reason_is_required(self, clean_db):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        inspection = await inspection_service.schedule_inspection(permit, final_at(3), owner)

        with pytest.raises(ValidationError, match="reason is required"):
            await inspection_service.reschedule(
                inspection, InspectionReschedule(scheduled_date=days_from_now_at(5), reason="  "), owner
            )

    async def test_failed_reschedule_keeps_the_old_booking(self, clean_db):
        await configure_inspections([InspectorProfile(user_id="inspector-1", max_per_day=1)])
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        inspection = await inspection_service.schedule_inspection(permit, final_at(3), owner)
        await inspection_service.schedule_inspection(permit, final_at(6), owner)

        with pytest.raises(ValidationError):
            await inspection_service.reschedule(
                inspection, InspectionReschedule(scheduled_date=days_from_now_at(6, hour=14), reason="Rain"), owner
            )

        ledger = await InspectorDaySchedule.peek("inspector-1", inspection.scheduled_date)
        assert [b.inspection_id for b in ledger.bookings] == [str(inspection.id)]

    async def test_busy_calendar_keeps_the_old_booking(self, clean_db, monkeypatch):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        inspection = await inspection_service.schedule_inspection(permit, final_at(3), owner)
        old_date = inspection.scheduled_date

        async def busy(*args, **kwargs):
            raise ConflictError("The inspection calendar is busy; please try again")

        monkeypatch.setattr(inspection_scheduler, "book", busy)
        with pytest.raises(ConflictError):
            await inspection_service.reschedule(
                inspection, InspectionReschedule(scheduled_date=days_from_now_at(5), reason="Rain"), owner
            )

        ledger = await InspectorDaySchedule.peek("inspector-1", old_date)
        assert [b.inspection_id for b in ledger.bookings] == [str(inspection.id)]
        assert inspection.scheduled_date == old_date
        assert inspection.status == InspectionStatus.SCHEDULED


class TestResults:
    async def scheduled_inspection(self):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        return await inspection_service.schedule_inspection(permit, final_at(3), owner)

    async def test_completion_needs_a_result(self, clean_db):
        inspection = await self.scheduled_inspection()
        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")

        with pytest.raises(ValidationError, match="result is required"):
            await inspection_service.update_status(
                inspection, InspectionStatusUpdate(status=InspectionStatus.COMPLETED), inspector
            )

    async def test_failed_inspection_notifies_and_frees_slot(self, clean_db, sent_notifications):
        inspection = await self.scheduled_inspection()
        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")

        inspection = await inspection_service.update_status(
            inspection,
            InspectionStatusUpdate(status=InspectionStatus.COMPLETED, result=InspectionResult.FAILED,
                                   comments="Flashing missing"),
            inspector,
        )

        assert inspection.completed_at is not None
        assert inspection.requires_reinspection
        ledger = await InspectorDaySchedule.peek("inspector-1", inspection.scheduled_date)
        assert ledger.bookings == []
        assert any(n["template_type"] == "inspection_failed" for n in sent_notifications)

    async def test_no_access_and_back_rebooks_the_slot(self, clean_db):
        inspection = await self.scheduled_inspection()
        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")

        await inspection_service.update_status(
            inspection, InspectionStatusUpdate(status=InspectionStatus.NO_ACCESS), inspector
        )
        ledger = await InspectorDaySchedule.peek("inspector-1", inspection.scheduled_date)
        assert ledger.bookings == []

        await inspection_service.update_status(
            inspection, InspectionStatusUpdate(status=InspectionStatus.SCHEDULED), inspector
        )
        ledger = await InspectorDaySchedule.peek("inspector-1", inspection.scheduled_date)
        assert [b.inspection_id for b in ledger.bookings] == [str(inspection.id)]

    async def test_taken_slot_cannot_be_resumed(self, clean_db):
        await configure_inspections([InspectorProfile(user_id="inspector-1", max_per_day=1)])
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        inspection = await inspection_service.schedule_inspection(permit, final_at(3), owner)
        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")
        await inspection_service.update_status(
            inspection, InspectionStatusUpdate(status=InspectionStatus.NO_ACCESS), inspector
        )
        other = await inspection_service.schedule_inspection(permit, final_at(3, hour=14), owner)

        with pytest.raises(ConflictError, match="no longer available"):
            await inspection_service.update_status(
                inspection, InspectionStatusUpdate(status=InspectionStatus.SCHEDULED), inspector
            )

        assert inspection.status == InspectionStatus.NO_ACCESS
        stored = await PermitInspection.get(inspection.id)
        assert stored.status == InspectionStatus.NO_ACCESS
        ledger = await InspectorDaySchedule.peek("inspector-1", inspection.scheduled_date)
        assert [b.inspection_id for b in ledger.bookings] == [str(other.id)]

    async def test_completed_inspection_is_frozen(self, clean_db):
        inspection = await self.scheduled_inspection()
        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")
        await inspection_service.update_status(
            inspection, InspectionStatusUpdate(status=InspectionStatus.COMPLETED, result=InspectionResult.PASSED),
            inspector,
        )

        with pytest.raises(StateError, match="Cannot cancel completed inspections"):
            await inspection_service.update_status(
                inspection, InspectionStatusUpdate(status=InspectionStatus.CANCELLED), inspector
            )
        with pytest.raises(StateError):
            await inspection_service.add_violation(inspection, ViolationCreate(description="Late find"), inspector)

    async def test_applicant_cannot_record_results(self, clean_db):
        inspection = await self.scheduled_inspection()

        with pytest.raises(AuthorizationError):
            await inspection_service.update_status(
                inspection, InspectionStatusUpdate(status=InspectionStatus.IN_PROGRESS), applicant_principal()
            )

    async def test_violation_fails_a_passed_result(self, clean_db):
        inspection = await self.scheduled_inspection()
        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")
        await inspection_service.update_status(
            inspection, InspectionStatusUpdate(status=InspectionStatus.IN_PROGRESS, result=InspectionResult.PASSED),
            inspector,
        )

        violation = await inspection_service.add_violation(
            inspection, ViolationCreate(description="Missing drip edge"), inspector
        )
        assert inspection.result == InspectionResult.FAILED

        corrected = await inspection_service.correct_violation(inspection, violation.id, inspector, notes="Fixed")
        assert corrected.corrected
        assert inspection.open_violations == []

    async def test_photos_must_be_images(self, clean_db, file_storage):
        inspection = await self.scheduled_inspection()
        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")

        with pytest.raises(ValidationError, match="Only image files"):
            await inspection_service.add_photo(inspection, inspector, b"%PDF-1.4", "report.pdf", "application/pdf")

        photo = await inspection_service.add_photo(inspection, inspector, b"\x89PNG\r\n", "roof.png", "image/png",
                                                   caption="North slope")
        assert (file_storage / photo.storage_path).read_bytes() == b"\x89PNG\r\n"
        assert inspection.history[-1].action == InspectionAction.PHOTO_ADDED


class TestChecklist:
    async def test_checklist_copied_from_active_template(self, clean_db):
        await configure_inspections()
        owner = applicant_principal()
        permit = await approved_roofing_permit(owner)
        template = InspectionChecklistTemplate(
            municipality_id=MUNICIPALITY_ID,
            inspection_type=InspectionType.FINAL,
            name="Final roof",
            items=[
                ChecklistTemplateItem(text="Flashing installed", order=2),
                ChecklistTemplateItem(text="Underlayment visible at eaves", order=1),
                ChecklistTemplateItem(text="Gutters", order=3, is_required=False),
            ],
        )
        await template.insert()
        inspection = await inspection_service.schedule_inspection(permit, final_at(3), owner)

        checklist = await inspection_service.get_checklist(inspection)

        assert checklist.checklist_template_id == str(template.id)
        assert [i.text for i in checklist.checklist][0] == "Underlayment visible at eaves"
        assert (checklist.required_total, checklist.required_checked) == (2, 0)

        inspector = municipal_principal(MunicipalRole.INSPECTOR, user_id="inspector-1")
        item = checklist.checklist[0]
        await inspection_service.update_checklist_item(inspection, item.id, inspector, checked=True)

        checklist = await inspection_service.get_checklist(inspection)
        assert checklist.required_checked == 1
