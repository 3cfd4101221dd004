"""
Inspection lifecycle: booking, rescheduling, results and inspector actions.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from ..auth.principal import AuthenticatedPrincipal, BUILDING_PERMITS, ModuleAction
from ..core.config import settings
from ..core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
    conflict_from_duplicate,
)
from ..core.logging_config import get_permit_logger
from ..models.common import ACTIVE, Note, Photo, parse_object_id, to_naive_utc
from ..models.checklist_template import InspectionChecklistTemplate
from ..models.inspection import (
    BOOKED_STATUSES,
    ChecklistItem,
    InspectionAction,
    InspectionResult,
    InspectionStatus,
    PermitInspection,
    Violation,
)
from ..models.inspection_settings import InspectionSettings, InspectorProfile
from ..models.inspector_schedule import Booking, InspectorDaySchedule
from ..models.permit import Permit, PermitStatus
from ..models.permit_type import PermitType
from ..schemas.inspection import (
    AvailableSlot,
    AvailableSlotsResponse,
    ChecklistResponse,
    InspectionCreate,
    InspectionReschedule,
    InspectionSettingsUpdate,
    InspectionStatusUpdate,
    ViolationCreate,
)
from .inspection_scheduler import earliest_allowed, inspection_scheduler
from .notification_service import notification_service
from .storage_service import storage_service

logger = get_permit_logger(__name__)

NO_INSPECTORS = "No inspectors available for the requested date and time. Please choose a different time slot."
RESCHEDULABLE_STATUSES = {InspectionStatus.SCHEDULED, InspectionStatus.IN_PROGRESS, InspectionStatus.RESCHEDULED}
NOTIFIED_RESULTS = {InspectionResult.PASSED, InspectionResult.FAILED}


class InspectionService:
    """Inspections booked against approved permits"""

    def __init__(self, scheduler=None):
        self.scheduler = scheduler or inspection_scheduler

    # Settings

    async def get_settings(self, municipality_id: str) -> InspectionSettings:
        found = await InspectionSettings.find_one({"municipality_id": municipality_id})
        return found or InspectionSettings(municipality_id=municipality_id)

    async def update_settings(self, municipality_id: str, data: InspectionSettingsUpdate,
                              principal: AuthenticatedPrincipal) -> InspectionSettings:
        current = await InspectionSettings.find_one({"municipality_id": municipality_id})
        if current is None:
            current = InspectionSettings(municipality_id=municipality_id)
        current.available_time_slots = data.available_time_slots
        current.inspectors = data.inspectors
        current.updated_by = principal.user_id
        current.updated_at = datetime.utcnow()
        try:
            await current.save()
        except DuplicateKeyError as e:
            raise conflict_from_duplicate(e, "Inspection settings for this municipality")
        logger.info("Inspection settings updated", windows=len(data.available_time_slots),
                    inspectors=len(data.inspectors))
        return current

    # Lookup

    def _ensure_staff(self, municipality_id: str, principal: AuthenticatedPrincipal,
                      action: ModuleAction = ModuleAction.UPDATE):
        if not principal.is_staff_for(municipality_id):
            raise AuthorizationError("Only municipal staff can perform this action")
        if not principal.has_module_permission(municipality_id, BUILDING_PERMITS, action.value):
            raise AuthorizationError(f"Permission required: {BUILDING_PERMITS}.{action.value}")

    async def get_inspection(self, municipality_id: str, inspection_id: str,
                             principal: AuthenticatedPrincipal) -> PermitInspection:
        inspection = await PermitInspection.find_one({
            "_id": parse_object_id(inspection_id, "Inspection"),
            "municipality_id": municipality_id,
            **ACTIVE,
        })
        if not inspection:
            raise NotFoundError("Inspection not found")
        if principal.is_staff_for(municipality_id):
            return inspection

        permit = await Permit.get(parse_object_id(inspection.permit_id, "Permit"))
        if not permit or not permit.is_owned_by(principal.user_id, principal.contractor_id):
            raise AuthorizationError()
        return inspection

    async def list_inspections(
        self,
        municipality_id: str,
        principal: AuthenticatedPrincipal,
        status: Optional[InspectionStatus] = None,
        inspector_id: Optional[str] = None,
        permit_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[PermitInspection], int]:
        self._ensure_staff(municipality_id, principal, ModuleAction.READ)
        query = {"municipality_id": municipality_id, **ACTIVE}
        if status:
            query["status"] = InspectionStatus(status).value
        if inspector_id:
            query["inspector_id"] = inspector_id
        if permit_id:
            query["permit_id"] = permit_id
        if date_from or date_to:
            query["scheduled_date"] = {}
            if date_from:
                query["scheduled_date"]["$gte"] = date_from
            if date_to:
                query["scheduled_date"]["$lte"] = date_to

        total = await PermitInspection.find(query).count()
        inspections = await PermitInspection.find(query).sort([("scheduled_date", 1)]).skip(
            (page - 1) * page_size
        ).limit(page_size).to_list()
        return inspections, total

    async def list_for_permit(self, permit: Permit) -> List[PermitInspection]:
        return await PermitInspection.find({"permit_id": str(permit.id), **ACTIVE}).sort(
            [("scheduled_date", 1)]
        ).to_list()

    # Scheduling

    async def _requirement(self, permit: Permit, inspection_type: str) -> Tuple[int, int]:
        """(buffer_days, estimated_minutes) for an inspection type on this permit's type"""
        permit_type = await PermitType.get(parse_object_id(permit.permit_type_id, "Permit type"))
        requirement = permit_type.inspection_requirement(inspection_type) if permit_type else None
        if requirement:
            return requirement.buffer_days, requirement.estimated_minutes
        return settings.DEFAULT_BUFFER_DAYS, settings.DEFAULT_INSPECTION_MINUTES

    def _check_buffer(self, start: datetime, buffer_days: int):
        min_allowed = earliest_allowed(buffer_days)
        if start < min_allowed:
            raise ValidationError(
                f"This inspection type requires at least {buffer_days} day(s) advance notice",
                buffer_days=buffer_days,
                min_allowed_date=min_allowed.isoformat(),
            )

    async def _candidates(self, municipality_id: str, inspection_type: str, inspector_id: Optional[str],
                          principal: AuthenticatedPrincipal) -> List[InspectorProfile]:
        inspection_settings = await self.get_settings(municipality_id)
        eligible = inspection_settings.eligible_inspectors(inspection_type)
        if inspector_id:
            if not principal.is_staff_for(municipality_id):
                raise AuthorizationError("Only municipal staff can choose the inspector")
            eligible = [i for i in eligible if i.user_id == inspector_id]
            if not eligible:
                raise ValidationError("The selected inspector cannot perform this inspection type")
        return eligible

    async def available_slots(
        self,
        permit: Permit,
        inspection_type: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AvailableSlotsResponse:
        inspection_settings = await self.get_settings(permit.municipality_id)
        if not inspection_settings.available_time_slots:
            raise ValidationError("Municipality has not configured inspection availability settings")
        if not inspection_settings.eligible_inspectors(inspection_type):
            raise ValidationError("No inspectors available for this inspection type")

        buffer_days, estimated_minutes = await self._requirement(permit, inspection_type)
        slots = await self.scheduler.available_slots(
            inspection_settings, inspection_type, buffer_days, estimated_minutes,
            start_date=to_naive_utc(start_date), end_date=to_naive_utc(end_date),
        )
        return AvailableSlotsResponse(
            inspection_type=inspection_type,
            buffer_days=buffer_days,
            estimated_minutes=estimated_minutes,
            available_slots=[AvailableSlot(**slot) for slot in slots],
        )

    async def schedule_inspection(self, permit: Permit, data: InspectionCreate,
                                  principal: AuthenticatedPrincipal) -> PermitInspection:
        if permit.status != PermitStatus.APPROVED:
            raise StateError("Inspections can only be scheduled for approved permits")

        inspection_type = data.type.value
        buffer_days, estimated_minutes = await self._requirement(permit, inspection_type)
        start = data.scheduled_date.replace(microsecond=0)
        self._check_buffer(start, buffer_days)
        end = start + timedelta(minutes=estimated_minutes)

        candidates = await self._candidates(permit.municipality_id, inspection_type, data.inspector_id, principal)
        inspection = PermitInspection(
            id=PydanticObjectId(),
            municipality_id=permit.municipality_id,
            permit_id=str(permit.id),
            permit_number=permit.permit_number,
            property_address=permit.property_address,
            type=data.type,
            scheduled_date=start,
            scheduled_time_slot=data.scheduled_time_slot,
            estimated_minutes=estimated_minutes,
            requested_by=principal.user_id,
            description=data.description,
            contact_name=data.contact_name or permit.applicant.name,
            contact_phone=data.contact_phone or permit.applicant.phone,
            contact_email=data.contact_email or permit.applicant.email,
            access_instructions=data.access_instructions,
        )

        inspector = await self.scheduler.book(permit.municipality_id, candidates, str(inspection.id), start, end)
        if inspector is None:
            raise ValidationError(NO_INSPECTORS)

        inspection.inspector_id = inspector.user_id
        inspection.inspector_name = inspector.name
        inspection.record(InspectionAction.CREATED, principal.user_id)
        inspection.record(InspectionAction.SCHEDULED, principal.user_id,
                          scheduled_date=start.isoformat(), inspector_id=inspector.user_id)
        try:
            await inspection.insert()
        except Exception:
            await self.scheduler.release(inspector.user_id, start, str(inspection.id))
            raise

        logger.info("Inspection scheduled", permit_id=str(permit.id), inspection_id=str(inspection.id),
                    inspection_type=inspection_type, inspector_id=inspector.user_id)
        await self._notify(inspection, permit, "inspection_scheduled", include_inspector=True)
        return inspection

    async def _restore_booking(self, municipality_id: str, inspector_id: str, booking: Booking):
        for _ in range(settings.BOOKING_MAX_RETRIES):
            ledger = await InspectorDaySchedule.for_day(municipality_id, inspector_id, booking.start)
            if await ledger.try_book(booking):
                return
        logger.error("Could not restore inspector booking after failed reschedule",
                     inspector_id=inspector_id, inspection_id=booking.inspection_id)

    async def reschedule(self, inspection: PermitInspection, data: InspectionReschedule,
                         principal: AuthenticatedPrincipal) -> PermitInspection:
        if inspection.status not in RESCHEDULABLE_STATUSES:
            raise StateError(f"Cannot reschedule an inspection with status '{inspection.status.value}'")
        if not data.reason or not data.reason.strip():
            raise ValidationError("A reason is required to reschedule an inspection")

        permit = await Permit.get(parse_object_id(inspection.permit_id, "Permit"))
        if not permit:
            raise NotFoundError("Permit not found")

        buffer_days, _ = await self._requirement(permit, inspection.type.value)
        start = data.scheduled_date.replace(microsecond=0)
        self._check_buffer(start, buffer_days)
        end = start + timedelta(minutes=inspection.estimated_minutes)

        candidates = await self._candidates(inspection.municipality_id, inspection.type.value,
                                            data.inspector_id, principal)
        # Keep the same inspector when they are free
        candidates.sort(key=lambda i: i.user_id != inspection.inspector_id)

        inspection_id = str(inspection.id)
        old_date = inspection.scheduled_date
        old_inspector = inspection.inspector_id
        await self.scheduler.release(old_inspector, old_date, inspection_id)

        inspector = None
        try:
            inspector = await self.scheduler.book(inspection.municipality_id, candidates, inspection_id, start, end)
            if inspector is None:
                raise ValidationError(NO_INSPECTORS)
        finally:
            if inspector is None and old_inspector:
                await self._restore_booking(
                    inspection.municipality_id,
                    old_inspector,
                    Booking(inspection_id=inspection_id, start=old_date, end=inspection.scheduled_end),
                )

        inspection.scheduled_date = start
        if data.scheduled_time_slot is not None:
            inspection.scheduled_time_slot = data.scheduled_time_slot
        inspection.inspector_id = inspector.user_id
        inspection.inspector_name = inspector.name
        inspection.status = InspectionStatus.RESCHEDULED
        inspection.record(
            InspectionAction.RESCHEDULED,
            principal.user_id,
            old_date=old_date.isoformat(),
            new_date=start.isoformat(),
            reason=data.reason.strip(),
            inspector_id=inspector.user_id,
        )
        await inspection.save()

        logger.info("Inspection rescheduled", inspection_id=inspection_id,
                    old_date=old_date.isoformat(), new_date=start.isoformat())
        await self._notify(inspection, permit, "inspection_rescheduled", include_inspector=True)
        return inspection

    # Results

    async def _rebook(self, inspection: PermitInspection, principal: AuthenticatedPrincipal):
        """Take the inspection's slot back on the calendar when it returns to a booked status"""
        inspection_settings = await self.get_settings(inspection.municipality_id)
        candidates = inspection_settings.eligible_inspectors(inspection.type.value)
        candidates.sort(key=lambda i: i.user_id != inspection.inspector_id)

        inspector = await self.scheduler.book(inspection.municipality_id, candidates, str(inspection.id),
                                              inspection.scheduled_date, inspection.scheduled_end)
        if inspector is None:
            raise ConflictError(
                "The inspection's time slot is no longer available; reschedule it instead",
                scheduled_date=inspection.scheduled_date.isoformat(),
            )
        if inspector.user_id != inspection.inspector_id:
            inspection.record(InspectionAction.SCHEDULED, principal.user_id,
                              scheduled_date=inspection.scheduled_date.isoformat(),
                              inspector_id=inspector.user_id)
        inspection.inspector_id = inspector.user_id
        inspection.inspector_name = inspector.name

    async def update_status(self, inspection: PermitInspection, data: InspectionStatusUpdate,
                            principal: AuthenticatedPrincipal) -> PermitInspection:
        self._ensure_staff(inspection.municipality_id, principal)
        new_status = data.status
        if inspection.status == InspectionStatus.COMPLETED and new_status == InspectionStatus.CANCELLED:
            raise StateError("Cannot cancel completed inspections")
        inspection.ensure_mutable()

        previous = inspection.status
        rebooked = previous not in BOOKED_STATUSES and new_status in BOOKED_STATUSES
        if rebooked:
            await self._rebook(inspection, principal)

        if new_status == InspectionStatus.COMPLETED:
            result = data.result or inspection.result
            if result in (InspectionResult.PENDING, InspectionResult.CANCELLED):
                raise ValidationError("A result is required to complete an inspection")
            inspection.complete(principal.user_id, result, data.comments)
        elif new_status == InspectionStatus.CANCELLED:
            inspection.status = InspectionStatus.CANCELLED
            inspection.result = InspectionResult.CANCELLED
            if data.comments:
                inspection.comments = data.comments
            inspection.record(InspectionAction.CANCELLED, principal.user_id, reason=data.comments)
        else:
            inspection.status = new_status
            if data.result:
                inspection.result = data.result
                inspection.update_reinspection_flag()
            if data.comments:
                inspection.comments = data.comments

        inspection.record(InspectionAction.STATUS_UPDATED, principal.user_id,
                          previous_status=previous.value, status=new_status.value)
        try:
            await inspection.save()
        except Exception:
            if rebooked:
                await self.scheduler.release(inspection.inspector_id, inspection.scheduled_date, str(inspection.id))
            raise

        if previous in BOOKED_STATUSES and new_status not in BOOKED_STATUSES:
            await self.scheduler.release(inspection.inspector_id, inspection.scheduled_date, str(inspection.id))

        logger.info(f"Inspection status changed from {previous.value} to {new_status.value}",
                    inspection_id=str(inspection.id), result=inspection.result.value)

        if new_status == InspectionStatus.COMPLETED and inspection.result in NOTIFIED_RESULTS:
            permit = await Permit.get(parse_object_id(inspection.permit_id, "Permit"))
            if permit:
                await self._notify(inspection, permit, f"inspection_{inspection.result.value}")
        return inspection

    async def add_violation(self, inspection: PermitInspection, data: ViolationCreate,
                            principal: AuthenticatedPrincipal) -> Violation:
        self._ensure_staff(inspection.municipality_id, principal)
        inspection.ensure_mutable()
        violation = inspection.add_violation(principal.user_id, data.description, severity=data.severity,
                                             code_reference=data.code_reference, location=data.location)
        await inspection.save()
        return violation

    async def correct_violation(self, inspection: PermitInspection, violation_id: str,
                                principal: AuthenticatedPrincipal, notes: Optional[str] = None) -> Violation:
        self._ensure_staff(inspection.municipality_id, principal)
        violation = inspection.correct_violation(violation_id, principal.user_id, notes)
        await inspection.save()
        return violation

    async def add_note(self, inspection: PermitInspection, principal: AuthenticatedPrincipal,
                       content: str) -> Note:
        self._ensure_staff(inspection.municipality_id, principal)
        note = Note(content=content, created_by=principal.user_id, created_by_name=principal.display_name)
        inspection.notes.append(note)
        inspection.record(InspectionAction.NOTE_ADDED, principal.user_id, note_id=note.id)
        await inspection.save()
        return note

    async def add_photo(
        self,
        inspection: PermitInspection,
        principal: AuthenticatedPrincipal,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        caption: Optional[str] = None
    ) -> Photo:
        self._ensure_staff(inspection.municipality_id, principal)
        if not data:
            raise ValidationError("Photo file is empty")
        if content_type and not content_type.startswith("image/"):
            raise ValidationError("Only image files can be attached as inspection photos")

        path = storage_service.organized_path(
            inspection.municipality_id, f"inspections/{inspection.id}", filename
        )
        stored = await storage_service.upload_file(data, path, {
            "content_type": content_type,
            "inspection_id": str(inspection.id),
            "uploaded_by": principal.user_id,
        })
        photo = Photo(url=stored["url"], storage_path=stored["path"], filename=filename,
                      caption=caption, uploaded_by=principal.user_id)
        inspection.photos.append(photo)
        inspection.record(InspectionAction.PHOTO_ADDED, principal.user_id, photo_id=photo.id)
        await inspection.save()
        return photo

    # Checklist

    def _checklist_response(self, inspection: PermitInspection) -> ChecklistResponse:
        required = [i for i in inspection.checklist if i.is_required]
        return ChecklistResponse(
            inspection_id=str(inspection.id),
            checklist_template_id=inspection.checklist_template_id,
            checklist=inspection.checklist,
            required_total=len(required),
            required_checked=len([i for i in required if i.checked]),
        )

    async def get_checklist(self, inspection: PermitInspection) -> ChecklistResponse:
        """The inspection's checklist, copied from the active template on first access"""
        if not inspection.checklist and not inspection.checklist_template_id:
            template = await InspectionChecklistTemplate.get_active(
                inspection.municipality_id, inspection.type.value
            )
            if template:
                inspection.initialize_checklist(str(template.id), template.items)
                await inspection.save()
        return self._checklist_response(inspection)

    async def update_checklist_item(self, inspection: PermitInspection, item_id: str,
                                    principal: AuthenticatedPrincipal, checked: Optional[bool] = None,
                                    notes: Optional[str] = None) -> ChecklistItem:
        self._ensure_staff(inspection.municipality_id, principal)
        inspection.ensure_mutable()
        item = inspection.update_checklist_item(item_id, principal.user_id, checked=checked, notes=notes)
        await inspection.save()
        return item

    async def _notify(self, inspection: PermitInspection, permit: Permit, template_type: str,
                      include_inspector: bool = False):
        data = {
            "permit_number": permit.permit_number,
            "inspection_id": str(inspection.id),
            "inspection_type": inspection.type.value,
            "scheduled_date": inspection.scheduled_date.isoformat(),
            "inspector_name": inspection.inspector_name,
            "property_address": inspection.property_address,
            "result": inspection.result.value,
        }
        recipients = [permit.submitted_by or permit.created_by]
        if include_inspector:
            recipients.append(inspection.inspector_id)
        await notification_service.send_bulk(
            [r for r in recipients if r], template_type, data, municipality_id=permit.municipality_id
        )


inspection_service = InspectionService()
