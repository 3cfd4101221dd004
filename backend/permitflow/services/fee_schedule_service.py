"""
Fee schedule administration: versioning, activation and fee previews.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo.errors import DuplicateKeyError

from ..auth.principal import AuthenticatedPrincipal
from ..core.errors import NotFoundError, StateError, ValidationError, conflict_from_duplicate
from ..core.logging_config import get_permit_logger
from ..models.common import ACTIVE, parse_object_id
from ..models.fee_schedule import FeeSchedule, FeeScheduleStatus, FeeConfiguration
from ..models.permit_type import PermitType
from ..schemas.fee_schedule import (
    FeeScheduleCreate,
    FeeScheduleUpdate,
    PermitTypeFeeSummary,
)
from .fee_calculator import calculate_fees, FeeCalculation

logger = get_permit_logger(__name__)


class FeeScheduleService:
    """Versioned fee schedules for permit types"""

    async def get_schedule(self, municipality_id: str, permit_type_id: str, schedule_id: str) -> FeeSchedule:
        schedule = await FeeSchedule.find_one({
            "_id": parse_object_id(schedule_id, "Fee schedule"),
            "municipality_id": municipality_id,
            "permit_type_id": permit_type_id,
        })
        if not schedule:
            raise NotFoundError("Fee schedule not found")
        return schedule

    async def list_schedules(self, municipality_id: str, permit_type_id: str,
                             include_archived: bool = False) -> List[FeeSchedule]:
        await PermitType.get_for_municipality(municipality_id, permit_type_id)
        return await FeeSchedule.get_version_history(permit_type_id, include_archived=include_archived)

    async def get_active(self, municipality_id: str, permit_type_id: str) -> FeeSchedule:
        await PermitType.get_for_municipality(municipality_id, permit_type_id)
        schedule = await FeeSchedule.get_active_schedule(permit_type_id)
        if not schedule:
            raise NotFoundError("No active fee schedule for this permit type")
        return schedule

    async def create_schedule(
        self,
        municipality_id: str,
        permit_type_id: str,
        data: FeeScheduleCreate,
        principal: AuthenticatedPrincipal
    ) -> FeeSchedule:
        """Create a draft, either from scratch or copied from an existing version"""
        permit_type = await PermitType.get_for_municipality(municipality_id, permit_type_id)

        if data.copy_from_version_id:
            source = await self.get_schedule(municipality_id, permit_type_id, data.copy_from_version_id)
            schedule = await FeeSchedule.create_new_version(
                str(source.id),
                principal.user_id,
                name=data.name,
                change_reason=data.change_reason,
                change_notes=data.change_notes,
            )
            if data.fee_configuration or data.description is not None:
                if data.fee_configuration:
                    schedule.fee_configuration = data.fee_configuration
                if data.description is not None:
                    schedule.description = data.description
                await schedule.save()
        else:
            if not data.fee_configuration:
                raise ValidationError("fee_configuration is required when not copying an existing version")
            schedule = FeeSchedule(
                municipality_id=municipality_id,
                permit_type_id=permit_type_id,
                version=await FeeSchedule.get_next_version(permit_type_id),
                name=data.name or f"{permit_type.name} fees",
                description=data.description,
                fee_configuration=data.fee_configuration,
                change_reason=data.change_reason,
                change_notes=data.change_notes,
                effective_date=data.effective_date,
                created_by=principal.user_id,
            )
            try:
                await schedule.insert()
            except DuplicateKeyError as e:
                raise conflict_from_duplicate(e, f"Fee schedule version {schedule.version}")

        logger.info("Fee schedule draft created", permit_type_id=permit_type_id,
                    schedule_version=schedule.version)
        return schedule

    async def update_schedule(
        self,
        municipality_id: str,
        permit_type_id: str,
        schedule_id: str,
        data: FeeScheduleUpdate,
        principal: AuthenticatedPrincipal
    ) -> FeeSchedule:
        schedule = await self.get_schedule(municipality_id, permit_type_id, schedule_id)
        if not schedule.is_editable:
            raise StateError(
                f"Cannot edit fee schedule with status '{schedule.status.value}'. Only drafts can be modified."
            )

        for field, value in data.dict(exclude_unset=True).items():
            if field == "fee_configuration" and value is not None:
                value = FeeConfiguration(**value)
            setattr(schedule, field, value)
        schedule.updated_at = datetime.utcnow()
        await schedule.save()
        return schedule

    async def activate_schedule(
        self,
        schedule: FeeSchedule,
        principal: AuthenticatedPrincipal,
        schedule_for: Optional[datetime] = None
    ) -> FeeSchedule:
        """Activate now, or queue for the activation sweep when ``schedule_for`` is given"""
        if schedule.status not in (FeeScheduleStatus.DRAFT, FeeScheduleStatus.SCHEDULED):
            raise StateError(
                f"Cannot activate fee schedule with status '{schedule.status.value}'. "
                "Only draft or scheduled schedules can be activated."
            )

        if schedule_for:
            await schedule.schedule(schedule_for, principal.user_id)
            logger.info("Fee schedule scheduled", permit_type_id=schedule.permit_type_id,
                        schedule_version=schedule.version, effective_date=schedule_for.isoformat())
            return schedule

        await schedule.activate(principal.user_id)
        await self.link_permit_type(schedule)
        logger.info("Fee schedule activated", permit_type_id=schedule.permit_type_id,
                    schedule_version=schedule.version)
        return schedule

    async def link_permit_type(self, schedule: FeeSchedule):
        """Point the permit type's cached fee schedule reference at ``schedule``"""
        await PermitType.get_pymongo_collection().update_one(
            {"_id": parse_object_id(schedule.permit_type_id, "Permit type")},
            {"$set": {
                "fee_schedule.linked_schedule_id": str(schedule.id),
                "fee_schedule.linked_at": datetime.utcnow(),
            }}
        )

    async def cancel_scheduled(self, schedule: FeeSchedule) -> FeeSchedule:
        await schedule.cancel_schedule()
        return schedule

    async def delete_schedule(self, schedule: FeeSchedule):
        if not schedule.is_editable:
            raise StateError(
                f"Cannot delete fee schedule with status '{schedule.status.value}'. Only drafts can be deleted."
            )
        await schedule.delete()

    async def calculate(
        self,
        municipality_id: str,
        permit_type_id: str,
        permit_data: Dict[str, Any],
        schedule_id: Optional[str] = None
    ) -> tuple:
        """Preview fees against the active schedule (or a chosen version)"""
        if schedule_id:
            schedule = await self.get_schedule(municipality_id, permit_type_id, schedule_id)
        else:
            schedule = await self.get_active(municipality_id, permit_type_id)
        return schedule, calculate_fees(schedule.fee_configuration, permit_data)

    async def quote_for_permit(self, permit_type_id: str, permit_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Snapshot of the schedule in force plus the computed fees, or None when unpriced"""
        schedule = await FeeSchedule.get_active_schedule(permit_type_id)
        if not schedule:
            return None
        calculation: FeeCalculation = calculate_fees(schedule.fee_configuration, permit_data)
        snapshot = schedule.create_snapshot()
        snapshot["calculation"] = calculation.model_dump()
        return snapshot

    async def municipality_summary(self, municipality_id: str) -> List[PermitTypeFeeSummary]:
        permit_types = await PermitType.find({"municipality_id": municipality_id, **ACTIVE}).sort(
            [("name", 1)]
        ).to_list()

        summaries = []
        for permit_type in permit_types:
            schedules = await FeeSchedule.find({"permit_type_id": str(permit_type.id)}).sort(
                [("version", 1)]
            ).to_list()
            active = next((s for s in schedules if s.status == FeeScheduleStatus.ACTIVE), None)
            summaries.append(PermitTypeFeeSummary(
                permit_type_id=str(permit_type.id),
                permit_type_name=permit_type.name,
                active_version=active.version if active else None,
                active_schedule_id=str(active.id) if active else None,
                scheduled_versions=[s.version for s in schedules if s.status == FeeScheduleStatus.SCHEDULED],
                draft_versions=[s.version for s in schedules if s.status == FeeScheduleStatus.DRAFT],
                total_versions=len(schedules),
            ))
        return summaries


fee_schedule_service = FeeScheduleService()
