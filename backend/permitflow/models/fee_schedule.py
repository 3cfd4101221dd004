from typing import List, Optional, Any
from datetime import datetime
from enum import Enum
from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel, ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from ..core.errors import StateError, ValidationError, conflict_from_duplicate
from ..core.logging_config import get_permit_logger
from .common import parse_object_id

logger = get_permit_logger(__name__)


class FeeScheduleStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ARCHIVED = "archived"


class CalculationType(str, Enum):
    FLAT = "flat"
    PER_SQFT = "per_sqft"
    PERCENTAGE = "percentage"
    TIERED = "tiered"
    CUSTOM = "custom"


class AdditionalFeeType(str, Enum):
    PLAN_REVIEW = "plan_review"
    INSPECTION = "inspection"
    REINSPECTION = "reinspection"
    EXPEDITE = "expedite"
    TECHNOLOGY = "technology"
    ADMINISTRATIVE = "administrative"
    OTHER = "other"


class AdditionalFeeCalculation(str, Enum):
    FLAT = "flat"
    PERCENTAGE_OF_BASE = "percentage_of_base"
    PER_SQFT = "per_sqft"
    PER_UNIT = "per_unit"


class ConditionOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"


class ChangeReason(str, Enum):
    INITIAL_SETUP = "initial_setup"
    ANNUAL_ADJUSTMENT = "annual_adjustment"
    POLICY_CHANGE = "policy_change"
    CORRECTION = "correction"
    INFLATION_ADJUSTMENT = "inflation_adjustment"
    COUNCIL_DECISION = "council_decision"
    STATE_MANDATE = "state_mandate"
    OTHER = "other"


class FeeTier(BaseModel):
    """One bracket of a tiered calculation; brackets are cumulative"""
    min_value: float = 0
    max_value: Optional[float] = None
    rate: float = 0
    flat_amount: float = 0


class FeeCondition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any


class AdditionalFee(BaseModel):
    name: str
    type: AdditionalFeeType = AdditionalFeeType.OTHER
    calculation_type: AdditionalFeeCalculation = AdditionalFeeCalculation.FLAT
    amount: float = 0
    applies_when: Optional[FeeCondition] = None
    is_optional: bool = False
    description: Optional[str] = None


class FeeConfiguration(BaseModel):
    calculation_type: CalculationType = CalculationType.FLAT
    base_amount: float = Field(default=0, ge=0)
    per_sqft_rate: float = Field(default=0, ge=0)
    percentage_rate: float = Field(default=0, ge=0, le=100)
    tiers: List[FeeTier] = Field(default_factory=list)
    minimum_fee: Optional[float] = Field(default=None, ge=0)
    maximum_fee: Optional[float] = Field(default=None, ge=0)
    formula: Optional[str] = Field(None, description="Reserved for custom calculations; not evaluated")
    additional_fees: List[AdditionalFee] = Field(default_factory=list)


class FeeSchedule(Document):
    """One version of the fee policy for a permit type"""

    municipality_id: str = Field(..., description="Owning municipality")
    permit_type_id: str = Field(..., description="Permit type this schedule prices")
    version: int = Field(..., ge=1, description="Monotonic version number per permit type")
    name: str = Field(..., description="Human readable schedule name")
    description: Optional[str] = None

    status: FeeScheduleStatus = Field(default=FeeScheduleStatus.DRAFT)
    effective_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    fee_configuration: FeeConfiguration = Field(default_factory=FeeConfiguration)

    change_reason: ChangeReason = Field(default=ChangeReason.INITIAL_SETUP)
    change_notes: Optional[str] = None

    # Audit trail
    created_by: str = Field(..., description="User who created this version")
    previous_version_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    scheduled_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None
    archived_at: Optional[datetime] = None
    archived_by: Optional[str] = None
    archived_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "fee_schedules"
        indexes = [
            IndexModel(
                [("permit_type_id", ASCENDING), ("version", ASCENDING)],
                unique=True,
                name="permit_type_version_unique"
            ),
            IndexModel(
                [("permit_type_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"status": "active"},
                name="one_active_per_permit_type"
            ),
            IndexModel([("municipality_id", ASCENDING), ("status", ASCENDING)]),
            IndexModel([("status", ASCENDING), ("effective_date", ASCENDING)]),
        ]

    @property
    def is_editable(self) -> bool:
        return self.status == FeeScheduleStatus.DRAFT

    @classmethod
    async def get_active_schedule(cls, permit_type_id: str, as_of: Optional[datetime] = None) -> Optional["FeeSchedule"]:
        """Schedule in force for a permit type at ``as_of`` (defaults to now)"""
        as_of = as_of or datetime.utcnow()
        schedules = await cls.find({
            "permit_type_id": permit_type_id,
            "status": FeeScheduleStatus.ACTIVE.value,
            "effective_date": {"$lte": as_of},
            "$or": [{"end_date": None}, {"end_date": {"$gt": as_of}}],
        }).sort([("effective_date", DESCENDING)]).limit(1).to_list()
        return schedules[0] if schedules else None

    @classmethod
    async def get_scheduled_to_activate(cls, as_of: Optional[datetime] = None) -> List["FeeSchedule"]:
        as_of = as_of or datetime.utcnow()
        return await cls.find({
            "status": FeeScheduleStatus.SCHEDULED.value,
            "effective_date": {"$lte": as_of},
        }).sort([("effective_date", ASCENDING)]).to_list()

    @classmethod
    async def get_version_history(cls, permit_type_id: str, include_archived: bool = False) -> List["FeeSchedule"]:
        query = {"permit_type_id": permit_type_id}
        if not include_archived:
            query["status"] = {"$ne": FeeScheduleStatus.ARCHIVED.value}
        return await cls.find(query).sort([("version", DESCENDING)]).to_list()

    @classmethod
    async def get_next_version(cls, permit_type_id: str) -> int:
        latest = await cls.find({"permit_type_id": permit_type_id}).sort(
            [("version", DESCENDING)]
        ).limit(1).to_list()
        return latest[0].version + 1 if latest else 1

    @classmethod
    async def create_new_version(
        cls,
        source_id: str,
        user_id: str,
        name: Optional[str] = None,
        change_reason: ChangeReason = ChangeReason.OTHER,
        change_notes: Optional[str] = None
    ) -> "FeeSchedule":
        """Clone an existing schedule's configuration into a new draft version"""
        source = await cls.get(parse_object_id(source_id, "Source fee schedule"))
        if not source:
            raise ValidationError("Source fee schedule not found")

        schedule = cls(
            municipality_id=source.municipality_id,
            permit_type_id=source.permit_type_id,
            version=await cls.get_next_version(source.permit_type_id),
            name=name or source.name,
            description=source.description,
            fee_configuration=source.fee_configuration.model_copy(deep=True),
            change_reason=change_reason,
            change_notes=change_notes,
            created_by=user_id,
            previous_version_id=str(source.id),
            effective_date=datetime.utcnow(),
        )
        try:
            await schedule.insert()
        except DuplicateKeyError as e:
            raise conflict_from_duplicate(e, f"Fee schedule version {schedule.version}")
        return schedule

    async def activate(self, user_id: str, reason: Optional[str] = None):
        """
        Make this version the active one for its permit type.

        The previous active version is archived first; the conditional update
        on this document plus the partial unique index on active schedules
        guarantee that at most one version is active at any time. If this
        version can no longer be activated the archived predecessor is put back.
        """
        if self.status not in (FeeScheduleStatus.DRAFT, FeeScheduleStatus.SCHEDULED):
            raise StateError(
                f"Cannot activate fee schedule with status '{self.status.value}'. "
                "Only draft or scheduled schedules can be activated."
            )

        now = datetime.utcnow()
        collection = self.get_pymongo_collection()
        current_query = {
            "permit_type_id": self.permit_type_id,
            "status": FeeScheduleStatus.ACTIVE.value,
            "_id": {"$ne": self.id},
        }
        superseded = [doc["_id"] async for doc in collection.find(current_query, {"_id": 1})]
        await collection.update_many(
            {**current_query, "_id": {"$in": superseded}},
            {"$set": {
                "status": FeeScheduleStatus.ARCHIVED.value,
                "end_date": now,
                "archived_at": now,
                "archived_by": user_id,
                "archived_reason": reason or f"Superseded by version {self.version}",
                "updated_at": now,
            }}
        )

        effective_date = self.effective_date
        if effective_date is None or effective_date > now:
            effective_date = now

        changes = {
            "status": FeeScheduleStatus.ACTIVE.value,
            "effective_date": effective_date,
            "end_date": None,
            "activated_at": now,
            "activated_by": user_id,
            "updated_at": now,
        }
        try:
            result = await collection.update_one(
                {"_id": self.id, "status": {"$in": [FeeScheduleStatus.DRAFT.value, FeeScheduleStatus.SCHEDULED.value]}},
                {"$set": changes}
            )
        except DuplicateKeyError as e:
            await self._restore_superseded(superseded)
            raise conflict_from_duplicate(e, "An active fee schedule for this permit type")

        if result.matched_count == 0:
            await self._restore_superseded(superseded)
            raise StateError("Fee schedule was changed by another request; reload and try again")

        changes["status"] = FeeScheduleStatus.ACTIVE
        for key, value in changes.items():
            setattr(self, key, value)

    async def _restore_superseded(self, schedule_ids: list):
        """Undo the archive step of a failed activation"""
        if not schedule_ids:
            return
        try:
            await self.get_pymongo_collection().update_many(
                {
                    "_id": {"$in": schedule_ids},
                    "status": FeeScheduleStatus.ARCHIVED.value,
                },
                {"$set": {
                    "status": FeeScheduleStatus.ACTIVE.value,
                    "end_date": None,
                    "archived_at": None,
                    "archived_by": None,
                    "archived_reason": None,
                    "updated_at": datetime.utcnow(),
                }}
            )
        except DuplicateKeyError:
            # Another version became active in the meantime; it stays in force
            logger.warning("Superseded fee schedule not restored; another version is active",
                           permit_type_id=self.permit_type_id)

    async def schedule(self, effective_date: datetime, user_id: str):
        """Queue this draft for activation by the activation sweep, or move an already queued one"""
        if effective_date <= datetime.utcnow():
            raise ValidationError("Effective date must be in the future for scheduling")
        if self.status not in (FeeScheduleStatus.DRAFT, FeeScheduleStatus.SCHEDULED):
            raise StateError(
                f"Cannot schedule fee schedule with status '{self.status.value}'. "
                "Only draft or scheduled schedules can be scheduled."
            )

        self.status = FeeScheduleStatus.SCHEDULED
        self.effective_date = effective_date
        self.scheduled_at = datetime.utcnow()
        self.scheduled_by = user_id
        self.updated_at = datetime.utcnow()
        await self.save()

    async def cancel_schedule(self):
        if self.status != FeeScheduleStatus.SCHEDULED:
            raise StateError("Only scheduled fee schedules can be cancelled")
        self.status = FeeScheduleStatus.DRAFT
        self.scheduled_at = None
        self.scheduled_by = None
        self.updated_at = datetime.utcnow()
        await self.save()

    def create_snapshot(self) -> dict:
        return {
            "schedule_id": str(self.id),
            "version": self.version,
            "name": self.name,
            "effective_date": self.effective_date,
            "fee_configuration": self.fee_configuration.model_dump(mode="json"),
            "captured_at": datetime.utcnow(),
        }
