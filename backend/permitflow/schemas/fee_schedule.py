from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..models.common import UTCDateTime
from ..models.fee_schedule import FeeSchedule, FeeConfiguration, ChangeReason
from ..services.fee_calculator import FeeCalculation


class FeeScheduleCreate(BaseModel):
    name: Optional[str] = Field(None, description="Defaults to the copied version's name")
    description: Optional[str] = None
    fee_configuration: Optional[FeeConfiguration] = None
    change_reason: ChangeReason = ChangeReason.INITIAL_SETUP
    change_notes: Optional[str] = None
    effective_date: Optional[UTCDateTime] = None
    copy_from_version_id: Optional[str] = Field(None, description="Clone configuration from this schedule")


class FeeScheduleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    fee_configuration: Optional[FeeConfiguration] = None
    change_reason: Optional[ChangeReason] = None
    change_notes: Optional[str] = None
    effective_date: Optional[UTCDateTime] = None


class FeeScheduleActivate(BaseModel):
    schedule_for: Optional[UTCDateTime] = Field(None, description="Future activation date; omit to activate now")


class FeeScheduleListResponse(BaseModel):
    schedules: List[FeeSchedule]
    total: int


class FeeCalculationRequest(BaseModel):
    estimated_value: float = Field(default=0, ge=0)
    square_footage: float = Field(default=0, ge=0)
    units: Optional[int] = Field(default=None, ge=0)
    fields: Dict[str, Any] = Field(default_factory=dict, description="Extra values read by fee conditions")
    fee_schedule_id: Optional[str] = Field(None, description="Preview a specific version instead of the active one")

    def permit_data(self) -> Dict[str, Any]:
        data = dict(self.fields)
        data.update({
            "estimated_value": self.estimated_value,
            "square_footage": self.square_footage,
            "units": self.units,
        })
        return data


class FeeCalculationResponse(BaseModel):
    fee_schedule_id: str
    version: int
    calculation: FeeCalculation


class PermitTypeFeeSummary(BaseModel):
    permit_type_id: str
    permit_type_name: str
    active_version: Optional[int] = None
    active_schedule_id: Optional[str] = None
    scheduled_versions: List[int] = Field(default_factory=list)
    draft_versions: List[int] = Field(default_factory=list)
    total_versions: int = 0


class FeeScheduleSummaryResponse(BaseModel):
    municipality_id: str
    permit_types: List[PermitTypeFeeSummary]


class ActivationSweepResponse(BaseModel):
    processed: int
    errors: List[Dict[str, str]] = Field(default_factory=list)
