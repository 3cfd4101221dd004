from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from ..models.checklist_template import ChecklistTemplateItem, InspectionChecklistTemplate
from ..models.common import UTCDateTime
from ..models.inspection import (
    ChecklistItem,
    InspectionResult,
    InspectionStatus,
    PermitInspection,
    ViolationSeverity,
)
from ..models.inspection_settings import InspectorProfile, TimeWindow
from ..models.permit_type import InspectionType


class InspectionCreate(BaseModel):
    type: InspectionType
    scheduled_date: UTCDateTime = Field(..., description="Requested slot start")
    scheduled_time_slot: Optional[str] = Field(None, description="Display form, e.g. 09:00-10:00")
    inspector_id: Optional[str] = Field(None, description="Staff may pick the inspector")
    description: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    access_instructions: Optional[str] = None


class InspectionReschedule(BaseModel):
    scheduled_date: UTCDateTime
    scheduled_time_slot: Optional[str] = None
    reason: Optional[str] = Field(None, description="Required")
    inspector_id: Optional[str] = None


class InspectionStatusUpdate(BaseModel):
    status: InspectionStatus
    result: Optional[InspectionResult] = None
    comments: Optional[str] = None


class ViolationCreate(BaseModel):
    description: str = Field(..., min_length=1)
    code_reference: Optional[str] = None
    severity: ViolationSeverity = ViolationSeverity.MAJOR
    location: Optional[str] = None


class ViolationCorrect(BaseModel):
    notes: Optional[str] = None


class InspectionNoteCreate(BaseModel):
    content: str = Field(..., min_length=1)


class ChecklistItemUpdate(BaseModel):
    checked: Optional[bool] = None
    notes: Optional[str] = None


class ChecklistResponse(BaseModel):
    inspection_id: str
    checklist_template_id: Optional[str] = None
    checklist: List[ChecklistItem]
    required_total: int
    required_checked: int


class InspectionListResponse(BaseModel):
    inspections: List[PermitInspection]
    total: int
    page: int = 1
    page_size: int = 20


class AvailableSlot(BaseModel):
    start: datetime
    end: datetime
    inspector_id: str
    inspector_name: Optional[str] = None


class AvailableSlotsResponse(BaseModel):
    inspection_type: InspectionType
    buffer_days: int
    estimated_minutes: int
    available_slots: List[AvailableSlot]


class InspectionSettingsUpdate(BaseModel):
    available_time_slots: List[TimeWindow] = Field(default_factory=list)
    inspectors: List[InspectorProfile] = Field(default_factory=list)


class ChecklistTemplateCreate(BaseModel):
    inspection_type: InspectionType
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    items: List[ChecklistTemplateItem] = Field(default_factory=list)


class ChecklistTemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    items: Optional[List[ChecklistTemplateItem]] = None
    is_active: Optional[bool] = None


class ChecklistTemplateListResponse(BaseModel):
    templates: List[InspectionChecklistTemplate]
    total: int
