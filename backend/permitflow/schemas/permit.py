from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..models.permit import Applicant, Permit, PermitStatus, ReviewStatus
from ..models.permit_comment import CommentVisibility


class PermitCreate(BaseModel):
    permit_type_id: str = Field(..., description="Permit type template")
    property_id: Optional[str] = Field(None, description="Property the work is on")
    property_address: Optional[str] = None
    applicant: Applicant
    contractor_id: Optional[str] = None
    description: Optional[str] = None
    scope_of_work: Optional[str] = None
    estimated_value: float = Field(default=0, ge=0)
    square_footage: float = Field(default=0, ge=0)
    units: Optional[int] = Field(default=None, ge=0)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    project_id: Optional[str] = Field(None, description="Parent project permit")
    status: Optional[PermitStatus] = Field(None, description="Staff may create directly as submitted")


class PermitUpdate(BaseModel):
    property_address: Optional[str] = None
    applicant: Optional[Applicant] = None
    contractor_id: Optional[str] = None
    description: Optional[str] = None
    scope_of_work: Optional[str] = None
    estimated_value: Optional[float] = Field(None, ge=0)
    square_footage: Optional[float] = Field(None, ge=0)
    units: Optional[int] = Field(None, ge=0)
    custom_fields: Optional[Dict[str, Any]] = None


class PermitStatusUpdate(BaseModel):
    status: PermitStatus
    notes: Optional[str] = None


class PermitNoteCreate(BaseModel):
    content: str = Field(..., min_length=1)


class PermitListResponse(BaseModel):
    permits: List[Permit]
    total: int
    page: int = 1
    page_size: int = 20


class ReviewUpdate(BaseModel):
    status: ReviewStatus
    comments: Optional[str] = Field(None, description="Stored as an internal comment")
    conditions: List[str] = Field(default_factory=list)
    requested_revisions: List[str] = Field(default_factory=list)


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)
    visibility: Optional[CommentVisibility] = Field(None, description="Staff default to internal")
    department: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)


class ProjectCreate(BaseModel):
    permit_type_id: str = Field(..., description="Project permit type")
    project_name: Optional[str] = None
    description: Optional[str] = None
    property_id: Optional[str] = None
    property_address: Optional[str] = None
    applicant: Applicant
    contractor_id: Optional[str] = None
    estimated_value: float = Field(default=0, ge=0)
    child_permit_type_ids: List[str] = Field(default_factory=list, description="One child permit per type")


class ProjectResponse(BaseModel):
    project: Permit
    child_permits: List[Permit]
    total_project_fee: float


class PaymentBreakdownResponse(BaseModel):
    permit_id: str
    permit_number: str
    permit_fee: float
    platform_fee: float
    processor_fee: float
    processing_fees: float
    total_amount: float


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: Optional[str] = None
    breakdown: PaymentBreakdownResponse


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)


class ConfirmPaymentResponse(BaseModel):
    permit: Permit
    payment_status: str
    submitted: bool


# Read-only views

class PermitQueueStats(BaseModel):
    submitted: int = 0
    under_review: int = 0
    on_hold: int = 0
    total: int = 0


class PermitQueueResponse(BaseModel):
    queue: List[Permit]
    needing_attention: List[Permit] = Field(default_factory=list, description="Under review past the attention threshold")
    expiring_soon: List[Permit] = Field(default_factory=list, description="Approved permits about to expire")
    stats: PermitQueueStats


class KindBucket(BaseModel):
    type: str
    count: int
    total_value: float


class MonthBucket(BaseModel):
    year: int
    month: int
    count: int
    total_value: float


class ProcessingTime(BaseModel):
    avg_days: float
    min_days: float
    max_days: float


class PermitStatsResponse(BaseModel):
    start_date: datetime
    end_date: datetime
    by_type: List[KindBucket]
    by_status: Dict[str, int]
    by_month: List[MonthBucket]
    processing_time: Optional[ProcessingTime] = None
    total_value: float = 0
    average_value: float = 0


class KindTotals(BaseModel):
    permits: int = 0
    revenue: int = 0


class DashboardStats(BaseModel):
    current_year: int
    permits_this_year: int
    permits_vs_last_year: int = Field(..., description="Percent change against last year")
    revenue_this_year: int
    revenue_vs_last_year: int
    permits_completed: int
    avg_processing_days: int
    avg_processing_days_last_year: int
    avg_processing_vs_last_year: int
    permits_open: int
    permits_under_review: int
    permits_approved: int
    permits_on_hold: int
    by_type: Dict[str, KindTotals] = Field(default_factory=dict, description="This year's permits and revenue per kind")


class ProjectSummary(BaseModel):
    project: Permit
    permit_count: int = Field(..., description="Active child permits")


class ProjectListStats(BaseModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    on_hold: int = 0
    total_value: float = 0


class ProjectListResponse(BaseModel):
    projects: List[ProjectSummary]
    stats: ProjectListStats


class MunicipalityPermits(BaseModel):
    municipality_id: str
    permits: List[Permit]


class MyPermitsResponse(BaseModel):
    permits: List[Permit]
    stats: Dict[str, int]
    by_municipality: List[MunicipalityPermits]
    is_contractor: bool
    contractor_id: Optional[str] = None
