from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel, ASCENDING, DESCENDING

from ..core.config import settings
from ..core.errors import StateError
from .common import Lifecycle, Note, new_item_id
from .permit_type import PermitKind


class PermitStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    DENIED = "denied"
    ON_HOLD = "on_hold"
    EXPIRED = "expired"
    CLOSED = "closed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: Dict[PermitStatus, set] = {
    PermitStatus.DRAFT: {PermitStatus.SUBMITTED, PermitStatus.CANCELLED},
    PermitStatus.SUBMITTED: {PermitStatus.UNDER_REVIEW, PermitStatus.ON_HOLD, PermitStatus.CANCELLED, PermitStatus.DENIED},
    PermitStatus.UNDER_REVIEW: {PermitStatus.APPROVED, PermitStatus.DENIED, PermitStatus.ON_HOLD, PermitStatus.CANCELLED},
    PermitStatus.ON_HOLD: {PermitStatus.SUBMITTED, PermitStatus.UNDER_REVIEW, PermitStatus.CANCELLED},
    PermitStatus.APPROVED: {PermitStatus.CLOSED, PermitStatus.EXPIRED, PermitStatus.ON_HOLD},
    PermitStatus.DENIED: {PermitStatus.CLOSED, PermitStatus.UNDER_REVIEW},
    PermitStatus.EXPIRED: {PermitStatus.CLOSED},
    PermitStatus.CLOSED: set(),
    PermitStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = {PermitStatus.CLOSED, PermitStatus.CANCELLED}
REVIEWABLE_STATUSES = {PermitStatus.SUBMITTED, PermitStatus.UNDER_REVIEW, PermitStatus.ON_HOLD}

PERMIT_NUMBER_PREFIXES = {
    PermitKind.BUILDING: "BLD",
    PermitKind.ELECTRICAL: "ELC",
    PermitKind.PLUMBING: "PLB",
    PermitKind.MECHANICAL: "MEC",
    PermitKind.DEMOLITION: "DEM",
    PermitKind.ZONING: "ZON",
    PermitKind.SIGN: "SGN",
    PermitKind.OCCUPANCY: "OCC",
    PermitKind.FIRE: "FIR",
    PermitKind.OTHER: "OTH",
}


def can_transition(current: PermitStatus, target: PermitStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class FeeLineType(str, Enum):
    BASE = "base"
    VALUATION = "valuation"
    PLAN_REVIEW = "plan_review"
    INSPECTION = "inspection"
    REINSPECTION = "reinspection"
    EXPEDITE = "expedite"
    LATE = "late"
    OTHER = "other"


class PermitFee(BaseModel):
    id: str = Field(default_factory=new_item_id)
    type: FeeLineType = FeeLineType.BASE
    description: str
    amount: float = Field(..., ge=0)
    paid: bool = False
    paid_date: Optional[datetime] = None
    paid_amount: Optional[float] = None
    payment_method: Optional[str] = None
    receipt_number: Optional[str] = None
    refunded: bool = False


class Applicant(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    CONDITIONALLY_APPROVED = "conditionally_approved"
    REJECTED = "rejected"
    REVISIONS_REQUESTED = "revisions_requested"


class ReviewAction(str, Enum):
    ASSIGNED = "assigned"
    STARTED = "started"
    APPROVED = "approved"
    CONDITIONALLY_APPROVED = "conditionally_approved"
    REJECTED = "rejected"
    REVISIONS_REQUESTED = "revisions_requested"
    RE_REVIEW_REQUESTED = "re_review_requested"


class ReviewHistoryEntry(BaseModel):
    action: ReviewAction
    status: ReviewStatus
    performed_by: str
    performed_at: datetime = Field(default_factory=datetime.utcnow)
    notes: Optional[str] = None


class DepartmentReview(BaseModel):
    """One department's sign-off, embedded in the permit"""
    department: str
    required: bool = True
    review_order: int = 0
    status: ReviewStatus = ReviewStatus.PENDING
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    conditions: List[str] = Field(default_factory=list)
    requested_revisions: List[str] = Field(default_factory=list)
    requires_re_review: bool = False
    review_history: List[ReviewHistoryEntry] = Field(default_factory=list)


class StatusHistoryEntry(BaseModel):
    status: PermitStatus
    previous_status: Optional[PermitStatus] = None
    changed_by: str
    changed_by_name: Optional[str] = None
    changed_at: datetime = Field(default_factory=datetime.utcnow)
    notes: Optional[str] = None


class ViewRecord(BaseModel):
    user_id: str
    last_viewed_at: datetime = Field(default_factory=datetime.utcnow)


class SLA(BaseModel):
    target_review_days: int = 30
    expected_completion_date: Optional[datetime] = None
    actual_completion_date: Optional[datetime] = None
    is_overdue: bool = False
    days_overdue: int = 0


class ProjectStats(BaseModel):
    total_children: int = 0
    children_by_status: Dict[str, int] = Field(default_factory=dict)
    total_project_value: float = 0
    completed_children: int = 0
    overall_progress: float = 0
    last_child_update: Optional[datetime] = None


class Permit(Document):
    """A permit application and everything that happens to it"""

    municipality_id: str = Field(..., description="Issuing municipality")
    permit_number: str = Field(..., description="Year, type prefix and sequence, e.g. 2026-BLD-000042")
    property_id: Optional[str] = None
    property_address: Optional[str] = None
    permit_type_id: str = Field(..., description="Template this permit was created from")
    type: PermitKind = PermitKind.BUILDING
    status: PermitStatus = PermitStatus.DRAFT

    # Parties
    applicant: Applicant
    contractor_id: Optional[str] = None
    submitted_by: Optional[str] = None
    created_by: str

    # Work
    description: Optional[str] = None
    scope_of_work: Optional[str] = None
    estimated_value: float = Field(default=0, ge=0)
    square_footage: float = Field(default=0, ge=0)
    units: Optional[int] = Field(default=None, ge=0)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    # Money
    fees: List[PermitFee] = Field(default_factory=list)
    fee_schedule_snapshot: Optional[Dict[str, Any]] = Field(None, description="Schedule in force at creation; never recalculated")

    # Reviews
    department_reviews: List[DepartmentReview] = Field(default_factory=list)

    # Dates
    application_date: datetime = Field(default_factory=datetime.utcnow)
    submitted_date: Optional[datetime] = None
    review_start_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None
    expiration_date: Optional[datetime] = None
    denied_by: Optional[str] = None
    denial_reason: Optional[str] = None
    completion_date: Optional[datetime] = None

    sla: SLA = Field(default_factory=SLA)

    # Projects
    is_project: bool = False
    project_name: Optional[str] = None
    project_id: Optional[str] = Field(None, description="Parent project permit for child permits")
    child_permits: List[str] = Field(default_factory=list)
    project_stats: ProjectStats = Field(default_factory=ProjectStats)

    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    viewed_by: List[ViewRecord] = Field(default_factory=list)
    internal_notes: List[Note] = Field(default_factory=list)

    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "permits"
        indexes = [
            IndexModel(
                [("municipality_id", ASCENDING), ("permit_number", ASCENDING)],
                unique=True,
                name="municipality_permit_number_unique"
            ),
            IndexModel([("municipality_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("submitted_by", ASCENDING)]),
            IndexModel([("contractor_id", ASCENDING)]),
            IndexModel([("project_id", ASCENDING)]),
        ]

    # Fee totals

    @property
    def total_fees(self) -> float:
        return round(sum(f.amount for f in self.fees if not f.refunded), 2)

    @property
    def total_paid(self) -> float:
        return round(sum((f.paid_amount or f.amount) for f in self.fees if f.paid and not f.refunded), 2)

    @property
    def unpaid_fees(self) -> float:
        return round(self.total_fees - self.total_paid, 2)

    @property
    def is_fully_paid(self) -> bool:
        return self.unpaid_fees <= 0

    # Ownership

    def is_owned_by(self, user_id: str, contractor_id: Optional[str] = None) -> bool:
        if user_id and user_id in (self.submitted_by, self.created_by):
            return True
        return bool(contractor_id and self.contractor_id == contractor_id)

    # State machine

    def update_status(
        self,
        new_status: PermitStatus,
        user_id: str,
        notes: Optional[str] = None,
        user_name: Optional[str] = None
    ) -> StatusHistoryEntry:
        """
        Move the permit to ``new_status`` and record it in the status history.

        Stamps the dates that belong to the target status. Does not save.
        """
        new_status = PermitStatus(new_status)
        previous = self.status
        if not can_transition(previous, new_status):
            raise StateError(
                f"Cannot change permit status from '{previous.value}' to '{new_status.value}'"
            )

        now = datetime.utcnow()
        self.status = new_status

        if new_status == PermitStatus.SUBMITTED:
            self.submitted_date = now
            if not self.submitted_by:
                self.submitted_by = user_id
            self.sla.expected_completion_date = now + timedelta(days=self.sla.target_review_days)
        elif new_status == PermitStatus.UNDER_REVIEW:
            self.review_start_date = now
        elif new_status == PermitStatus.APPROVED:
            self.approval_date = now
            self.approved_by = user_id
            self.approval_notes = notes
            self.expiration_date = now + timedelta(days=settings.PERMIT_EXPIRATION_DAYS)
        elif new_status == PermitStatus.DENIED:
            self.denied_by = user_id
            self.denial_reason = notes
        elif new_status == PermitStatus.CLOSED:
            self.completion_date = now
            self.sla.actual_completion_date = now

        entry = StatusHistoryEntry(
            status=new_status,
            previous_status=previous,
            changed_by=user_id,
            changed_by_name=user_name,
            changed_at=now,
            notes=notes,
        )
        self.status_history.append(entry)
        self.updated_at = now
        return entry

    def refresh_sla(self, now: Optional[datetime] = None):
        """Recompute overdue flags for permits still waiting on review"""
        now = now or datetime.utcnow()
        expected = self.sla.expected_completion_date
        if self.status in (PermitStatus.SUBMITTED, PermitStatus.UNDER_REVIEW) and expected and now > expected:
            self.sla.is_overdue = True
            self.sla.days_overdue = (now - expected).days
        else:
            self.sla.is_overdue = False
            self.sla.days_overdue = 0

    def find_review(self, department: str) -> Optional[DepartmentReview]:
        for review in self.department_reviews:
            if review.department == department:
                return review
        return None

    def mark_viewed(self, user_id: str):
        now = datetime.utcnow()
        for record in self.viewed_by:
            if record.user_id == user_id:
                record.last_viewed_at = now
                return
        self.viewed_by.append(ViewRecord(user_id=user_id, last_viewed_at=now))

    def add_internal_note(self, user_id: str, content: str, user_name: Optional[str] = None) -> Note:
        note = Note(content=content, created_by=user_id, created_by_name=user_name)
        self.internal_notes.append(note)
        self.updated_at = datetime.utcnow()
        return note
