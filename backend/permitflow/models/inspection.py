from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel, ASCENDING

from ..core.errors import NotFoundError, StateError
from .common import Lifecycle, Note, Photo, new_item_id
from .permit_type import InspectionType


class InspectionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_ACCESS = "no_access"
    RESCHEDULED = "rescheduled"


class InspectionResult(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"
    CONDITIONAL = "conditional"
    CANCELLED = "cancelled"


class ViolationSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class InspectionAction(str, Enum):
    CREATED = "created"
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    STATUS_UPDATED = "status_updated"
    NOTE_ADDED = "note_added"
    PHOTO_ADDED = "photo_added"
    CHECKLIST_UPDATED = "checklist_updated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses that hold a slot on the inspector's calendar
BOOKED_STATUSES = {InspectionStatus.SCHEDULED, InspectionStatus.IN_PROGRESS, InspectionStatus.RESCHEDULED}
CLOSED_STATUSES = {InspectionStatus.COMPLETED, InspectionStatus.CANCELLED}


class Violation(BaseModel):
    id: str = Field(default_factory=new_item_id)
    description: str
    code_reference: Optional[str] = None
    severity: ViolationSeverity = ViolationSeverity.MAJOR
    location: Optional[str] = None
    corrected: bool = False
    corrected_at: Optional[datetime] = None
    corrected_by: Optional[str] = None
    correction_notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ChecklistItem(BaseModel):
    id: str = Field(default_factory=new_item_id)
    text: str
    category: Optional[str] = None
    is_required: bool = True
    order: int = 0
    checked: bool = False
    checked_by: Optional[str] = None
    checked_at: Optional[datetime] = None
    notes: Optional[str] = None


class InspectionHistoryEntry(BaseModel):
    action: InspectionAction
    performed_by: str
    performed_at: datetime = Field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class PermitInspection(Document):
    """A single inspection visit booked against a permit"""

    municipality_id: str
    permit_id: str
    permit_number: Optional[str] = None
    property_address: Optional[str] = None
    type: InspectionType

    scheduled_date: datetime = Field(..., description="Start of the booked slot")
    scheduled_time_slot: Optional[str] = Field(None, description="Display form, e.g. 09:00-10:00")
    estimated_minutes: int = 60

    inspector_id: Optional[str] = None
    inspector_name: Optional[str] = None
    requested_by: Optional[str] = None
    description: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    access_instructions: Optional[str] = None

    status: InspectionStatus = InspectionStatus.SCHEDULED
    result: InspectionResult = InspectionResult.PENDING
    comments: Optional[str] = None

    violations: List[Violation] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    notes: List[Note] = Field(default_factory=list)
    photos: List[Photo] = Field(default_factory=list)

    checklist: List[ChecklistItem] = Field(default_factory=list)
    checklist_template_id: Optional[str] = None

    requires_reinspection: bool = False
    reinspection_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    history: List[InspectionHistoryEntry] = Field(default_factory=list)

    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "permit_inspections"
        indexes = [
            IndexModel([("permit_id", ASCENDING), ("scheduled_date", ASCENDING)]),
            IndexModel([("municipality_id", ASCENDING), ("scheduled_date", ASCENDING)]),
            IndexModel([("inspector_id", ASCENDING), ("scheduled_date", ASCENDING)]),
        ]

    @property
    def scheduled_end(self) -> datetime:
        return self.scheduled_date + timedelta(minutes=self.estimated_minutes)

    @property
    def open_violations(self) -> List[Violation]:
        return [v for v in self.violations if not v.corrected]

    def record(self, action: InspectionAction, user_id: str, **details):
        self.history.append(InspectionHistoryEntry(action=action, performed_by=user_id, details=details))
        self.updated_at = datetime.utcnow()

    def ensure_mutable(self):
        if self.status == InspectionStatus.COMPLETED:
            raise StateError("Cannot modify a completed inspection")
        if self.status == InspectionStatus.CANCELLED:
            raise StateError("Cannot modify a cancelled inspection")

    def update_reinspection_flag(self):
        """Reinspection is needed after a failure or a partial pass that left violations open"""
        if self.result == InspectionResult.FAILED:
            self.requires_reinspection = True
        elif self.result == InspectionResult.PARTIAL and self.open_violations:
            self.requires_reinspection = True

    def add_violation(self, user_id: str, description: str, severity: ViolationSeverity = ViolationSeverity.MAJOR,
                      code_reference: Optional[str] = None, location: Optional[str] = None) -> Violation:
        violation = Violation(
            description=description,
            severity=severity,
            code_reference=code_reference,
            location=location,
            created_by=user_id,
        )
        self.violations.append(violation)
        if self.result == InspectionResult.PASSED:
            self.result = InspectionResult.FAILED
        self.requires_reinspection = True
        self.record(InspectionAction.NOTE_ADDED, user_id, kind="violation", violation_id=violation.id,
                    severity=ViolationSeverity(severity).value)
        return violation

    def correct_violation(self, violation_id: str, user_id: str, notes: Optional[str] = None) -> Violation:
        for violation in self.violations:
            if violation.id == violation_id:
                if violation.corrected:
                    raise StateError("Violation has already been corrected")
                violation.corrected = True
                violation.corrected_at = datetime.utcnow()
                violation.corrected_by = user_id
                violation.correction_notes = notes
                self.updated_at = datetime.utcnow()
                return violation
        raise NotFoundError("Violation not found")

    def complete(self, user_id: str, result: InspectionResult, comments: Optional[str] = None):
        self.status = InspectionStatus.COMPLETED
        self.result = result
        if comments:
            self.comments = comments
        if not self.completed_at:
            self.completed_at = datetime.utcnow()
        self.update_reinspection_flag()
        self.record(InspectionAction.COMPLETED, user_id, result=result.value)

    def initialize_checklist(self, template_id: str, items: list):
        """Copy template items by value; later template edits do not reach this inspection"""
        self.checklist = [
            ChecklistItem(text=i.text, category=i.category, is_required=i.is_required, order=i.order)
            for i in sorted(items, key=lambda i: i.order)
        ]
        self.checklist_template_id = template_id

    def update_checklist_item(self, item_id: str, user_id: str, checked: Optional[bool] = None,
                              notes: Optional[str] = None) -> ChecklistItem:
        for item in self.checklist:
            if item.id == item_id:
                if checked is not None:
                    item.checked = checked
                    item.checked_by = user_id if checked else None
                    item.checked_at = datetime.utcnow() if checked else None
                if notes is not None:
                    item.notes = notes
                self.record(InspectionAction.CHECKLIST_UPDATED, user_id, item_id=item_id, checked=item.checked)
                return item
        raise NotFoundError("Checklist item not found")
