"""
Inspection issues addressed by pre-printed QR cards.

A card starts life ``pending`` with nothing but a number and a batch. An
inspector scans it on site, which links it to an inspection and opens the
issue; from there the contractor corrects and the inspector verifies.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel, ASCENDING

from ..core.errors import StateError
from .common import Lifecycle, Note, Photo


class IssueStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CONTRACTOR_VIEWED = "contractor_viewed"
    CORRECTED = "corrected"
    VERIFIED = "verified"
    CLOSED = "closed"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class VerificationStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class IssueAction(str, Enum):
    CARD_GENERATED = "card_generated"
    ISSUE_CREATED = "issue_created"
    VIEWED_BY_CONTRACTOR = "viewed_by_contractor"
    CORRECTION_UPLOADED = "correction_uploaded"
    PHOTO_ADDED = "photo_added"
    PHOTO_REMOVED = "photo_removed"
    REINSPECTION_REQUESTED = "reinspection_requested"
    VERIFIED = "verified"
    CLOSED = "closed"
    REOPENED = "reopened"


class Correction(BaseModel):
    notes: Optional[str] = None
    photos: List[Photo] = Field(default_factory=list)
    submitted_by: str
    submitted_at: datetime = Field(default_factory=datetime.utcnow)


class IssueHistoryEntry(BaseModel):
    action: IssueAction
    performed_by: str
    performed_at: datetime = Field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class InspectionIssue(Document):
    """A field defect, or a blank card waiting to become one"""

    issue_number: str = Field(..., description="YYMMDD-XXXXXX printed on the card")
    municipality_id: str
    batch_id: Optional[str] = None
    qr_code_url: Optional[str] = None
    qr_storage_path: Optional[str] = None

    status: IssueStatus = IssueStatus.PENDING

    inspection_id: Optional[str] = None
    permit_id: Optional[str] = None
    property_id: Optional[str] = None

    description: Optional[str] = None
    location: Optional[str] = None
    severity: IssueSeverity = IssueSeverity.MAJOR
    photos: List[Photo] = Field(default_factory=list)

    corrections: List[Correction] = Field(default_factory=list)
    verification_status: Optional[VerificationStatus] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    verification_notes: Optional[str] = None

    viewed_by_contractor: bool = False
    viewed_at: Optional[datetime] = None
    contractor_viewed_by: Optional[str] = None

    notes: List[Note] = Field(default_factory=list)
    history: List[IssueHistoryEntry] = Field(default_factory=list)

    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    linked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "inspection_issues"
        indexes = [
            IndexModel([("issue_number", ASCENDING)], unique=True),
            IndexModel([("municipality_id", ASCENDING), ("batch_id", ASCENDING)]),
            IndexModel([("permit_id", ASCENDING)]),
            IndexModel([("inspection_id", ASCENDING)]),
        ]

    def record(self, action: IssueAction, user_id: str, **details):
        self.history.append(IssueHistoryEntry(action=action, performed_by=user_id, details=details))
        self.updated_at = datetime.utcnow()

    def _ensure_linked(self):
        if self.status == IssueStatus.PENDING:
            raise StateError("This issue card has not been linked to an inspection yet")
        if self.status == IssueStatus.CLOSED:
            raise StateError("This issue is closed")

    def mark_viewed_by_contractor(self, user_id: str):
        self._ensure_linked()
        now = datetime.utcnow()
        self.viewed_by_contractor = True
        self.viewed_at = now
        self.contractor_viewed_by = user_id
        if self.status == IssueStatus.OPEN:
            self.status = IssueStatus.CONTRACTOR_VIEWED
        self.record(IssueAction.VIEWED_BY_CONTRACTOR, user_id)

    def add_correction(self, user_id: str, notes: Optional[str], photos: Optional[List[Photo]] = None) -> Correction:
        self._ensure_linked()
        if self.status == IssueStatus.VERIFIED:
            raise StateError("This issue has already been verified")
        correction = Correction(notes=notes, photos=photos or [], submitted_by=user_id)
        self.corrections.append(correction)
        self.status = IssueStatus.CORRECTED
        self.updated_by = user_id
        self.record(IssueAction.CORRECTION_UPLOADED, user_id, photo_count=len(correction.photos))
        return correction

    def verify_correction(self, user_id: str, approved: bool, notes: Optional[str] = None):
        """Accept or reject the most recent correction; a rejection reopens the issue"""
        self._ensure_linked()
        if not self.corrections:
            raise StateError("No correction has been submitted for this issue")

        now = datetime.utcnow()
        self.verified_by = user_id
        self.verified_at = now
        self.verification_notes = notes
        self.verification_status = VerificationStatus.APPROVED if approved else VerificationStatus.REJECTED
        self.status = IssueStatus.VERIFIED if approved else IssueStatus.OPEN
        self.updated_by = user_id

        self.record(IssueAction.VERIFIED, user_id, approved=approved, notes=notes,
                    correction_index=len(self.corrections) - 1)
        if not approved:
            self.record(IssueAction.REOPENED, user_id, notes=notes)

    def close(self, user_id: str, notes: Optional[str] = None):
        self._ensure_linked()
        self.status = IssueStatus.CLOSED
        self.updated_by = user_id
        if notes:
            self.notes.append(Note(content=notes, created_by=user_id))
        self.record(IssueAction.CLOSED, user_id)
