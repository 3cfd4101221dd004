from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from ..models.inspection_issue import InspectionIssue, IssueSeverity


class IssueLink(BaseModel):
    """Scan of a pre-printed card on site"""
    inspection_id: str
    description: Optional[str] = None
    location: Optional[str] = None
    severity: IssueSeverity = IssueSeverity.MAJOR


class IssuePhotoData(BaseModel):
    """An image sent inline as a data URL"""
    data_url: str = Field(..., description="data:<mime type>;base64,<content>")
    filename: Optional[str] = None


class IssueCreate(BaseModel):
    """Record an issue, on a scanned card when ``issue_number`` is given"""
    inspection_id: str
    issue_number: Optional[str] = None
    description: str = Field(..., min_length=1)
    location: Optional[str] = None
    severity: IssueSeverity = IssueSeverity.MAJOR
    photos: List[IssuePhotoData] = Field(default_factory=list)


class IssueUpdate(BaseModel):
    description: Optional[str] = None
    location: Optional[str] = None
    severity: Optional[IssueSeverity] = None


class IssueVerify(BaseModel):
    approved: bool
    notes: Optional[str] = None


class IssueClose(BaseModel):
    notes: Optional[str] = None


class IssueListResponse(BaseModel):
    issues: List[InspectionIssue]
    total: int
    page: int = 1
    page_size: int = 50


class BatchCreate(BaseModel):
    quantity: int = Field(default=10, description="Number of blank cards to print")


class GeneratedCard(BaseModel):
    issue_number: str
    qr_code_url: Optional[str] = None


class BatchGenerateResponse(BaseModel):
    batch_id: str
    quantity: int
    cards: List[GeneratedCard]
    qr_failures: List[str] = Field(default_factory=list, description="Cards created without a QR image")
    generated_at: datetime


class BatchSummary(BaseModel):
    batch_id: str
    total_cards: int
    status_counts: Dict[str, int]
    created_at: datetime
    created_by: Optional[str] = None


class BatchListResponse(BaseModel):
    batches: List[BatchSummary]
    total: int


class BatchDetailsResponse(BaseModel):
    batch_id: str
    total_cards: int
    status_counts: Dict[str, int]
    issues: List[InspectionIssue]
    generated_at: datetime


class BatchCleanupResponse(BaseModel):
    batch_id: str
    cards: int
    qr_codes_deleted: int
    qr_codes_failed: int
