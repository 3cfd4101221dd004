from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from ...auth.dependencies import get_municipal_staff, get_principal, require_module_permission
from ...auth.principal import AuthenticatedPrincipal, ModuleAction
from ...models.common import Photo
from ...models.inspection_issue import InspectionIssue, IssueStatus
from ...schemas.issue import (
    BatchCleanupResponse,
    BatchCreate,
    BatchDetailsResponse,
    BatchGenerateResponse,
    BatchListResponse,
    IssueClose,
    IssueCreate,
    IssueLink,
    IssueListResponse,
    IssueUpdate,
    IssueVerify,
)
from ...services.issue_batch_service import issue_batch_service
from ...services.issue_service import issue_service

router = APIRouter()

ISSUES = "/{municipality_id}/inspection-issues"
BATCHES = "/{municipality_id}/inspection-issue-batches"


@router.get(ISSUES, response_model=IssueListResponse)
async def list_issues(
    municipality_id: str,
    status: Optional[IssueStatus] = Query(None, description="Filter by issue status"),
    permit_id: Optional[str] = Query(None, description="Filter by permit"),
    inspection_id: Optional[str] = Query(None, description="Filter by inspection"),
    batch_id: Optional[str] = Query(None, description="Filter by card batch"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Number of issues per page"),
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    issues, total = await issue_service.list_issues(
        municipality_id, principal, status=status, permit_id=permit_id, inspection_id=inspection_id,
        batch_id=batch_id, page=page, page_size=page_size,
    )
    return IssueListResponse(issues=issues, total=total, page=page, page_size=page_size)


@router.post(ISSUES, response_model=InspectionIssue)
async def create_issue(
    municipality_id: str,
    data: IssueCreate,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    """Record an issue found on site, on a scanned card if one was used"""
    return await issue_service.record(municipality_id, data, principal)


@router.get(ISSUES + "/{issue_number}", response_model=InspectionIssue)
async def get_issue(
    municipality_id: str,
    issue_number: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    return await issue_service.get_issue(municipality_id, issue_number, principal)


@router.patch(ISSUES + "/{issue_number}", response_model=InspectionIssue)
async def update_issue(
    municipality_id: str,
    issue_number: str,
    data: IssueUpdate,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    issue = await issue_service.get_issue(municipality_id, issue_number, principal)
    return await issue_service.update(issue, data, principal)


@router.post(ISSUES + "/{issue_number}/link", response_model=InspectionIssue)
async def link_issue_card(
    municipality_id: str,
    issue_number: str,
    data: IssueLink,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    """Attach a scanned blank card to an inspection; a card can only be linked once"""
    return await issue_service.link(municipality_id, issue_number, data, principal)


@router.post(ISSUES + "/{issue_number}/view", response_model=InspectionIssue)
async def mark_issue_viewed(
    municipality_id: str,
    issue_number: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    issue = await issue_service.get_issue(municipality_id, issue_number, principal)
    return await issue_service.mark_viewed(issue, principal)


@router.post(ISSUES + "/{issue_number}/corrections", response_model=InspectionIssue)
async def submit_correction(
    municipality_id: str,
    issue_number: str,
    notes: Optional[str] = Form(None),
    photos: List[UploadFile] = File(default=[]),
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Contractor uploads evidence that the issue was fixed"""
    issue = await issue_service.get_issue(municipality_id, issue_number, principal)
    uploads = [(await photo.read(), photo.filename or "photo", photo.content_type) for photo in photos]
    return await issue_service.add_correction(issue, principal, notes=notes, uploads=uploads)


@router.post(ISSUES + "/{issue_number}/verify", response_model=InspectionIssue)
async def verify_correction(
    municipality_id: str,
    issue_number: str,
    data: IssueVerify,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    issue = await issue_service.get_issue(municipality_id, issue_number, principal)
    return await issue_service.verify(issue, principal, data.approved, data.notes)


@router.post(ISSUES + "/{issue_number}/close", response_model=InspectionIssue)
async def close_issue(
    municipality_id: str,
    issue_number: str,
    data: Optional[IssueClose] = None,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    issue = await issue_service.get_issue(municipality_id, issue_number, principal)
    return await issue_service.close(issue, principal, data.notes if data else None)


@router.post(ISSUES + "/{issue_number}/photos", response_model=Photo)
async def upload_issue_photo(
    municipality_id: str,
    issue_number: str,
    file: UploadFile = File(...),
    caption: Optional[str] = Form(None),
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    issue = await issue_service.get_issue(municipality_id, issue_number, principal)
    content = await file.read()
    return await issue_service.add_photo(
        issue, principal, content, file.filename or "photo", content_type=file.content_type, caption=caption
    )


@router.delete(ISSUES + "/{issue_number}/photos/{photo_id}")
async def delete_issue_photo(
    municipality_id: str,
    issue_number: str,
    photo_id: str,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.UPDATE.value))
):
    issue = await issue_service.get_issue(municipality_id, issue_number, principal)
    await issue_service.remove_photo(issue, photo_id, principal)
    return {"message": "Photo deleted successfully"}


# Card batches

@router.post(BATCHES, response_model=BatchGenerateResponse)
async def generate_issue_batch(
    municipality_id: str,
    data: Optional[BatchCreate] = None,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.CREATE.value))
):
    """Generate blank issue cards with QR codes for printing"""
    quantity = data.quantity if data else BatchCreate().quantity
    return await issue_batch_service.generate_batch(municipality_id, principal, quantity)


@router.get(BATCHES, response_model=BatchListResponse)
async def list_issue_batches(
    municipality_id: str,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    batches = await issue_batch_service.list_batches(municipality_id)
    return BatchListResponse(batches=batches, total=len(batches))


@router.get(BATCHES + "/{batch_id}", response_model=BatchDetailsResponse)
async def get_issue_batch(
    municipality_id: str,
    batch_id: str,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    return await issue_batch_service.batch_details(municipality_id, batch_id)


@router.post(BATCHES + "/{batch_id}/mark-printed", response_model=BatchCleanupResponse)
async def mark_batch_printed(
    municipality_id: str,
    batch_id: str,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.UPDATE.value))
):
    """Delete the QR images once the cards are printed"""
    return await issue_batch_service.mark_printed(municipality_id, batch_id, principal)


@router.delete(BATCHES + "/{batch_id}", response_model=BatchCleanupResponse)
async def delete_issue_batch(
    municipality_id: str,
    batch_id: str,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.DELETE.value))
):
    return await issue_batch_service.delete_batch(municipality_id, batch_id, principal)
