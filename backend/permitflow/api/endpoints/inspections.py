from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from ...auth.dependencies import get_municipal_staff, get_principal, require_module_permission
from ...auth.principal import AuthenticatedPrincipal, ModuleAction
from ...models.common import Note, Photo, to_naive_utc
from ...models.inspection import ChecklistItem, InspectionStatus, PermitInspection, Violation
from ...models.inspection_issue import InspectionIssue
from ...models.inspection_settings import InspectionSettings
from ...schemas.inspection import (
    ChecklistItemUpdate,
    ChecklistResponse,
    InspectionListResponse,
    InspectionNoteCreate,
    InspectionReschedule,
    InspectionSettingsUpdate,
    InspectionStatusUpdate,
    ViolationCorrect,
    ViolationCreate,
)
from ...services.inspection_service import inspection_service
from ...services.issue_service import issue_service

router = APIRouter()


@router.get("/{municipality_id}/inspection-settings", response_model=InspectionSettings)
async def get_inspection_settings(
    municipality_id: str,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    return await inspection_service.get_settings(municipality_id)


@router.put("/{municipality_id}/inspection-settings", response_model=InspectionSettings)
async def update_inspection_settings(
    municipality_id: str,
    data: InspectionSettingsUpdate,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.UPDATE.value))
):
    """Replace the weekly availability windows and the inspector roster"""
    return await inspection_service.update_settings(municipality_id, data, principal)


@router.get("/{municipality_id}/inspections", response_model=InspectionListResponse)
async def list_inspections(
    municipality_id: str,
    status: Optional[InspectionStatus] = Query(None, description="Filter by inspection status"),
    inspector_id: Optional[str] = Query(None, description="Filter by inspector"),
    permit_id: Optional[str] = Query(None, description="Filter by permit"),
    date_from: Optional[datetime] = Query(None, description="Scheduled on or after"),
    date_to: Optional[datetime] = Query(None, description="Scheduled on or before"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Number of inspections per page"),
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    inspections, total = await inspection_service.list_inspections(
        municipality_id, principal, status=status, inspector_id=inspector_id, permit_id=permit_id,
        date_from=to_naive_utc(date_from), date_to=to_naive_utc(date_to), page=page, page_size=page_size,
    )
    return InspectionListResponse(inspections=inspections, total=total, page=page, page_size=page_size)


@router.get("/{municipality_id}/inspections/{inspection_id}", response_model=PermitInspection)
async def get_inspection(
    municipality_id: str,
    inspection_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    return await inspection_service.get_inspection(municipality_id, inspection_id, principal)


@router.patch("/{municipality_id}/inspections/{inspection_id}/status", response_model=PermitInspection)
async def update_inspection_status(
    municipality_id: str,
    inspection_id: str,
    data: InspectionStatusUpdate,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    """Record progress or the result; completing requires a result"""
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await inspection_service.update_status(inspection, data, principal)


@router.patch("/{municipality_id}/inspections/{inspection_id}/reschedule", response_model=PermitInspection)
async def reschedule_inspection(
    municipality_id: str,
    inspection_id: str,
    data: InspectionReschedule,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await inspection_service.reschedule(inspection, data, principal)


@router.post("/{municipality_id}/inspections/{inspection_id}/violations", response_model=Violation)
async def add_violation(
    municipality_id: str,
    inspection_id: str,
    data: ViolationCreate,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await inspection_service.add_violation(inspection, data, principal)


@router.post("/{municipality_id}/inspections/{inspection_id}/violations/{violation_id}/correct",
             response_model=Violation)
async def correct_violation(
    municipality_id: str,
    inspection_id: str,
    violation_id: str,
    data: Optional[ViolationCorrect] = None,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await inspection_service.correct_violation(inspection, violation_id, principal,
                                                      notes=data.notes if data else None)


@router.post("/{municipality_id}/inspections/{inspection_id}/notes", response_model=Note)
async def add_inspection_note(
    municipality_id: str,
    inspection_id: str,
    data: InspectionNoteCreate,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await inspection_service.add_note(inspection, principal, data.content)


@router.post("/{municipality_id}/inspections/{inspection_id}/photos", response_model=Photo)
async def upload_inspection_photo(
    municipality_id: str,
    inspection_id: str,
    file: UploadFile = File(...),
    caption: Optional[str] = Form(None),
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    content = await file.read()
    return await inspection_service.add_photo(
        inspection, principal, content, file.filename or "photo", content_type=file.content_type, caption=caption
    )


@router.get("/{municipality_id}/inspections/{inspection_id}/checklist", response_model=ChecklistResponse)
async def get_inspection_checklist(
    municipality_id: str,
    inspection_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await inspection_service.get_checklist(inspection)


@router.patch("/{municipality_id}/inspections/{inspection_id}/checklist/{item_id}", response_model=ChecklistItem)
async def update_checklist_item(
    municipality_id: str,
    inspection_id: str,
    item_id: str,
    data: ChecklistItemUpdate,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await inspection_service.update_checklist_item(inspection, item_id, principal,
                                                          checked=data.checked, notes=data.notes)


@router.get("/{municipality_id}/inspections/{inspection_id}/issues", response_model=List[InspectionIssue])
async def list_inspection_issues(
    municipality_id: str,
    inspection_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    inspection = await inspection_service.get_inspection(municipality_id, inspection_id, principal)
    return await issue_service.list_for_inspection(inspection)
