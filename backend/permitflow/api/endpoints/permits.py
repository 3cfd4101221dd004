from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from ...auth.dependencies import get_principal, require_module_permission
from ...auth.principal import AuthenticatedPrincipal, ModuleAction
from ...models.inspection import PermitInspection
from ...models.inspection_issue import InspectionIssue
from ...models.permit import Permit, PermitStatus
from ...models.permit_comment import PermitComment
from ...models.permit_type import InspectionType
from ...schemas.inspection import AvailableSlotsResponse, InspectionCreate
from ...schemas.permit import (
    CommentCreate,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    DashboardStats,
    MyPermitsResponse,
    PaymentBreakdownResponse,
    PaymentIntentResponse,
    PermitCreate,
    PermitListResponse,
    PermitNoteCreate,
    PermitQueueResponse,
    PermitStatsResponse,
    PermitStatusUpdate,
    PermitUpdate,
    ProjectCreate,
    ProjectListResponse,
    ProjectResponse,
    ReviewUpdate,
)
from ...services.inspection_service import inspection_service
from ...services.issue_service import issue_service
from ...services.permit_report_service import permit_report_service
from ...services.permit_service import permit_service
from ...services.review_service import review_service

router = APIRouter()


@router.get("/{municipality_id}/permits", response_model=PermitListResponse)
async def list_permits(
    municipality_id: str,
    status: Optional[PermitStatus] = Query(None, description="Filter by permit status"),
    permit_type: Optional[str] = Query(None, description="Filter by permit kind (building, electrical...)"),
    project_id: Optional[str] = Query(None, description="Child permits of a project"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Number of permits per page"),
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Staff see every permit in the municipality; applicants see their own"""
    permits, total = await permit_service.list_permits(
        municipality_id, principal, status=status, permit_type=permit_type,
        project_id=project_id, page=page, page_size=page_size,
    )
    return PermitListResponse(permits=permits, total=total, page=page, page_size=page_size)


@router.post("/{municipality_id}/permits", response_model=Permit)
async def create_permit(
    municipality_id: str,
    data: PermitCreate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    return await permit_service.create_permit(municipality_id, data, principal)


@router.get("/{municipality_id}/projects", response_model=ProjectListResponse)
async def list_projects(
    municipality_id: str,
    status: Optional[PermitStatus] = Query(None, description="Filter by project status"),
    search: Optional[str] = Query(None, description="Matches permit number or project name"),
    property_id: Optional[str] = Query(None, description="Projects on one property"),
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.READ.value))
):
    return await permit_report_service.list_projects(municipality_id, status=status, search=search,
                                                     property_id=property_id)


@router.post("/{municipality_id}/projects", response_model=ProjectResponse)
async def create_project(
    municipality_id: str,
    data: ProjectCreate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Create a project permit with one child permit per requested type"""
    project, children, total_fee = await permit_service.create_project(municipality_id, data, principal)
    return ProjectResponse(project=project, child_permits=children, total_project_fee=total_fee)


@router.get("/{municipality_id}/permits/queue", response_model=PermitQueueResponse)
async def get_permit_queue(
    municipality_id: str,
    assigned_to_me: bool = Query(False, description="Only permits with a department review assigned to the caller"),
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.READ.value))
):
    """Permits waiting on staff, with the ones needing attention and those about to expire"""
    return await permit_report_service.queue(municipality_id, principal, assigned_to_me=assigned_to_me)


@router.get("/{municipality_id}/permits/stats", response_model=PermitStatsResponse)
async def get_permit_stats(
    municipality_id: str,
    start_date: Optional[datetime] = Query(None, description="Applications from (default: one year ago)"),
    end_date: Optional[datetime] = Query(None, description="Applications until (default: now)"),
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.READ.value))
):
    return await permit_report_service.stats(municipality_id, start_date, end_date)


@router.get("/{municipality_id}/permits/dashboard-stats", response_model=DashboardStats)
async def get_dashboard_stats(
    municipality_id: str,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.READ.value))
):
    return await permit_report_service.dashboard(municipality_id)


@router.get("/{municipality_id}/permits/{permit_id}", response_model=Permit)
async def get_permit(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    return await permit_service.get_permit(municipality_id, permit_id, principal)


@router.put("/{municipality_id}/permits/{permit_id}", response_model=Permit)
async def update_permit(
    municipality_id: str,
    permit_id: str,
    data: PermitUpdate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await permit_service.update_permit(permit, data, principal)


@router.delete("/{municipality_id}/permits/{permit_id}")
async def delete_permit(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    await permit_service.delete_permit(permit, principal)
    return {"message": "Permit deleted successfully"}


@router.put("/{municipality_id}/permits/{permit_id}/status", response_model=Permit)
async def update_permit_status(
    municipality_id: str,
    permit_id: str,
    data: PermitStatusUpdate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await permit_service.change_status(permit, data.status, principal, notes=data.notes)


@router.post("/{municipality_id}/permits/{permit_id}/view", response_model=Permit)
async def record_permit_view(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await permit_service.record_view(permit, principal)


@router.post("/{municipality_id}/permits/{permit_id}/notes", response_model=Permit)
async def add_permit_note(
    municipality_id: str,
    permit_id: str,
    data: PermitNoteCreate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await permit_service.add_note(permit, principal, data.content)


# Department reviews and comments

@router.put("/{municipality_id}/permits/{permit_id}/reviews/{department}", response_model=Permit)
async def update_department_review(
    municipality_id: str,
    permit_id: str,
    department: str,
    data: ReviewUpdate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await review_service.update_review(
        permit, department, principal, data.status,
        comments=data.comments, conditions=data.conditions, requested_revisions=data.requested_revisions,
    )


@router.get("/{municipality_id}/permits/{permit_id}/comments", response_model=List[PermitComment])
async def list_permit_comments(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Comments the caller may see: applicants only get public ones"""
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await review_service.list_comments(permit, principal)


@router.post("/{municipality_id}/permits/{permit_id}/comments", response_model=PermitComment)
async def add_permit_comment(
    municipality_id: str,
    permit_id: str,
    data: CommentCreate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await review_service.add_comment(
        permit, principal, data.content, visibility=data.visibility,
        department=data.department, attachments=data.attachments,
    )


# Payments

@router.post("/{municipality_id}/permits/{permit_id}/calculate-payment", response_model=PaymentBreakdownResponse)
async def calculate_payment(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """What the applicant will be charged for the unpaid fees, processing included"""
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return permit_service.payment_breakdown(permit)


@router.post("/{municipality_id}/permits/{permit_id}/create-payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await permit_service.create_payment_intent(permit, principal)


@router.post("/{municipality_id}/permits/{permit_id}/confirm-payment", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    municipality_id: str,
    permit_id: str,
    data: ConfirmPaymentRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    permit, submitted = await permit_service.confirm_payment(permit, principal, data.payment_intent_id)
    return ConfirmPaymentResponse(permit=permit, payment_status="succeeded", submitted=submitted)


# Inspections and issues on a permit

@router.get("/{municipality_id}/permits/{permit_id}/inspections", response_model=List[PermitInspection])
async def list_permit_inspections(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await inspection_service.list_for_permit(permit)


@router.get("/{municipality_id}/permits/{permit_id}/inspections/available-slots",
            response_model=AvailableSlotsResponse)
async def get_available_slots(
    municipality_id: str,
    permit_id: str,
    inspection_type: InspectionType = Query(..., description="Inspection type to book"),
    start_date: Optional[datetime] = Query(None, description="Search from (clamped to the notice period)"),
    end_date: Optional[datetime] = Query(None, description="Search until"),
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Bookable slots with the inspector who would take each one"""
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await inspection_service.available_slots(permit, inspection_type.value, start_date, end_date)


@router.post("/{municipality_id}/permits/{permit_id}/inspections", response_model=PermitInspection)
async def schedule_inspection(
    municipality_id: str,
    permit_id: str,
    data: InspectionCreate,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await inspection_service.schedule_inspection(permit, data, principal)


@router.get("/{municipality_id}/permits/{permit_id}/inspection-issues", response_model=List[InspectionIssue])
async def list_permit_issues(
    municipality_id: str,
    permit_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    permit = await permit_service.get_permit(municipality_id, permit_id, principal)
    return await issue_service.list_for_permit(permit)


# Applicant views across municipalities

applicant_router = APIRouter()


@applicant_router.get("/my-permits", response_model=MyPermitsResponse)
async def list_my_permits(
    status: Optional[PermitStatus] = Query(None, description="Filter by permit status"),
    municipality_id: Optional[str] = Query(None, description="Only one municipality"),
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Contractors and citizens: every permit they hold, grouped by municipality"""
    return await permit_report_service.my_permits(principal, status=status, municipality_id=municipality_id)
