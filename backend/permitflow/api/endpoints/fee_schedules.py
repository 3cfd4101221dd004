from typing import Optional
from fastapi import APIRouter, Depends, Query

from ...auth.dependencies import get_municipal_staff, get_principal, require_fee_admin, require_platform_staff
from ...auth.principal import AuthenticatedPrincipal
from ...models.fee_schedule import FeeSchedule
from ...schemas.fee_schedule import (
    ActivationSweepResponse,
    FeeCalculationRequest,
    FeeCalculationResponse,
    FeeScheduleActivate,
    FeeScheduleCreate,
    FeeScheduleListResponse,
    FeeScheduleSummaryResponse,
    FeeScheduleUpdate,
)
from ...services.fee_schedule_activator import fee_schedule_activator
from ...services.fee_schedule_service import fee_schedule_service

router = APIRouter()

BASE = "/{municipality_id}/permit-types/{permit_type_id}/fee-schedules"


@router.get(BASE, response_model=FeeScheduleListResponse)
async def list_fee_schedules(
    municipality_id: str,
    permit_type_id: str,
    include_archived: bool = Query(False, description="Include superseded versions"),
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    """Version history of a permit type's fee schedules, newest first"""
    schedules = await fee_schedule_service.list_schedules(municipality_id, permit_type_id, include_archived)
    return FeeScheduleListResponse(schedules=schedules, total=len(schedules))


@router.post(BASE, response_model=FeeSchedule)
async def create_fee_schedule(
    municipality_id: str,
    permit_type_id: str,
    data: FeeScheduleCreate,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    return await fee_schedule_service.create_schedule(municipality_id, permit_type_id, data, principal)


@router.get(BASE + "/active", response_model=FeeSchedule)
async def get_active_fee_schedule(
    municipality_id: str,
    permit_type_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    return await fee_schedule_service.get_active(municipality_id, permit_type_id)


@router.post(BASE + "/calculate", response_model=FeeCalculationResponse)
async def calculate_fees(
    municipality_id: str,
    permit_type_id: str,
    request: FeeCalculationRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Preview the fees a permit would be charged"""
    schedule, calculation = await fee_schedule_service.calculate(
        municipality_id, permit_type_id, request.permit_data(), request.fee_schedule_id
    )
    return FeeCalculationResponse(fee_schedule_id=str(schedule.id), version=schedule.version,
                                  calculation=calculation)


@router.get(BASE + "/{schedule_id}", response_model=FeeSchedule)
async def get_fee_schedule(
    municipality_id: str,
    permit_type_id: str,
    schedule_id: str,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    return await fee_schedule_service.get_schedule(municipality_id, permit_type_id, schedule_id)


@router.put(BASE + "/{schedule_id}", response_model=FeeSchedule)
async def update_fee_schedule(
    municipality_id: str,
    permit_type_id: str,
    schedule_id: str,
    data: FeeScheduleUpdate,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    """Edit a draft schedule"""
    return await fee_schedule_service.update_schedule(municipality_id, permit_type_id, schedule_id, data, principal)


@router.delete(BASE + "/{schedule_id}")
async def delete_fee_schedule(
    municipality_id: str,
    permit_type_id: str,
    schedule_id: str,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    schedule = await fee_schedule_service.get_schedule(municipality_id, permit_type_id, schedule_id)
    await fee_schedule_service.delete_schedule(schedule)
    return {"message": "Fee schedule deleted successfully"}


@router.post(BASE + "/{schedule_id}/activate", response_model=FeeSchedule)
async def activate_fee_schedule(
    municipality_id: str,
    permit_type_id: str,
    schedule_id: str,
    data: Optional[FeeScheduleActivate] = None,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    """Activate now, or schedule activation when ``schedule_for`` is given"""
    schedule = await fee_schedule_service.get_schedule(municipality_id, permit_type_id, schedule_id)
    return await fee_schedule_service.activate_schedule(schedule, principal, data.schedule_for if data else None)


@router.post(BASE + "/{schedule_id}/cancel-schedule", response_model=FeeSchedule)
async def cancel_fee_schedule_activation(
    municipality_id: str,
    permit_type_id: str,
    schedule_id: str,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    schedule = await fee_schedule_service.get_schedule(municipality_id, permit_type_id, schedule_id)
    return await fee_schedule_service.cancel_scheduled(schedule)


@router.get("/{municipality_id}/fee-schedules/summary", response_model=FeeScheduleSummaryResponse)
async def fee_schedule_summary(
    municipality_id: str,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    """Per permit type: the active version plus drafts and scheduled versions"""
    summaries = await fee_schedule_service.municipality_summary(municipality_id)
    return FeeScheduleSummaryResponse(municipality_id=municipality_id, permit_types=summaries)


admin_router = APIRouter()


@admin_router.post("/fee-schedules/activate-due", response_model=ActivationSweepResponse)
async def activate_due_fee_schedules(
    principal: AuthenticatedPrincipal = Depends(require_platform_staff)
):
    """Activate every scheduled fee schedule whose effective date has passed"""
    result = await fee_schedule_activator.run()
    return ActivationSweepResponse(**result)
