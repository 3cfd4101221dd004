from fastapi import APIRouter

from .endpoints import (
    checklist_templates,
    fee_schedules,
    inspection_issues,
    inspections,
    permit_types,
    permits,
)

api_router = APIRouter()

api_router.include_router(permit_types.router, prefix="/municipalities", tags=["permit-types"])
api_router.include_router(fee_schedules.router, prefix="/municipalities", tags=["fee-schedules"])
api_router.include_router(permits.router, prefix="/municipalities", tags=["permits"])
api_router.include_router(permits.applicant_router, prefix="/permits", tags=["permits"])
api_router.include_router(inspections.router, prefix="/municipalities", tags=["inspections"])
api_router.include_router(checklist_templates.router, prefix="/municipalities", tags=["checklist-templates"])
api_router.include_router(inspection_issues.router, prefix="/municipalities", tags=["inspection-issues"])

# Platform operations
api_router.include_router(fee_schedules.admin_router, prefix="/admin", tags=["admin"])
