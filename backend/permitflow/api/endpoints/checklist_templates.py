from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pymongo.errors import DuplicateKeyError

from ...auth.dependencies import get_municipal_staff, require_module_permission
from ...auth.principal import AuthenticatedPrincipal, ModuleAction
from ...core.errors import NotFoundError, conflict_from_duplicate
from ...core.logging_config import get_permit_logger
from ...models.checklist_template import InspectionChecklistTemplate
from ...models.common import parse_object_id
from ...models.permit_type import InspectionType
from ...schemas.inspection import ChecklistTemplateCreate, ChecklistTemplateListResponse, ChecklistTemplateUpdate

logger = get_permit_logger(__name__)

router = APIRouter()

BASE = "/{municipality_id}/inspection-checklist-templates"


async def _get_template(municipality_id: str, template_id: str) -> InspectionChecklistTemplate:
    template = await InspectionChecklistTemplate.find_one({
        "_id": parse_object_id(template_id, "Checklist template"),
        "municipality_id": municipality_id,
    })
    if not template:
        raise NotFoundError("Checklist template not found")
    return template


async def _retire_active(municipality_id: str, inspection_type: str, keep_id=None):
    """Only one template per inspection type is active at a time"""
    query = {"municipality_id": municipality_id, "inspection_type": inspection_type, "is_active": True}
    if keep_id is not None:
        query["_id"] = {"$ne": keep_id}
    await InspectionChecklistTemplate.get_pymongo_collection().update_many(
        query, {"$set": {"is_active": False, "updated_at": datetime.utcnow()}}
    )


@router.get(BASE, response_model=ChecklistTemplateListResponse)
async def list_checklist_templates(
    municipality_id: str,
    inspection_type: Optional[InspectionType] = Query(None, description="Filter by inspection type"),
    include_inactive: bool = Query(False, description="Include retired templates"),
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    query = {"municipality_id": municipality_id}
    if inspection_type:
        query["inspection_type"] = inspection_type.value
    if not include_inactive:
        query["is_active"] = True
    templates = await InspectionChecklistTemplate.find(query).sort(
        [("inspection_type", 1), ("created_at", -1)]
    ).to_list()
    return ChecklistTemplateListResponse(templates=templates, total=len(templates))


@router.post(BASE, response_model=InspectionChecklistTemplate)
async def create_checklist_template(
    municipality_id: str,
    data: ChecklistTemplateCreate,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.UPDATE.value))
):
    """Create the active template for an inspection type, retiring the previous one"""
    await _retire_active(municipality_id, data.inspection_type.value)
    template = InspectionChecklistTemplate(
        municipality_id=municipality_id,
        inspection_type=data.inspection_type,
        name=data.name,
        description=data.description,
        items=data.items,
        created_by=principal.user_id,
    )
    try:
        await template.insert()
    except DuplicateKeyError as e:
        raise conflict_from_duplicate(e, "An active checklist template for this inspection type")

    logger.info("Checklist template created", template_id=str(template.id),
                inspection_type=data.inspection_type.value, items=len(data.items))
    return template


@router.get(BASE + "/{template_id}", response_model=InspectionChecklistTemplate)
async def get_checklist_template(
    municipality_id: str,
    template_id: str,
    principal: AuthenticatedPrincipal = Depends(get_municipal_staff)
):
    return await _get_template(municipality_id, template_id)


@router.put(BASE + "/{template_id}", response_model=InspectionChecklistTemplate)
async def update_checklist_template(
    municipality_id: str,
    template_id: str,
    data: ChecklistTemplateUpdate,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.UPDATE.value))
):
    """Inspections that already copied the checklist keep their copy"""
    template = await _get_template(municipality_id, template_id)

    update_data = data.dict(exclude_unset=True)
    if update_data.get("is_active") and not template.is_active:
        await _retire_active(municipality_id, template.inspection_type.value, keep_id=template.id)
    for field in update_data:
        if getattr(data, field) is not None:
            setattr(template, field, getattr(data, field))
    if data.items is not None:
        template.items = sorted(data.items, key=lambda i: i.order)
    template.updated_at = datetime.utcnow()

    try:
        await template.save()
    except DuplicateKeyError as e:
        raise conflict_from_duplicate(e, "An active checklist template for this inspection type")
    return template


@router.delete(BASE + "/{template_id}")
async def delete_checklist_template(
    municipality_id: str,
    template_id: str,
    principal: AuthenticatedPrincipal = Depends(require_module_permission(ModuleAction.DELETE.value))
):
    template = await _get_template(municipality_id, template_id)
    template.is_active = False
    template.updated_at = datetime.utcnow()
    await template.save()
    return {"message": "Checklist template deleted successfully"}
