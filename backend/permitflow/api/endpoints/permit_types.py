from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pymongo.errors import DuplicateKeyError

from ...auth.dependencies import get_principal, require_fee_admin
from ...auth.principal import AuthenticatedPrincipal
from ...core.errors import AuthorizationError, conflict_from_duplicate
from ...core.logging_config import get_permit_logger
from ...models.common import ACTIVE
from ...models.permit_type import PermitType
from ...schemas.permit_type import PermitTypeCreate, PermitTypeListResponse, PermitTypeUpdate

logger = get_permit_logger(__name__)

router = APIRouter()


@router.get("/{municipality_id}/permit-types", response_model=PermitTypeListResponse)
async def list_permit_types(
    municipality_id: str,
    permit_kind: Optional[str] = Query(None, alias="type", description="Filter by permit kind"),
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    """Permit types an applicant can choose from"""
    if not (principal.has_access_to_municipality(municipality_id) or principal.is_contractor_or_citizen):
        raise AuthorizationError("Access denied")

    query = {"municipality_id": municipality_id, **ACTIVE}
    if permit_kind:
        query["type"] = permit_kind
    permit_types = await PermitType.find(query).sort([("name", 1)]).to_list()
    return PermitTypeListResponse(permit_types=permit_types, total=len(permit_types))


@router.post("/{municipality_id}/permit-types", response_model=PermitType)
async def create_permit_type(
    municipality_id: str,
    data: PermitTypeCreate,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    permit_type = PermitType(municipality_id=municipality_id, created_by=principal.user_id, **data.dict())
    try:
        await permit_type.insert()
    except DuplicateKeyError as e:
        raise conflict_from_duplicate(e, f"Permit type '{data.name}'")

    logger.info("Permit type created", permit_type_id=str(permit_type.id), permit_kind=permit_type.type.value)
    return permit_type


@router.get("/{municipality_id}/permit-types/{permit_type_id}", response_model=PermitType)
async def get_permit_type(
    municipality_id: str,
    permit_type_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal)
):
    return await PermitType.get_for_municipality(municipality_id, permit_type_id)


@router.put("/{municipality_id}/permit-types/{permit_type_id}", response_model=PermitType)
async def update_permit_type(
    municipality_id: str,
    permit_type_id: str,
    data: PermitTypeUpdate,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    """Existing permits keep the configuration they were created with"""
    permit_type = await PermitType.get_for_municipality(municipality_id, permit_type_id)

    update_data = data.dict(exclude_unset=True)
    for field, value in update_data.items():
        if value is not None:
            setattr(permit_type, field, getattr(data, field))
    permit_type.updated_at = datetime.utcnow()

    try:
        await permit_type.save()
    except DuplicateKeyError as e:
        raise conflict_from_duplicate(e, f"Permit type '{permit_type.name}'")
    return permit_type


@router.delete("/{municipality_id}/permit-types/{permit_type_id}")
async def delete_permit_type(
    municipality_id: str,
    permit_type_id: str,
    principal: AuthenticatedPrincipal = Depends(require_fee_admin)
):
    """Soft delete; permits already issued under the type are unaffected"""
    permit_type = await PermitType.get_for_municipality(municipality_id, permit_type_id)
    permit_type.lifecycle.soft_delete(principal.user_id)
    permit_type.updated_at = datetime.utcnow()
    await permit_type.save()

    logger.info("Permit type deleted", permit_type_id=permit_type_id)
    return {"message": "Permit type deleted successfully"}
