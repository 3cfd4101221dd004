from typing import List, Optional
from pydantic import BaseModel, Field

from ..models.permit_type import (
    CustomFormField,
    DepartmentReviewConfig,
    PermitKind,
    PermitType,
    PermitTypeInspectionSettings,
)


class PermitTypeCreate(BaseModel):
    name: str = Field(..., min_length=1)
    code: Optional[str] = None
    type: PermitKind = PermitKind.BUILDING
    description: Optional[str] = None
    categories: List[str] = Field(..., min_length=1)
    department_reviews: List[DepartmentReviewConfig] = Field(default_factory=list)
    custom_form_fields: List[CustomFormField] = Field(default_factory=list)
    inspection_settings: PermitTypeInspectionSettings = Field(default_factory=PermitTypeInspectionSettings)


class PermitTypeUpdate(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None
    type: Optional[PermitKind] = None
    description: Optional[str] = None
    categories: Optional[List[str]] = Field(None, min_length=1)
    department_reviews: Optional[List[DepartmentReviewConfig]] = None
    custom_form_fields: Optional[List[CustomFormField]] = None
    inspection_settings: Optional[PermitTypeInspectionSettings] = None


class PermitTypeListResponse(BaseModel):
    permit_types: List[PermitType]
    total: int
