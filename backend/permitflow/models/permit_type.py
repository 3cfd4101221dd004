"""
Permit type templates: what a class of permits needs (departments,
custom fields, inspections) and which fee schedule prices it.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from beanie import Document
from pydantic import BaseModel, Field, field_validator
from pymongo import IndexModel, ASCENDING

from ..core.errors import NotFoundError
from .common import ACTIVE, Lifecycle, parse_object_id


class PermitKind(str, Enum):
    BUILDING = "building"
    ELECTRICAL = "electrical"
    PLUMBING = "plumbing"
    MECHANICAL = "mechanical"
    DEMOLITION = "demolition"
    ZONING = "zoning"
    SIGN = "sign"
    OCCUPANCY = "occupancy"
    FIRE = "fire"
    OTHER = "other"


class InspectionType(str, Enum):
    FOUNDATION = "foundation"
    FRAMING = "framing"
    ROUGH_ELECTRICAL = "rough_electrical"
    ROUGH_PLUMBING = "rough_plumbing"
    ROUGH_MECHANICAL = "rough_mechanical"
    INSULATION = "insulation"
    DRYWALL = "drywall"
    FINAL_ELECTRICAL = "final_electrical"
    FINAL_PLUMBING = "final_plumbing"
    FINAL_MECHANICAL = "final_mechanical"
    FINAL = "final"
    OCCUPANCY = "occupancy"
    FIRE = "fire"
    OTHER = "other"


class CustomFieldType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"
    CHECKBOX = "checkbox"


class DepartmentReviewConfig(BaseModel):
    """A department that must (or may) sign off on permits of this type"""
    department_name: str
    is_required: bool = True
    review_order: int = 0
    reviewer_ids: List[str] = Field(default_factory=list, description="Users notified when a permit is submitted")
    required_documents: List[str] = Field(default_factory=list)
    checklist: List[str] = Field(default_factory=list)


class CustomFormField(BaseModel):
    name: str
    label: str
    field_type: CustomFieldType = CustomFieldType.TEXT
    required: bool = False
    options: List[str] = Field(default_factory=list)


class RequiredInspection(BaseModel):
    type: InspectionType
    description: Optional[str] = None
    buffer_days: int = Field(default=1, ge=0, description="Minimum days of advance notice")
    estimated_minutes: int = Field(default=60, gt=0)


class PermitTypeInspectionSettings(BaseModel):
    required_inspections: List[RequiredInspection] = Field(default_factory=list)


class FeeScheduleLink(BaseModel):
    linked_schedule_id: Optional[str] = Field(None, description="Cached pointer to the active fee schedule")
    linked_at: Optional[datetime] = None


class PermitType(Document):
    """Municipality-defined template for a class of permits"""

    municipality_id: str = Field(..., description="Owning municipality")
    name: str = Field(..., description="Display name, unique per municipality")
    code: Optional[str] = Field(None, description="Short code used on printed permits")
    type: PermitKind = Field(default=PermitKind.BUILDING)
    description: Optional[str] = None

    categories: List[str] = Field(..., min_length=1, description="Work categories; more than one makes a project")
    department_reviews: List[DepartmentReviewConfig] = Field(default_factory=list)
    custom_form_fields: List[CustomFormField] = Field(default_factory=list)
    inspection_settings: PermitTypeInspectionSettings = Field(default_factory=PermitTypeInspectionSettings)
    fee_schedule: FeeScheduleLink = Field(default_factory=FeeScheduleLink)

    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "permit_types"
        indexes = [
            IndexModel(
                [("municipality_id", ASCENDING), ("name", ASCENDING)],
                unique=True,
                name="municipality_name_unique"
            ),
            IndexModel([("municipality_id", ASCENDING), ("lifecycle.is_active", ASCENDING)]),
        ]

    @field_validator("department_reviews")
    @classmethod
    def sort_departments(cls, value: List[DepartmentReviewConfig]) -> List[DepartmentReviewConfig]:
        return sorted(value, key=lambda d: d.review_order)

    @property
    def is_project(self) -> bool:
        return len(self.categories) > 1

    def inspection_requirement(self, inspection_type: str) -> Optional[RequiredInspection]:
        for requirement in self.inspection_settings.required_inspections:
            if requirement.type.value == inspection_type:
                return requirement
        return None

    def validate_custom_fields(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check submitted custom field values against this type's definitions.

        Returns the cleaned values; raises ValueError naming the first problem.
        """
        definitions = {f.name: f for f in self.custom_form_fields}
        unknown = sorted(set(values) - set(definitions))
        if unknown:
            raise ValueError(f"Unknown custom fields: {', '.join(unknown)}")

        cleaned: Dict[str, Any] = {}
        for name, definition in definitions.items():
            value = values.get(name)
            if value is None or value == "":
                if definition.required:
                    raise ValueError(f"Custom field '{definition.label}' is required")
                continue

            if definition.field_type == CustomFieldType.NUMBER:
                try:
                    value = float(value)
                except (TypeError, ValueError):
                    raise ValueError(f"Custom field '{definition.label}' must be a number")
            elif definition.field_type == CustomFieldType.CHECKBOX:
                value = bool(value)
            elif definition.field_type == CustomFieldType.SELECT and definition.options:
                if value not in definition.options:
                    raise ValueError(
                        f"Custom field '{definition.label}' must be one of: {', '.join(definition.options)}"
                    )
            cleaned[name] = value
        return cleaned

    @classmethod
    async def get_for_municipality(cls, municipality_id: str, permit_type_id: str) -> "PermitType":
        permit_type = await cls.find_one({
            "_id": parse_object_id(permit_type_id, "Permit type"),
            "municipality_id": municipality_id,
            **ACTIVE,
        })
        if not permit_type:
            raise NotFoundError("Permit type not found")
        return permit_type
