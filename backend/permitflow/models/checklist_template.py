from datetime import datetime
from typing import List, Optional
from beanie import Document
from pydantic import BaseModel, Field, field_validator
from pymongo import IndexModel, ASCENDING

from .permit_type import InspectionType


class ChecklistTemplateItem(BaseModel):
    text: str = Field(..., min_length=1)
    category: Optional[str] = None
    is_required: bool = True
    order: int = 0


class InspectionChecklistTemplate(Document):
    """Checklist copied into every inspection of a type when it is first opened"""

    municipality_id: str
    inspection_type: InspectionType
    name: str
    description: Optional[str] = None
    items: List[ChecklistTemplateItem] = Field(default_factory=list)
    is_active: bool = True

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "inspection_checklist_templates"
        indexes = [
            IndexModel(
                [("municipality_id", ASCENDING), ("inspection_type", ASCENDING)],
                unique=True,
                partialFilterExpression={"is_active": True},
                name="one_active_template_per_type"
            ),
        ]

    @field_validator("items")
    @classmethod
    def sort_items(cls, value: List[ChecklistTemplateItem]) -> List[ChecklistTemplateItem]:
        return sorted(value, key=lambda i: i.order)

    @classmethod
    async def get_active(cls, municipality_id: str, inspection_type: str) -> Optional["InspectionChecklistTemplate"]:
        return await cls.find_one({
            "municipality_id": municipality_id,
            "inspection_type": inspection_type,
            "is_active": True,
        })
