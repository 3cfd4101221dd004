"""
Value types shared across permit, inspection and issue documents.
"""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Optional
from beanie import PydanticObjectId
from bson import ObjectId
from pydantic import AfterValidator, BaseModel, Field

from ..core.errors import NotFoundError


def new_item_id() -> str:
    """Identifier for an embedded list item (violation, checklist item, note...)"""
    return uuid.uuid4().hex


class Lifecycle(BaseModel):
    """Soft-delete state. Every query on an owning document filters on ``lifecycle.is_active``."""
    is_active: bool = True
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    def soft_delete(self, user_id: str):
        self.is_active = False
        self.deleted_at = datetime.utcnow()
        self.deleted_by = user_id


ACTIVE = {"lifecycle.is_active": True}


class Note(BaseModel):
    id: str = Field(default_factory=new_item_id)
    content: str
    created_by: str
    created_by_name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Photo(BaseModel):
    id: str = Field(default_factory=new_item_id)
    url: str
    storage_path: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None
    uploaded_by: str
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)


def parse_object_id(value: str, what: str = "Resource") -> PydanticObjectId:
    """Parse a path/body identifier, treating malformed ids as not found"""
    if not value or not ObjectId.is_valid(value):
        raise NotFoundError(f"{what} not found")
    return PydanticObjectId(value)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes are naive UTC; normalize aware input to match"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(to_naive_utc)]
