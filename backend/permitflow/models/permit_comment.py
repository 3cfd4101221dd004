from datetime import datetime
from enum import Enum
from typing import List, Optional
from beanie import Document
from pydantic import Field
from pymongo import IndexModel, ASCENDING

from .common import Lifecycle


class CommentVisibility(str, Enum):
    PUBLIC = "public"        # applicant, contractor and staff
    INTERNAL = "internal"    # municipal staff only
    PRIVATE = "private"      # author only


class PermitComment(Document):
    """Comment thread entry on a permit, optionally tied to a department review"""

    municipality_id: str
    permit_id: str
    content: str = Field(..., min_length=1)
    visibility: CommentVisibility = CommentVisibility.INTERNAL
    author_id: str
    author_name: Optional[str] = None
    department: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)

    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "permit_comments"
        indexes = [
            IndexModel([("permit_id", ASCENDING), ("created_at", ASCENDING)]),
        ]
