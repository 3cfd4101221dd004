from datetime import datetime
from typing import Optional
from beanie import Document
from pydantic import Field
from pymongo import IndexModel, ASCENDING


class PaymentAccount(Document):
    """Connected payment account that receives a municipality's permit fees"""

    municipality_id: str
    municipality_name: Optional[str] = None
    stripe_account_id: Optional[str] = None
    is_setup_complete: bool = False
    updated_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "payment_accounts"
        indexes = [
            IndexModel([("municipality_id", ASCENDING)], unique=True),
        ]
