from beanie import Document
from pydantic import Field
from pymongo import ReturnDocument


class PermitCounter(Document):
    """Per municipality/type/year permit number sequence"""

    id: str = Field(..., description="municipality_id:type:year")
    seq: int = 0

    class Settings:
        name = "permit_counters"

    @classmethod
    async def next_value(cls, key: str) -> int:
        """Atomically increment and return the sequence for ``key``"""
        collection = cls.get_pymongo_collection()
        counter = await collection.find_one_and_update(
            {"_id": key},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["seq"]
