from datetime import datetime
from typing import List, Optional
from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel, ASCENDING


class Booking(BaseModel):
    inspection_id: str
    start: datetime
    end: datetime


def day_key(moment: datetime) -> str:
    return moment.date().isoformat()


class InspectorDaySchedule(Document):
    """
    Booking ledger for one inspector on one calendar day.

    Writers compare-and-swap on ``version`` so two requests cannot both take
    the last slot or overlapping slots.
    """

    municipality_id: str
    inspector_id: str
    day: str = Field(..., description="YYYY-MM-DD")
    bookings: List[Booking] = Field(default_factory=list)
    version: int = 0

    class Settings:
        name = "inspector_day_schedules"
        indexes = [
            IndexModel([("inspector_id", ASCENDING), ("day", ASCENDING)], unique=True),
        ]

    @classmethod
    async def for_day(cls, municipality_id: str, inspector_id: str, moment: datetime) -> "InspectorDaySchedule":
        """Load the ledger, creating an empty one if none exists yet"""
        key = day_key(moment)
        collection = cls.get_pymongo_collection()
        await collection.update_one(
            {"inspector_id": inspector_id, "day": key},
            {"$setOnInsert": {
                "municipality_id": municipality_id,
                "inspector_id": inspector_id,
                "day": key,
                "bookings": [],
                "version": 0,
            }},
            upsert=True,
        )
        return await cls.find_one({"inspector_id": inspector_id, "day": key})

    @classmethod
    async def peek(cls, inspector_id: str, moment: datetime) -> Optional["InspectorDaySchedule"]:
        return await cls.find_one({"inspector_id": inspector_id, "day": day_key(moment)})

    async def try_book(self, booking: Booking) -> bool:
        """Append ``booking`` if nobody changed the ledger since it was read"""
        result = await self.get_pymongo_collection().update_one(
            {"_id": self.id, "version": self.version},
            {
                "$push": {"bookings": booking.model_dump()},
                "$inc": {"version": 1},
            }
        )
        return result.modified_count == 1

    @classmethod
    async def release(cls, inspector_id: str, start: datetime, inspection_id: str):
        """Drop the booking that starts at ``start``; a rescheduled inspection may briefly hold two"""
        await cls.get_pymongo_collection().update_one(
            {"inspector_id": inspector_id, "day": day_key(start)},
            {
                "$pull": {"bookings": {"inspection_id": inspection_id, "start": start}},
                "$inc": {"version": 1},
            }
        )
