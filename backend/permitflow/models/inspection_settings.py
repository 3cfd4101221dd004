from datetime import datetime, time
from typing import List, Optional
from beanie import Document
from pydantic import BaseModel, Field, field_validator, model_validator
from pymongo import IndexModel, ASCENDING


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class TimeWindow(BaseModel):
    """Bookable hours on one weekday (0 = Monday)"""
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM")
    slot_duration: Optional[int] = Field(None, gt=0, description="Minutes; defaults to the inspection's estimate")

    @field_validator("start_time", "end_time")
    @classmethod
    def check_hhmm(cls, value: str) -> str:
        try:
            _parse_hhmm(value)
        except (ValueError, TypeError):
            raise ValueError("Times must use HH:MM format")
        return value

    @model_validator(mode="after")
    def check_order(self):
        if self.start > self.end:
            raise ValueError("start_time must not be after end_time")
        return self

    @property
    def start(self) -> time:
        return _parse_hhmm(self.start_time)

    @property
    def end(self) -> time:
        return _parse_hhmm(self.end_time)


class InspectorProfile(BaseModel):
    user_id: str
    name: Optional[str] = None
    is_active: bool = True
    inspection_types: List[str] = Field(default_factory=list, description="Empty means all types")
    max_per_day: int = Field(default=8, ge=1)

    def supports(self, inspection_type: str) -> bool:
        return not self.inspection_types or inspection_type in self.inspection_types


class InspectionSettings(Document):
    """A municipality's inspection calendar and inspector roster"""

    municipality_id: str
    available_time_slots: List[TimeWindow] = Field(default_factory=list)
    inspectors: List[InspectorProfile] = Field(default_factory=list)
    updated_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "inspection_settings"
        indexes = [
            IndexModel([("municipality_id", ASCENDING)], unique=True),
        ]

    def eligible_inspectors(self, inspection_type: str) -> List[InspectorProfile]:
        return [i for i in self.inspectors if i.is_active and i.supports(inspection_type)]

    def find_inspector(self, user_id: str) -> Optional[InspectorProfile]:
        for inspector in self.inspectors:
            if inspector.user_id == user_id:
                return inspector
        return None

    def windows_for(self, day_of_week: int) -> List[TimeWindow]:
        return sorted(
            (w for w in self.available_time_slots if w.day_of_week == day_of_week),
            key=lambda w: w.start
        )
