"""
Inspector assignment and slot search.

Availability is read from the per-inspector-day booking ledger
(``InspectorDaySchedule``); bookings are committed with a compare-and-swap
on the ledger version and retried when another request got there first.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..core.config import settings
from ..core.errors import ConflictError
from ..core.logging_config import get_permit_logger
from ..models.inspection_settings import InspectionSettings, InspectorProfile
from ..models.inspector_schedule import Booking, InspectorDaySchedule

logger = get_permit_logger(__name__)


def intervals_overlap(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return (
        (other_start <= start < other_end)
        or (other_start < end <= other_end)
        or (start <= other_start and end >= other_end)
    )


def inspector_has_capacity(
    bookings: Iterable[Booking],
    inspector: InspectorProfile,
    start: datetime,
    end: datetime,
    ignore_inspection_id: Optional[str] = None
) -> bool:
    """Under the daily cap and free for the whole of [start, end)"""
    bookings = [b for b in bookings if b.inspection_id != ignore_inspection_id]
    if len(bookings) >= inspector.max_per_day:
        return False
    return not any(intervals_overlap(start, end, b.start, b.end) for b in bookings)


def earliest_allowed(buffer_days: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.utcnow()) + timedelta(days=buffer_days)


def candidate_slots(
    inspection_settings: InspectionSettings,
    start: datetime,
    end: datetime,
    estimated_minutes: int
) -> Iterator[Tuple[datetime, datetime]]:
    """Slots inside the configured weekday windows that fit wholly between ``start`` and ``end``"""
    duration = timedelta(minutes=estimated_minutes)
    day = start.date()
    while day <= end.date():
        for window in inspection_settings.windows_for(day.weekday()):
            step = timedelta(minutes=window.slot_duration or estimated_minutes)
            slot_start = datetime.combine(day, window.start)
            window_end = min(datetime.combine(day, window.end), end)
            while slot_start + duration <= window_end:
                if slot_start >= start:
                    yield slot_start, slot_start + duration
                slot_start += step
        day += timedelta(days=1)


class InspectionScheduler:
    """Finds and books inspector time"""

    async def _bookings(self, inspector_id: str, moment: datetime) -> List[Booking]:
        ledger = await InspectorDaySchedule.peek(inspector_id, moment)
        return ledger.bookings if ledger else []

    async def find_available_inspector(
        self,
        inspectors: List[InspectorProfile],
        municipality_id: str,
        start: datetime,
        end: datetime,
        inspection_type: Optional[str] = None
    ) -> Optional[InspectorProfile]:
        """First eligible inspector, in roster order, who is free for the slot"""
        for inspector in inspectors:
            if not inspector.is_active:
                continue
            if inspection_type and not inspector.supports(inspection_type):
                continue
            bookings = await self._bookings(inspector.user_id, start)
            if inspector_has_capacity(bookings, inspector, start, end):
                return inspector
        return None

    async def available_slots(
        self,
        inspection_settings: InspectionSettings,
        inspection_type: str,
        buffer_days: int,
        estimated_minutes: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        earliest = earliest_allowed(buffer_days, now)
        start = max(start_date, earliest) if start_date else earliest
        end = end_date or start + timedelta(days=settings.SLOT_SEARCH_DAYS)
        inspectors = inspection_settings.eligible_inspectors(inspection_type)

        slots = []
        for slot_start, slot_end in candidate_slots(inspection_settings, start, end, estimated_minutes):
            inspector = await self.find_available_inspector(
                inspectors, inspection_settings.municipality_id, slot_start, slot_end
            )
            if inspector:
                slots.append({
                    "start": slot_start,
                    "end": slot_end,
                    "inspector_id": inspector.user_id,
                    "inspector_name": inspector.name,
                })
        return slots

    async def book(
        self,
        municipality_id: str,
        inspectors: List[InspectorProfile],
        inspection_id: str,
        start: datetime,
        end: datetime
    ) -> Optional[InspectorProfile]:
        """
        Book the first inspector with room for [start, end).

        Returns None when nobody has room. Raises ConflictError if the
        ledger keeps changing underneath us.
        """
        booking = Booking(inspection_id=inspection_id, start=start, end=end)
        for attempt in range(settings.BOOKING_MAX_RETRIES):
            for inspector in inspectors:
                ledger = await InspectorDaySchedule.for_day(municipality_id, inspector.user_id, start)
                if not inspector_has_capacity(ledger.bookings, inspector, start, end,
                                              ignore_inspection_id=inspection_id):
                    continue
                if await ledger.try_book(booking):
                    return inspector
                logger.debug("Inspector ledger changed during booking; retrying",
                             inspector_id=inspector.user_id, attempt=attempt + 1)
                break
            else:
                return None
        raise ConflictError("The inspection calendar is busy; please try again")

    async def release(self, inspector_id: Optional[str], start: datetime, inspection_id: str):
        if inspector_id:
            await InspectorDaySchedule.release(inspector_id, start, inspection_id)


inspection_scheduler = InspectionScheduler()
