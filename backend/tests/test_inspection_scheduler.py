from datetime import datetime, timedelta

import pytest

from permitflow.models.inspection_settings import InspectionSettings, InspectorProfile, TimeWindow
from permitflow.models.inspector_schedule import Booking, InspectorDaySchedule
from permitflow.services.inspection_scheduler import (
    InspectionScheduler,
    candidate_slots,
    earliest_allowed,
    inspector_has_capacity,
    intervals_overlap,
)

from factories import MUNICIPALITY_ID

DAY = datetime(2026, 3, 10)  # a Tuesday


def at(hour: int, minute: int = 0) -> datetime:
    return DAY.replace(hour=hour, minute=minute)


def booking(inspection_id: str, start_hour: int, end_hour: int) -> Booking:
    return Booking(inspection_id=inspection_id, start=at(start_hour), end=at(end_hour))


def calendar(*windows: TimeWindow, inspectors=()) -> InspectionSettings:
    """Unsaved inspection settings; model_construct skips the Beanie collection lookup"""
    return InspectionSettings.model_construct(
        municipality_id=MUNICIPALITY_ID,
        available_time_slots=list(windows),
        inspectors=list(inspectors),
    )


class TestOverlap:
    """Three overlap cases plus the touching-edge case"""

    def test_candidate_starts_inside_existing(self):
        assert intervals_overlap(at(9, 30), at(10, 30), at(9), at(10))

    def test_candidate_ends_inside_existing(self):
        assert intervals_overlap(at(8, 30), at(9, 30), at(9), at(10))

    def test_candidate_contains_existing(self):
        assert intervals_overlap(at(8), at(11), at(9), at(10))

    def test_back_to_back_slots_do_not_overlap(self):
        assert not intervals_overlap(at(10), at(11), at(9), at(10))
        assert not intervals_overlap(at(8), at(9), at(9), at(10))


class TestCapacity:
    def test_daily_cap_rejects_regardless_of_time(self):
        """Two non-overlapping bookings fill a cap of two"""
        inspector = InspectorProfile(user_id="insp", max_per_day=2)
        bookings = [booking("a", 8, 9), booking("b", 13, 14)]

        assert not inspector_has_capacity(bookings, inspector, at(10), at(11))

    def test_conflict_rejects_when_under_cap(self):
        inspector = InspectorProfile(user_id="insp", max_per_day=5)
        assert not inspector_has_capacity([booking("a", 9, 10)], inspector, at(9, 30), at(10, 30))

    def test_free_inspector_under_cap(self):
        inspector = InspectorProfile(user_id="insp", max_per_day=5)
        assert inspector_has_capacity([booking("a", 9, 10)], inspector, at(10), at(11))

    def test_own_booking_is_ignored(self):
        inspector = InspectorProfile(user_id="insp", max_per_day=1)
        assert inspector_has_capacity([booking("a", 9, 10)], inspector, at(9), at(10), ignore_inspection_id="a")


class TestSlotSearch:
    def test_earliest_allowed_adds_buffer(self):
        now = datetime(2026, 3, 10, 15, 30)
        assert earliest_allowed(2, now) == datetime(2026, 3, 12, 15, 30)

    def test_candidate_slots_follow_weekday_windows(self):
        inspection_settings = calendar(TimeWindow(day_of_week=1, start_time="09:00", end_time="11:00"))
        slots = list(candidate_slots(inspection_settings, at(0), at(0) + timedelta(days=6), 60))

        assert slots == [(at(9), at(10)), (at(10), at(11))]

    def test_candidate_slots_start_after_search_start(self):
        inspection_settings = calendar(
            TimeWindow(day_of_week=1, start_time="08:00", end_time="12:00", slot_duration=30)
        )
        slots = list(candidate_slots(inspection_settings, at(10, 15), at(23), 60))

        assert slots[0] == (at(10, 30), at(11, 30))
        assert slots[-1] == (at(11), at(12))

    def test_candidate_slots_stop_at_search_end(self):
        inspection_settings = calendar(TimeWindow(day_of_week=1, start_time="08:00", end_time="16:00"))
        slots = list(candidate_slots(inspection_settings, at(0), at(11, 30), 60))

        assert slots == [(at(8), at(9)), (at(9), at(10)), (at(10), at(11))]

    def test_window_shorter_than_inspection_has_no_slots(self):
        inspection_settings = calendar(TimeWindow(day_of_week=1, start_time="09:00", end_time="09:30"))
        assert list(candidate_slots(inspection_settings, at(0), at(23), 60)) == []


class TestBookingLedger:
    """Bookings against the per-inspector-day ledger"""

    async def test_first_fit_in_roster_order(self, clean_db):
        scheduler = InspectionScheduler()
        first = InspectorProfile(user_id="first", max_per_day=1)
        second = InspectorProfile(user_id="second", max_per_day=1)

        assert (await scheduler.book(MUNICIPALITY_ID, [first, second], "i-1", at(9), at(10))).user_id == "first"
        assert (await scheduler.book(MUNICIPALITY_ID, [first, second], "i-2", at(9), at(10))).user_id == "second"
        assert await scheduler.book(MUNICIPALITY_ID, [first, second], "i-3", at(13), at(14)) is None

    async def test_overlap_is_rejected_on_the_ledger(self, clean_db):
        scheduler = InspectionScheduler()
        inspector = InspectorProfile(user_id="solo", max_per_day=8)

        assert await scheduler.book(MUNICIPALITY_ID, [inspector], "i-1", at(9), at(10))
        assert await scheduler.book(MUNICIPALITY_ID, [inspector], "i-2", at(9, 30), at(10, 30)) is None
        assert await scheduler.book(MUNICIPALITY_ID, [inspector], "i-3", at(10), at(11))

        ledger = await InspectorDaySchedule.peek("solo", at(9))
        assert [b.inspection_id for b in ledger.bookings] == ["i-1", "i-3"]
        assert ledger.version == 2

    async def test_release_frees_the_slot(self, clean_db):
        scheduler = InspectionScheduler()
        inspector = InspectorProfile(user_id="solo", max_per_day=1)

        await scheduler.book(MUNICIPALITY_ID, [inspector], "i-1", at(9), at(10))
        await scheduler.release("solo", at(9), "i-1")

        assert await scheduler.book(MUNICIPALITY_ID, [inspector], "i-2", at(11), at(12))

    async def test_stale_ledger_write_is_refused(self, clean_db):
        """A writer holding an old version must re-read before booking"""
        ledger = await InspectorDaySchedule.for_day(MUNICIPALITY_ID, "solo", at(9))
        stale = await InspectorDaySchedule.for_day(MUNICIPALITY_ID, "solo", at(9))

        assert await ledger.try_book(booking("i-1", 9, 10))
        assert not await stale.try_book(booking("i-2", 9, 10))

    async def test_find_available_inspector_skips_inactive_and_unqualified(self, clean_db):
        scheduler = InspectionScheduler()
        inspectors = [
            InspectorProfile(user_id="retired", is_active=False),
            InspectorProfile(user_id="plumbing-only", inspection_types=["rough_plumbing"]),
            InspectorProfile(user_id="generalist"),
        ]
        chosen = await scheduler.find_available_inspector(
            inspectors, MUNICIPALITY_ID, at(9), at(10), inspection_type="foundation"
        )
        assert chosen.user_id == "generalist"

    @pytest.mark.parametrize("cap", [1, 2])
    async def test_available_slots_respect_cap(self, clean_db, cap):
        scheduler = InspectionScheduler()
        inspection_settings = InspectionSettings(
            municipality_id=MUNICIPALITY_ID,
            available_time_slots=[TimeWindow(day_of_week=1, start_time="09:00", end_time="12:00")],
            inspectors=[InspectorProfile(user_id="solo", max_per_day=cap)],
        )
        await scheduler.book(MUNICIPALITY_ID, inspection_settings.inspectors, "i-1", at(9), at(10))

        slots = await scheduler.available_slots(
            inspection_settings, "foundation", buffer_days=0, estimated_minutes=60,
            start_date=at(0), end_date=at(23), now=at(0),
        )
        assert [s["start"] for s in slots] == ([] if cap == 1 else [at(10), at(11)])
