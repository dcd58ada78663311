from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from conftest import MONDAY, add_staff, seed_salon

from salonbook.availability import (
    SlotReason,
    compute_availability,
    shift_weekday,
    slots_for_interval,
)
from salonbook.booking import ClientRef, book_appointment
from salonbook.intervals import Interval
from salonbook.models import Service, Tenant, TimeOff


def utc(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def availability(session_local, salon, **kwargs):
    params = {
        "tenant_id": salon.tenant_id,
        "service_id": salon.service_id,
        "date_from": MONDAY,
        "date_to": MONDAY,
        "granularity_min": 30,
    }
    params.update(kwargs)
    with session_local() as db:
        return compute_availability(db, **params)


def test_weekday_numbering_starts_on_sunday():
    assert shift_weekday(date(2026, 11, 1)) == 0  # Sunday
    assert shift_weekday(date(2026, 11, 2)) == 1  # Monday
    assert shift_weekday(date(2026, 10, 31)) == 6  # Saturday


def test_monday_shift_yields_fifteen_hourly_slots_then_booking_removes_overlaps(session_local, salon):
    slots = availability(session_local, salon)

    assert len(slots) == 15
    assert [s.start for s in slots] == [utc(MONDAY, 9) + timedelta(minutes=30 * i) for i in range(15)]
    assert slots[-1].start == utc(MONDAY, 16)
    assert all(s.end - s.start == timedelta(minutes=60) for s in slots)
    assert all(s.staff_id == salon.staff_id for s in slots)
    assert all(s.reason == SlotReason.BEST_FIT for s in slots)

    book_appointment(
        session_local,
        tenant_id=salon.tenant_id,
        client=ClientRef(name="Anna Kowalska"),
        service_id=salon.service_id,
        staff_id=salon.staff_id,
        start=utc(MONDAY, 9),
    )

    after = availability(session_local, salon)
    assert len(after) == 13
    starts = [s.start for s in after]
    assert utc(MONDAY, 9) not in starts
    assert utc(MONDAY, 9, 30) not in starts
    assert starts == [s.start for s in slots if s.start >= utc(MONDAY, 10)]


def test_makassar_shift_is_shifted_eight_hours_to_utc(session_local):
    salon = seed_salon(session_local, time_zone="Asia/Makassar")
    slots = availability(session_local, salon)

    assert len(slots) == 15
    assert slots[0].start == utc(MONDAY, 1)
    assert slots[-1].start == utc(MONDAY, 8)
    local = slots[0].start.astimezone(ZoneInfo("Asia/Makassar"))
    assert (local.hour, local.minute) == (9, 0)
    assert local.utcoffset() == timedelta(hours=8)


def test_shift_weekday_matches_calendar_date(session_local, salon):
    sunday_staff = add_staff(
        session_local, salon.tenant_id, "Sunday Only", shifts=[(0, time(10, 0), time(12, 0))]
    )
    saturday_staff = add_staff(
        session_local, salon.tenant_id, "Saturday Only", shifts=[(6, time(10, 0), time(12, 0))]
    )

    sunday = availability(
        session_local, salon, date_from=date(2026, 11, 1), date_to=date(2026, 11, 1)
    )
    assert {s.staff_id for s in sunday} == {sunday_staff}
    assert sunday[0].start == utc(date(2026, 11, 1), 10)

    saturday = availability(
        session_local, salon, date_from=date(2026, 10, 31), date_to=date(2026, 10, 31)
    )
    assert {s.staff_id for s in saturday} == {saturday_staff}

    monday = availability(session_local, salon)
    assert {s.staff_id for s in monday} == {salon.staff_id}


def test_time_off_splits_the_day(session_local, salon):
    with session_local() as db:
        db.add(
            TimeOff(
                tenant_id=salon.tenant_id,
                staff_id=salon.staff_id,
                start_ts=datetime(2026, 11, 2, 12, 0),
                end_ts=datetime(2026, 11, 2, 13, 0),
                reason="lunch",
            )
        )
        db.commit()

    slots = availability(session_local, salon)
    assert len(slots) == 12
    lunch = Interval(utc(MONDAY, 12), utc(MONDAY, 13))
    assert not any(Interval(s.start, s.end).overlaps(lunch) for s in slots)
    assert slots[4].start == utc(MONDAY, 11)
    assert slots[5].start == utc(MONDAY, 13)


def test_default_granularity_is_ten_minutes(session_local, salon):
    slots = availability(session_local, salon, granularity_min=None)
    assert len(slots) == 43
    assert slots[1].start - slots[0].start == timedelta(minutes=10)


def test_string_dates_are_accepted(session_local, salon):
    assert len(availability(session_local, salon, date_from="2026-11-02", date_to="2026-11-02")) == 15


def test_range_only_produces_slots_on_matching_weekdays(session_local, salon):
    slots = availability(session_local, salon, date_to=MONDAY + timedelta(days=2))
    assert len(slots) == 15
    assert {s.start.date() for s in slots} == {MONDAY}


def test_preferred_staff_restricts_candidates_and_tags_reason(session_local, salon):
    kamila = add_staff(
        session_local, salon.tenant_id, "Kamila", shifts=[(1, time(9, 0), time(17, 0))]
    )

    both = availability(session_local, salon)
    assert len(both) == 30
    assert [s.staff_id for s in both[:2]] == [salon.staff_id, kamila]
    assert both[0].start == both[1].start

    preferred = availability(session_local, salon, preferred_staff_ids=[kamila])
    assert len(preferred) == 15
    assert {s.staff_id for s in preferred} == {kamila}
    assert all(s.reason == SlotReason.STAFF_PREF for s in preferred)


def test_preference_without_active_match_is_empty(session_local, salon):
    retired = add_staff(
        session_local, salon.tenant_id, "Retired", active=False, shifts=[(1, time(9, 0), time(17, 0))]
    )
    assert availability(session_local, salon, preferred_staff_ids=[retired]) == []
    assert availability(session_local, salon, preferred_staff_ids=[9999]) == []
    assert len(availability(session_local, salon)) == 15


def test_unmatched_preference_ids_drop_out_of_the_intersection(session_local, salon):
    kamila = add_staff(
        session_local, salon.tenant_id, "Kamila", shifts=[(1, time(9, 0), time(17, 0))]
    )
    slots = availability(session_local, salon, preferred_staff_ids=[0, kamila])
    assert len(slots) == 15
    assert {s.staff_id for s in slots} == {kamila}
    assert availability(session_local, salon, preferred_staff_ids=[0, -3]) == []


def test_overlapping_shifts_do_not_duplicate_slots(session_local, salon):
    staff_id = add_staff(
        session_local,
        salon.tenant_id,
        "Split Shift",
        shifts=[(1, time(9, 0), time(12, 0)), (1, time(11, 0), time(14, 0))],
    )
    slots = availability(session_local, salon, preferred_staff_ids=[staff_id])
    starts = [s.start for s in slots]
    assert len(starts) == len(set(starts)) == 9
    assert starts[-1] == utc(MONDAY, 13)


def test_slot_generation_boundaries():
    start = utc(MONDAY, 9)

    def count(minutes: int) -> list:
        free = Interval(start, start + timedelta(minutes=minutes))
        return list(slots_for_interval(1, free, required_min=60, granularity_min=10))

    exact = count(60)
    assert len(exact) == 1
    assert exact[0].start == start
    assert count(59) == []
    assert len(count(60 + 10 - 1)) == 1
    assert len(count(60 + 10)) == 2


def test_gap_fill_marks_the_only_start_of_a_tight_interval():
    # gap_fill is produced only for a free interval that fits exactly one start
    start = utc(MONDAY, 9)
    tight = list(slots_for_interval(1, Interval(start, start + timedelta(minutes=65)), 60, 10))
    assert [s.reason for s in tight] == [SlotReason.GAP_FILL]

    roomy = list(slots_for_interval(1, Interval(start, start + timedelta(minutes=120)), 60, 10))
    assert {s.reason for s in roomy} == {SlotReason.BEST_FIT}

    preferred = list(slots_for_interval(1, Interval(start, start + timedelta(minutes=65)), 60, 10, True))
    assert [s.reason for s in preferred] == [SlotReason.STAFF_PREF]


def test_sliver_left_by_a_booking_is_tagged_gap_fill(session_local):
    salon = seed_salon(session_local, shift=(time(9, 0), time(11, 0)))
    slots = availability(session_local, salon)
    assert [s.reason for s in slots] == [SlotReason.BEST_FIT] * 3

    book_appointment(
        session_local,
        tenant_id=salon.tenant_id,
        client=None,
        service_id=salon.service_id,
        staff_id=salon.staff_id,
        start=utc(MONDAY, 10),
    )

    after = availability(session_local, salon)
    assert [(s.start, s.reason) for s in after] == [(utc(MONDAY, 9), SlotReason.GAP_FILL)]


def test_unresolvable_inputs_degrade_to_empty(session_local, salon):
    with session_local() as db:
        other = Tenant(slug="other", name="Other Salon", time_zone="UTC")
        db.add(other)
        db.flush()
        foreign = Service(tenant_id=other.id, name="Foreign", duration_min=30, prep_min=0, cleanup_min=0, price=0)
        db.add(foreign)
        db.commit()
        foreign_id = foreign.id

    assert availability(session_local, salon, service_id=9999) == []
    assert availability(session_local, salon, service_id=foreign_id) == []
    assert availability(session_local, salon, tenant_id=9999) == []
    assert availability(session_local, salon, date_from="2026-13-45") == []
    assert availability(session_local, salon, date_from=MONDAY + timedelta(days=1)) == []
    assert availability(session_local, salon, date_to=MONDAY + timedelta(days=400)) == []
    assert availability(session_local, salon, granularity_min=-5) == []
    assert availability(session_local, salon, granularity_min=0) == []


def test_unknown_time_zone_degrades_to_empty(session_local):
    salon = seed_salon(session_local, time_zone="Mars/Olympus_Mons")
    assert availability(session_local, salon) == []
