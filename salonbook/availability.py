"""
Availability engine.

Weekly shift templates are re-read against every calendar date of the query
window in the tenant's zone, time off and booked appointment items are cut
out, and the remaining free intervals are stepped through at a fixed
granularity. The computation is read-only and takes no locks, so a returned
slot can be gone by the time it is booked; the booking committer re-checks.
"""

import enum
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .intervals import (
    Interval,
    iter_starts,
    merge_intervals,
    subtract_intervals,
    to_utc_aware,
    to_utc_naive,
)
from .models import AppointmentItem, Service, Shift, Staff, Tenant, TimeOff

logger = structlog.get_logger("salonbook.availability")


class SlotReason(str, enum.Enum):
    STAFF_PREF = "staff_pref"
    BEST_FIT = "best_fit"
    # the only start an otherwise too-short free interval can host
    GAP_FILL = "gap_fill"


@dataclass(frozen=True)
class Slot:
    staff_id: int
    start: datetime
    end: datetime
    reason: SlotReason


def shift_weekday(day: date) -> int:
    """Weekday in shift numbering: 0 = Sunday .. 6 = Saturday."""
    return day.isoweekday() % 7


def _parse_day(value) -> date | None:
    if isinstance(value, datetime):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


def _parse_id(value) -> int | None:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _parse_staff_ids(values: Iterable | None) -> set[int] | None:
    """Positive ids of a preference list; None when no preference was given."""
    supplied = False
    out: set[int] = set()
    for raw in values or []:
        if raw is None or not str(raw).strip():
            continue
        supplied = True
        parsed = _parse_id(raw)
        if parsed is not None:
            out.add(parsed)
    return out if supplied else None


def _tenant_zone(tenant: Tenant) -> ZoneInfo | None:
    try:
        return ZoneInfo(str(tenant.time_zone or "").strip())
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        return None


def _iter_days(day_from: date, day_to: date) -> Iterator[date]:
    cursor = day_from
    while cursor <= day_to:
        yield cursor
        cursor += timedelta(days=1)


def local_window(day_from: date, day_to: date, tz: ZoneInfo) -> Interval:
    start = datetime.combine(day_from, time.min, tzinfo=tz)
    end = datetime.combine(day_to + timedelta(days=1), time.min, tzinfo=tz)
    return Interval(start.astimezone(timezone.utc), end.astimezone(timezone.utc))


def shift_interval(day: date, shift: Shift, tz: ZoneInfo) -> Interval | None:
    start = datetime.combine(day, shift.start_time, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(day, shift.end_time, tzinfo=tz).astimezone(timezone.utc)
    if end <= start:
        return None
    return Interval(start, end)


def load_candidate_staff_ids(
    db: Session, tenant_id: int, preferred: set[int] | None = None
) -> list[int]:
    stmt = select(Staff.id).where(Staff.tenant_id == tenant_id, Staff.active.is_(True))
    if preferred:
        stmt = stmt.where(Staff.id.in_(sorted(preferred)))
    return list(db.execute(stmt.order_by(Staff.id.asc())).scalars().all())


def load_shifts(db: Session, tenant_id: int, staff_ids: list[int]) -> dict[int, list[Shift]]:
    rows = db.execute(
        select(Shift).where(Shift.tenant_id == tenant_id, Shift.staff_id.in_(staff_ids))
    ).scalars()
    out: dict[int, list[Shift]] = defaultdict(list)
    for row in rows:
        out[row.staff_id].append(row)
    return out


def _load_busy(db: Session, model, tenant_id: int, staff_ids: list[int], window: Interval):
    window_start = to_utc_naive(window.start)
    window_end = to_utc_naive(window.end)
    rows = db.execute(
        select(model.staff_id, model.start_ts, model.end_ts).where(
            model.tenant_id == tenant_id,
            model.staff_id.in_(staff_ids),
            model.start_ts < window_end,
            model.end_ts > window_start,
        )
    ).all()
    out: dict[int, list[Interval]] = defaultdict(list)
    for staff_id, start_ts, end_ts in rows:
        out[staff_id].append(Interval(to_utc_aware(start_ts), to_utc_aware(end_ts)))
    return out


def load_time_off(db: Session, tenant_id: int, staff_ids: list[int], window: Interval):
    return _load_busy(db, TimeOff, tenant_id, staff_ids, window)


def load_appointment_items(db: Session, tenant_id: int, staff_ids: list[int], window: Interval):
    return _load_busy(db, AppointmentItem, tenant_id, staff_ids, window)


def free_intervals_for_day(
    day: date,
    shifts: list[Shift],
    tz: ZoneInfo,
    time_off: list[Interval],
    booked: list[Interval],
) -> list[Interval]:
    weekday = shift_weekday(day)
    base = [
        interval
        for interval in (shift_interval(day, s, tz) for s in shifts if s.weekday == weekday)
        if interval is not None
    ]
    if not base:
        return []
    free = subtract_intervals(merge_intervals(base), time_off)
    return subtract_intervals(free, booked)


def slots_for_interval(
    staff_id: int,
    free: Interval,
    required_min: int,
    granularity_min: int,
    preferred: bool = False,
) -> Iterator[Slot]:
    required = timedelta(minutes=required_min)
    latest_start = free.end - required
    if latest_start < free.start:
        return
    if preferred:
        reason = SlotReason.STAFF_PREF
    elif latest_start - free.start < timedelta(minutes=granularity_min):
        reason = SlotReason.GAP_FILL
    else:
        reason = SlotReason.BEST_FIT
    for start in iter_starts(free.start, latest_start, granularity_min):
        yield Slot(staff_id=staff_id, start=start, end=start + required, reason=reason)


def _empty(cause: str, **fields) -> list[Slot]:
    logger.info("availability_empty", cause=cause, **fields)
    return []


def compute_availability(
    db: Session,
    tenant_id: int,
    service_id: int,
    date_from: date | str,
    date_to: date | str,
    preferred_staff_ids: Iterable[int] | None = None,
    granularity_min: int | None = None,
) -> list[Slot]:
    """Bookable slots ordered by (start, staff_id).

    Any input that cannot be resolved yields an empty list; "no slots" is a
    valid answer here and input errors are reported by the request layer.
    """
    if granularity_min is None:
        granularity_min = settings.DEFAULT_GRANULARITY_MIN
    granularity = int(granularity_min)
    if granularity <= 0:
        return _empty("invalid_granularity", granularity_min=granularity)

    day_from = _parse_day(date_from)
    day_to = _parse_day(date_to)
    if day_from is None or day_to is None:
        return _empty("malformed_dates", date_from=str(date_from), date_to=str(date_to))
    if day_to < day_from:
        return _empty("reversed_range", date_from=day_from.isoformat(), date_to=day_to.isoformat())
    range_days = (day_to - day_from).days + 1
    if range_days > settings.AVAILABILITY_MAX_RANGE_DAYS:
        return _empty("range_too_long", days=range_days)

    parsed_tenant_id = _parse_id(tenant_id)
    parsed_service_id = _parse_id(service_id)
    preferred = _parse_staff_ids(preferred_staff_ids)
    if parsed_tenant_id is None or parsed_service_id is None:
        return _empty("malformed_ids")
    if preferred is not None and not preferred:
        return _empty("no_candidate_staff", tenant_id=parsed_tenant_id)

    tenant = db.get(Tenant, parsed_tenant_id)
    if tenant is None:
        return _empty("unknown_tenant", tenant_id=parsed_tenant_id)
    tz = _tenant_zone(tenant)
    if tz is None:
        return _empty("invalid_time_zone", tenant_id=tenant.id, time_zone=tenant.time_zone)

    service = db.execute(
        select(Service).where(Service.id == parsed_service_id, Service.tenant_id == tenant.id)
    ).scalar_one_or_none()
    if service is None:
        return _empty("unknown_service", tenant_id=tenant.id, service_id=parsed_service_id)
    required_min = service.required_minutes

    staff_ids = load_candidate_staff_ids(db, tenant.id, preferred)
    if not staff_ids:
        return _empty("no_candidate_staff", tenant_id=tenant.id)

    window = local_window(day_from, day_to, tz)
    shifts = load_shifts(db, tenant.id, staff_ids)
    time_off = load_time_off(db, tenant.id, staff_ids, window)
    booked = load_appointment_items(db, tenant.id, staff_ids, window)

    slots: list[Slot] = []
    for staff_id in staff_ids:
        staff_shifts = shifts.get(staff_id)
        if not staff_shifts:
            continue
        is_preferred = bool(preferred) and staff_id in preferred
        for day in _iter_days(day_from, day_to):
            free = free_intervals_for_day(
                day, staff_shifts, tz, time_off.get(staff_id, []), booked.get(staff_id, [])
            )
            for interval in free:
                slots.extend(
                    slots_for_interval(staff_id, interval, required_min, granularity, is_preferred)
                )

    slots.sort(key=lambda s: (s.start, s.staff_id))
    logger.info(
        "availability_computed",
        tenant_id=tenant.id,
        service_id=service.id,
        staff_count=len(staff_ids),
        days=range_days,
        slots=len(slots),
    )
    return slots
