import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from .config import settings
from .errors import (
    BookingError,
    DuplicateRequest,
    InvalidInput,
    NotFound,
    OverlapConflict,
    SerializationConflict,
)
from .intervals import to_utc_aware, to_utc_naive
from .models import (
    APPOINTMENT_STATUS_CONFIRMED,
    Appointment,
    AppointmentItem,
    BookingLock,
    Client,
    IdempotencyKey,
    Service,
    Staff,
    utc_now_naive,
)

logger = structlog.get_logger("salonbook.booking")

_SERIALIZATION_SQLSTATES = {"40001", "40P01"}


@dataclass(frozen=True)
class ClientRef:
    id: int | None = None
    name: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class BookingResult:
    appointment_id: int
    start: datetime
    end: datetime


def hash_idempotency_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def booking_lock_key(tenant_id: int, staff_id: int, start: datetime) -> str:
    return f"{tenant_id}:{staff_id}:{to_utc_aware(start).isoformat()}"


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _SERIALIZATION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return "database is locked" in message or "database table is locked" in message


def _insert_for(conn: Connection):
    dialect = conn.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Unsupported booking store dialect: {dialect}")


def claim_idempotency_key(conn: Connection, tenant_id: int, token: str) -> str:
    key_hash = hash_idempotency_token(token)
    stmt = (
        _insert_for(conn)(IdempotencyKey)
        .values(tenant_id=tenant_id, key_hash=key_hash, created_at=utc_now_naive())
        .on_conflict_do_nothing(index_elements=["tenant_id", "key_hash"])
    )
    result = conn.execute(stmt)
    if result.rowcount == 0:
        raise DuplicateRequest(key_hash)
    return key_hash


def acquire_booking_lock(conn: Connection, lock_key: str) -> None:
    """Exclusive lock released by commit or rollback of the current transaction."""
    if conn.dialect.name == "postgresql":
        conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"), {"lock_key": lock_key})
        return
    # SQLite has a single writer: the first write takes the database lock
    # and holds it until the transaction ends. The row itself is deleted
    # again by release_booking_lock before commit.
    now = utc_now_naive()
    stmt = (
        _insert_for(conn)(BookingLock)
        .values(lock_key=lock_key, acquired_at=now)
        .on_conflict_do_update(index_elements=["lock_key"], set_={"acquired_at": now})
    )
    conn.execute(stmt)


def release_booking_lock(conn: Connection, lock_key: str) -> None:
    if conn.dialect.name == "postgresql":
        return
    conn.execute(delete(BookingLock).where(BookingLock.lock_key == lock_key))


def find_conflicting_item(
    db: Session, tenant_id: int, staff_id: int, start: datetime, end: datetime
) -> AppointmentItem | None:
    return db.execute(
        select(AppointmentItem)
        .where(
            AppointmentItem.tenant_id == tenant_id,
            AppointmentItem.staff_id == staff_id,
            AppointmentItem.start_ts < to_utc_naive(end),
            AppointmentItem.end_ts > to_utc_naive(start),
        )
        .limit(1)
    ).scalar_one_or_none()


def resolve_client(db: Session, tenant_id: int, client: ClientRef) -> int:
    if client.id is not None:
        existing = db.execute(
            select(Client.id).where(Client.id == client.id, Client.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if existing is None:
            raise NotFound("Client not found")
        return int(existing)

    row = Client(
        tenant_id=tenant_id,
        name=(client.name or "").strip() or settings.DEFAULT_CLIENT_NAME,
        phone=(client.phone or "").strip() or None,
    )
    db.add(row)
    db.flush()
    return row.id


def _commit_booking(
    db: Session,
    tenant_id: int,
    client: ClientRef,
    service_id: int,
    staff_id: int,
    start: datetime,
    idempotency_token: str | None,
    source: str,
) -> BookingResult:
    conn = db.connection(execution_options={"isolation_level": "SERIALIZABLE"})

    if idempotency_token:
        claim_idempotency_key(conn, tenant_id, idempotency_token)

    lock_key = booking_lock_key(tenant_id, staff_id, start)
    acquire_booking_lock(conn, lock_key)

    service = db.execute(
        select(Service).where(Service.id == service_id, Service.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if service is None:
        raise NotFound("Service not found")
    staff = db.execute(
        select(Staff).where(Staff.id == staff_id, Staff.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if staff is None or not staff.active:
        raise NotFound("Staff not found")

    end = start + timedelta(minutes=service.required_minutes)
    conflict = find_conflicting_item(db, tenant_id, staff_id, start, end)
    if conflict is not None:
        raise OverlapConflict(f"Slot overlaps appointment #{conflict.appointment_id}")

    client_id = resolve_client(db, tenant_id, client)

    appointment = Appointment(
        tenant_id=tenant_id,
        client_id=client_id,
        start_ts=to_utc_naive(start),
        end_ts=to_utc_naive(end),
        status=APPOINTMENT_STATUS_CONFIRMED,
        source=source,
        created_at=utc_now_naive(),
    )
    db.add(appointment)
    db.flush()
    db.add(
        AppointmentItem(
            tenant_id=tenant_id,
            appointment_id=appointment.id,
            service_id=service.id,
            staff_id=staff.id,
            start_ts=to_utc_naive(start),
            end_ts=to_utc_naive(end),
        )
    )
    db.flush()
    release_booking_lock(conn, lock_key)
    return BookingResult(appointment_id=appointment.id, start=start, end=end)


def book_appointment(
    session_local: sessionmaker,
    *,
    tenant_id: int,
    client: ClientRef | None,
    service_id: int,
    staff_id: int,
    start: datetime,
    idempotency_token: str | None = None,
    source: str | None = None,
) -> BookingResult:
    """Reserve ``start`` for one staff member in a single serializable transaction.

    Raises DuplicateRequest when the idempotency token was already consumed,
    NotFound, OverlapConflict or SerializationConflict otherwise. Nothing is
    persisted unless the booking succeeds.
    """
    if staff_id is None:
        raise InvalidInput("staff_id is required")
    if start is None:
        raise InvalidInput("start is required")

    start_utc = to_utc_aware(start)
    log = logger.bind(
        tenant_id=tenant_id,
        staff_id=staff_id,
        service_id=service_id,
        start=start_utc.isoformat(),
    )

    with session_local() as db:
        try:
            result = _commit_booking(
                db,
                tenant_id=tenant_id,
                client=client or ClientRef(),
                service_id=service_id,
                staff_id=staff_id,
                start=start_utc,
                idempotency_token=(idempotency_token or "").strip() or None,
                source=(source or "").strip() or settings.DEFAULT_BOOKING_SOURCE,
            )
            db.commit()
        except DuplicateRequest:
            db.rollback()
            log.info("booking_duplicate")
            raise
        except OverlapConflict as exc:
            db.rollback()
            log.info("booking_overlap", detail=str(exc))
            raise
        except BookingError as exc:
            db.rollback()
            log.info("booking_rejected", error=type(exc).__name__, detail=str(exc))
            raise
        except DBAPIError as exc:
            db.rollback()
            if is_serialization_failure(exc):
                log.warning("booking_serialization_conflict", detail=str(exc.orig))
                raise SerializationConflict("Concurrent booking conflict, retry the request") from exc
            raise
        except Exception:
            db.rollback()
            raise

    log.info("booking_committed", appointment_id=result.appointment_id)
    return result


def book_appointment_with_retry(
    session_local: sessionmaker, max_attempts: int | None = None, **booking
) -> BookingResult:
    """Re-run the whole attempt on SerializationConflict.

    A rolled-back attempt never keeps its idempotency marker, so the same
    token can be reused across attempts.
    """
    attempts = max(1, int(max_attempts or settings.BOOKING_MAX_ATTEMPTS))
    for attempt in range(1, attempts + 1):
        try:
            return book_appointment(session_local, **booking)
        except SerializationConflict:
            if attempt >= attempts:
                raise
            logger.warning("booking_retry", attempt=attempt, max_attempts=attempts)
    raise SerializationConflict("Booking retries exhausted")
