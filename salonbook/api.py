from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .availability import Slot, compute_availability
from .booking import ClientRef, book_appointment_with_retry
from .db import SessionLocal, get_db
from .errors import (
    DuplicateRequest,
    InvalidInput,
    NotFound,
    OverlapConflict,
    SerializationConflict,
)
from .models import Service, Staff
from .schemas import (
    AppointmentCreate,
    AppointmentOut,
    AvailabilityQuery,
    ServiceOut,
    SlotOut,
    StaffOut,
)

router = APIRouter(prefix="/v1")


def _to_slot_out(slot: Slot) -> SlotOut:
    return SlotOut(
        staff_id=slot.staff_id,
        start_ts=slot.start,
        end_ts=slot.end,
        reason=slot.reason.value,
    )


def _parse_staff_csv(raw: Optional[str]) -> list[int]:
    out: list[int] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            out.append(int(part))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="preferred_staff must be a comma separated list of ids",
            )
    return out


def get_session_local(request: Request) -> sessionmaker:
    return getattr(request.app.state, "session_local", SessionLocal)


def get_tenant_id(
    x_tenant_key: Optional[str] = Header(default=None),
    x_bot_token: Optional[str] = Header(default=None),
    x_tenant_id: Optional[str] = Header(default=None),
) -> int:
    # credentials are verified upstream; only their presence is required here
    if not (x_tenant_key or "").strip() or not (x_bot_token or "").strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing credentials")
    try:
        return int((x_tenant_id or "").strip())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-Id must be an integer")


@router.get("/staff", response_model=List[StaffOut])
def list_staff(
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    rows = db.execute(
        select(Staff).where(Staff.tenant_id == tenant_id).order_by(Staff.id.asc())
    ).scalars()
    return [
        StaffOut(id=s.id, name=s.name, color=s.color, active=bool(s.active), skills=list(s.skills or []))
        for s in rows
    ]


@router.get("/services", response_model=List[ServiceOut])
def list_services(
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    rows = db.execute(
        select(Service).where(Service.tenant_id == tenant_id).order_by(Service.id.asc())
    ).scalars()
    return [
        ServiceOut(
            id=s.id,
            name=s.name,
            duration_min=s.duration_min,
            prep_min=s.prep_min,
            cleanup_min=s.cleanup_min,
            price=float(s.price or 0),
        )
        for s in rows
    ]


@router.get("/availability", response_model=List[SlotOut])
def get_availability(
    service_id: int = Query(..., gt=0),
    date_from: date = Query(...),
    date_to: date = Query(...),
    preferred_staff: Optional[str] = Query(default=None),
    granularity_min: Optional[int] = Query(default=None, ge=1, le=240),
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    slots = compute_availability(
        db,
        tenant_id=tenant_id,
        service_id=service_id,
        date_from=date_from,
        date_to=date_to,
        preferred_staff_ids=_parse_staff_csv(preferred_staff),
        granularity_min=granularity_min,
    )
    return [_to_slot_out(s) for s in slots]


@router.post("/availability", response_model=List[SlotOut])
def post_availability(
    payload: AvailabilityQuery,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    slots = compute_availability(
        db,
        tenant_id=tenant_id,
        service_id=payload.service_id,
        date_from=payload.date_range.from_,
        date_to=payload.date_range.to,
        preferred_staff_ids=payload.preferred_staff,
        granularity_min=payload.granularity_min,
    )
    if payload.limit:
        slots = slots[: payload.limit]
    return [_to_slot_out(s) for s in slots]


@router.post("/appointments", response_model=AppointmentOut)
def create_appointment(
    payload: AppointmentCreate,
    idempotency_key: Optional[str] = Header(default=None),
    session_local: sessionmaker = Depends(get_session_local),
    tenant_id: int = Depends(get_tenant_id),
):
    try:
        result = book_appointment_with_retry(
            session_local,
            tenant_id=tenant_id,
            client=ClientRef(id=payload.client.id, name=payload.client.name, phone=payload.client.phone),
            service_id=payload.service_id,
            staff_id=payload.staff_id,
            start=payload.start_ts,
            idempotency_token=idempotency_key,
            source=payload.source,
        )
    except DuplicateRequest:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"duplicate": True})
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except OverlapConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except SerializationConflict as exc:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "retryable": exc.retryable},
        )
    except InvalidInput as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return AppointmentOut(id=result.appointment_id, start_ts=result.start, end_ts=result.end)


@router.post("/appointments/{appointment_id}/cancel")
def cancel_appointment(appointment_id: int, tenant_id: int = Depends(get_tenant_id)):
    return JSONResponse(status_code=status.HTTP_501_NOT_IMPLEMENTED, content={"error": "not implemented"})


@router.post("/appointments/{appointment_id}/reschedule")
def reschedule_appointment(appointment_id: int, tenant_id: int = Depends(get_tenant_id)):
    return JSONResponse(status_code=status.HTTP_501_NOT_IMPLEMENTED, content={"error": "not implemented"})


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", "")), "type": str(err.get("type", ""))}
        for err in exc.errors()
    ]


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
