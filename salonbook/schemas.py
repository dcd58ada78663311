from datetime import date, datetime, timezone

from pydantic import BaseModel, Field, validator


class DateRange(BaseModel):
    from_: date = Field(alias="from")
    to: date


class AvailabilityQuery(BaseModel):
    service_id: int = Field(gt=0)
    date_range: DateRange
    preferred_staff: list[int] | None = None
    granularity_min: int | None = Field(default=None, ge=1, le=240)
    limit: int | None = Field(default=None, ge=1, le=1000)


class SlotOut(BaseModel):
    staff_id: int
    start_ts: datetime
    end_ts: datetime
    reason: str


class ClientIn(BaseModel):
    id: int | None = Field(default=None, gt=0)
    name: str | None = Field(default=None, max_length=120)
    phone: str | None = Field(default=None, max_length=40)


class AppointmentCreate(BaseModel):
    client: ClientIn = Field(default_factory=ClientIn)
    service_id: int = Field(gt=0)
    staff_id: int = Field(gt=0)
    start_ts: datetime
    source: str | None = Field(default=None, max_length=40)

    @validator("start_ts")
    @classmethod
    def normalize_start_ts(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AppointmentOut(BaseModel):
    id: int
    start_ts: datetime
    end_ts: datetime


class StaffOut(BaseModel):
    id: int
    name: str
    color: str | None = None
    active: bool
    skills: list[str] = []


class ServiceOut(BaseModel):
    id: int
    name: str
    duration_min: int
    prep_min: int
    cleanup_min: int
    price: float
