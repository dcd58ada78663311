import os
import tempfile
from datetime import date, time
from types import SimpleNamespace

# The process-wide engine in salonbook.db is built at import time; keep it
# away from the working directory.
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(
    tempfile.mkdtemp(prefix="salonbook-tests-"), "runtime.db"
)

import pytest  # noqa: E402

from salonbook.db import build_engine, build_session_local, create_schema  # noqa: E402
from salonbook.models import Service, Shift, Staff, Tenant  # noqa: E402

# 2026-11-02 is a Monday; shift weekday numbering is 0 = Sunday
MONDAY = date(2026, 11, 2)
MONDAY_WEEKDAY = 1


@pytest.fixture
def session_local(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test_salonbook.db'}")
    create_schema(engine)
    yield build_session_local(engine)
    engine.dispose()


def seed_salon(session_local, time_zone: str = "UTC", shift=(time(9, 0), time(17, 0))):
    """One tenant, one active stylist working Mondays, one 60 minute service."""
    with session_local() as db:
        tenant = Tenant(slug="riverside", name="Riverside Cuts", time_zone=time_zone)
        db.add(tenant)
        db.flush()
        staff = Staff(tenant_id=tenant.id, name="Magda", active=True, skills=["cut", "color"])
        service = Service(
            tenant_id=tenant.id,
            name="Cut",
            duration_min=40,
            prep_min=10,
            cleanup_min=10,
            price=120,
        )
        db.add_all([staff, service])
        db.flush()
        db.add(
            Shift(
                tenant_id=tenant.id,
                staff_id=staff.id,
                weekday=MONDAY_WEEKDAY,
                start_time=shift[0],
                end_time=shift[1],
            )
        )
        db.commit()
        return SimpleNamespace(tenant_id=tenant.id, staff_id=staff.id, service_id=service.id)


def add_staff(session_local, tenant_id: int, name: str, active: bool = True, shifts=()):
    with session_local() as db:
        staff = Staff(tenant_id=tenant_id, name=name, active=active, skills=[])
        db.add(staff)
        db.flush()
        for weekday, start, end in shifts:
            db.add(Shift(tenant_id=tenant_id, staff_id=staff.id, weekday=weekday, start_time=start, end_time=end))
        db.commit()
        return staff.id


@pytest.fixture
def salon(session_local):
    return seed_salon(session_local)
