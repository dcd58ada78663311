from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args = {
            "check_same_thread": False,
            "timeout": float(settings.SQLITE_BUSY_TIMEOUT_SECONDS),
        }

    built = create_engine(database_url, echo=False, connect_args=connect_args)

    # WAL lets availability reads run while a booking holds the write lock
    if is_sqlite:
        @event.listens_for(built, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return built


def build_session_local(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_local(engine)


class Base(DeclarativeBase):
    pass


def create_schema(bind: Engine) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
