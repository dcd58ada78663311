import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import register_error_handlers, router
from .config import settings
from .db import SessionLocal, create_schema, engine
from .logging_config import setup_logging
from .observability import request_tracing_middleware

setup_logging()

if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    create_schema(engine)

app = FastAPI(
    title="SalonBook",
    description="Availability and booking core for multi-tenant service businesses",
    version="0.1.0",
)
app.state.session_local = SessionLocal
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=settings.CORS_ALLOW_ORIGIN_REGEX or None,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Tenant-Key", "X-Bot-Token", "X-Tenant-Id", "Idempotency-Key"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def app_request_tracing_middleware(request: Request, call_next):
    return await request_tracing_middleware(request, call_next)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": {"db": "error"}})
    return {"status": "ready", "checks": {"db": "ok"}}


app.include_router(router)


def run() -> None:
    uvicorn.run("salonbook.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
