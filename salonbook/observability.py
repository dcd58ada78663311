import time
import uuid

import structlog
from fastapi import Request
from starlette.responses import JSONResponse

logger = structlog.get_logger("salonbook.http")


async def request_tracing_middleware(request: Request, call_next):
    request_id = (request.headers.get("X-Request-ID") or "").strip() or str(uuid.uuid4())
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip() or None

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        tenant_id=tenant_id,
        path=request.url.path,
        method=request.method,
        app="salonbook",
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        logger.error(
            "http_request_failed",
            error=str(exc),
            duration_ms=duration_ms,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
    logger.info(
        "http_request",
        status=response.status_code,
        duration_ms=duration_ms,
    )
    response.headers["X-Request-ID"] = request_id
    return response
