from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI

from attachsync.common.exceptions import register_exception_handlers
from attachsync.common.responses import ApiResponse
from attachsync.config import get_settings
from attachsync.database import engine
from attachsync.init_db import init_db
from attachsync.scheduler import setup_scheduler, shutdown_scheduler
from attachsync.upload.router import router as upload_router
from attachsync.upload.worker import build_controller

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    init_db(engine)
    controller = build_controller(settings)
    app.state.controller = controller
    setup_scheduler(controller)
    yield
    shutdown_scheduler()
    controller.close()


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
)

register_exception_handlers(app, debug=settings.debug)


@app.middleware("http")
async def request_logging_middleware(request, call_next):
    logger = logging.getLogger("attachsync.request")
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.exception(
            "request_failed request_id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (time.perf_counter() - start) * 1000.0
    response.headers["x-request-id"] = request_id
    log_fn = logger.info
    if response.status_code >= 500:
        log_fn = logger.error
    elif response.status_code >= 400:
        log_fn = logger.warning
    log_fn(
        "request_completed request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


app.include_router(upload_router)


@app.get("/health", response_model=ApiResponse)
def health() -> ApiResponse:
    controller = getattr(app.state, "controller", None)
    uploading = controller is not None and controller.is_running
    return ApiResponse.ok({"status": "ok", "uploading": uploading})


def run() -> None:
    import uvicorn

    uvicorn.run("attachsync.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
