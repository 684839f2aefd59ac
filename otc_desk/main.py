# ruff: noqa: I001

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from otc_desk.api.router import api_router
from otc_desk.config import settings
from otc_desk.core.observability import (
    global_exception_handler,
    request_logging_middleware,
    uptime_seconds,
    utc_now_iso,
)
from otc_desk.database import POOL_CONFIG, db_url, init_models
from otc_desk.runtime import get_runtime, shutdown_runtime

api_prefix = settings.api_prefix

logger = logging.getLogger("otc_desk")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.enable_docs
    else None,
)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger

app.add_exception_handler(Exception, global_exception_handler)
app.middleware("http")(request_logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=api_prefix)


def _should_create_tables() -> bool:
    if settings.is_test:
        return False
    # Dev sqlite files have no migration history; create them on the fly.
    return bool(settings.create_tables_on_start) or db_url.startswith("sqlite")


@app.on_event("startup")
async def _startup():
    logger.info(
        "runtime_config",
        extra={
            "pid": os.getpid(),
            "environment": settings.environment,
            "db_pool": POOL_CONFIG,
            "sweep_enabled": settings.sweep_enabled,
            "sweep_interval_s": settings.sweep_interval_seconds,
        },
    )
    if _should_create_tables():
        await init_models()
        logger.info("tables_created")

    # No background timers under test; tests drive the sweep with run_once().
    if settings.is_test or not settings.sweep_enabled:
        return
    get_runtime().sweeper.start()


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_runtime()


@app.get("/", tags=["meta"])
def root():
    docs_path = (
        (f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
        if settings.enable_docs
        else None
    )
    return {"message": "OTC Desk API", "docs": docs_path}


@app.get("/healthz", tags=["meta"])
def healthz():
    """Bare liveness probe; ``/health`` under the API prefix carries the details."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": getattr(settings, "build_version", None),
    }
