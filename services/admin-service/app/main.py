"""FastAPI application wiring for the admin governance service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import ApiError, api_error_handler, router as admin_router, validation_error_handler
from .config import Settings, get_settings
from .domain.service import AdminGovernanceService
from .memory_repository import InMemoryAccountRepository
from .repository import AccountRepository

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

STORE_BACKENDS = ("memory", "postgres")


def _build_service(app: FastAPI, config: Settings) -> AdminGovernanceService:
    """Instantiate the configured account store backend and the governance service on top of it."""
    if config.store_backend not in STORE_BACKENDS:
        logger.error(
            "unknown STORE_BACKEND %r; expected one of %s", config.store_backend, ", ".join(STORE_BACKENDS)
        )
        raise ValueError(f"unknown STORE_BACKEND: {config.store_backend!r}")
    if config.store_backend == "memory":
        logger.warning("account store using in-memory backend; state is lost on restart")
        return AdminGovernanceService(InMemoryAccountRepository())

    pool = ConnectionPool(
        config.database_url,
        min_size=config.pool_min_size,
        max_size=config.pool_max_size,
        timeout=config.pool_timeout_seconds,
        open=False,
    )
    pool.open()
    app.state.pool = pool
    logger.info("account store using postgres backend")
    return AdminGovernanceService(AccountRepository(pool))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (store backend, services) for the app lifecycle."""
    app.state.pool = None
    app.state.governance_service = _build_service(app, settings)
    try:
        yield
    finally:
        if app.state.pool is not None:
            app.state.pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
app.add_exception_handler(ApiError, api_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(admin_router)


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scrapes."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
