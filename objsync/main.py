"""FastAPI application entry point for the objsync agent."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from objsync.api.backends import router as backends_router
from objsync.api.filters import router as filters_router
from objsync.api.health import VERSION
from objsync.api.health import router as health_router
from objsync.api.sync import router as sync_router
from objsync.api.tags import router as tags_router
from objsync.api.vfs import router as vfs_router
from objsync.config import Settings
from objsync.database import MetadataStore
from objsync.exceptions import InternalServerError, ObjSyncError
from objsync.migrations import run_migrations
from objsync.services.filter_cache import FilterResultCache
from objsync.services.sync_engine import SyncAgent, SyncEngine
from objsync.storage.registry import BackendRegistry, make_client_factory

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("s3transfer").setLevel(logging.WARNING)


def ensure_database_dir(database_url: str) -> None:
    """Create the parent directory of an embedded SQLite database."""
    if database_url.startswith("sqlite") and "///" in database_url:
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting objsync agent %s (client %s)", VERSION, settings.client_id)

    try:
        ensure_database_dir(settings.database_url)
        store = MetadataStore.from_settings(settings)
    except Exception as exc:
        logger.critical(
            "Failed to initialize metadata store: %s. Check DATABASE_URL and permissions.", exc
        )
        raise
    app.state.store = store

    try:
        applied = await run_migrations(store.engine)
    except Exception as exc:
        logger.critical("Failed to migrate metadata store schema: %s.", exc)
        raise
    if applied:
        logger.info("Applied migrations: %s", ", ".join(str(v) for v in applied))

    cache = FilterResultCache(enabled=settings.filter_cache_enabled)
    registry = BackendRegistry(
        store,
        settings.secret_key,
        client_factory=make_client_factory(settings),
        filter_namespace=settings.filter_namespace,
        cache=cache,
    )
    engine = SyncEngine(store, registry, settings, cache=cache)
    app.state.filter_cache = cache
    app.state.registry = registry
    app.state.sync_engine = engine

    interrupted = await engine.recover_interrupted()
    if interrupted:
        logger.info("Recovered %d interrupted sync configurations", len(interrupted))

    agent: SyncAgent | None = None
    if settings.agent_enabled:
        agent = SyncAgent(engine, store, settings)
        agent.start()
    app.state.sync_agent = agent

    yield

    if agent is not None:
        try:
            await agent.stop()
        except Exception as exc:
            logger.error("Error during sync agent shutdown: %s", exc, exc_info=True)

    try:
        await registry.close()
    except Exception as exc:
        logger.error("Error while closing storage clients: %s", exc, exc_info=True)

    try:
        await store.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("objsync agent stopped")


def _error_body(exc: ObjSyncError) -> dict[str, Any]:
    body: dict[str, Any] = {"detail": str(exc)}
    segment = getattr(exc, "segment", None)
    if segment is not None:
        body["segment"] = segment
    position = getattr(exc, "position", None)
    if position is not None:
        body["position"] = position
    return body


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="objsync",
        description="Unified namespace, tag filters and sync across object storage backends",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    trusted_hosts = settings.trusted_hosts or (
        ["localhost", "127.0.0.1", "::1", "test", "testserver"] if settings.debug else []
    )
    if trusted_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.include_router(health_router)
    app.include_router(backends_router)
    app.include_router(vfs_router)
    app.include_router(tags_router)
    app.include_router(filters_router)
    app.include_router(sync_router)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(ObjSyncError)
    async def objsync_error_handler(request: Request, exc: ObjSyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
            )
        else:
            logger.info(
                "%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc
            )
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(TimeoutError)
    async def timeout_error_handler(request: Request, exc: TimeoutError) -> JSONResponse:
        logger.warning("Timeout in %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=504,
            content={"detail": "Operation timed out"},
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error(
            "SQLAlchemyError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Metadata store temporarily unavailable"},
        )

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


def cli_entry() -> None:
    """Run the agent under uvicorn."""
    import uvicorn

    settings = Settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
    )
