from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from .api.http import router as http_router
from .common.dotenv import load_dotenv_auto
from .common.errors import ApiError, TopologyError
from .common.log_util import setup_logging
from .common.trace import new_trace_id
from .core.config import ConfigManager, ServiceConfig
from .core.registry import PUBLISHER_STATUS, CapabilityRegistry
from .events.publisher import EventPublisher, PublisherState
from .models import ErrorEnvelope
from .storage.db import SqliteStore

logger = logging.getLogger(__name__)


def _resolve_db_path(cfg: ServiceConfig) -> str:
    if cfg.db_path == ":memory:":
        return cfg.db_path
    repo_root = Path(__file__).resolve().parent.parent  # <repo>
    db_path = Path(cfg.db_path)
    if not db_path.is_absolute():
        db_path = repo_root / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return str(db_path)


def _watch_publisher(publisher: EventPublisher, registry: CapabilityRegistry) -> EventPublisher:
    """Mirror publisher state transitions into the "events" capability."""
    registry.set(name="events", status="down", enabled=True, mode="rabbitmq", detail="not started")

    def _on_state_change(state: PublisherState, detail: Optional[str]) -> None:
        registry.update_status("events", PUBLISHER_STATUS[state.value], detail)

    publisher.on_state_change = _on_state_change
    return publisher


def _build_publisher(cfg: ServiceConfig, registry: CapabilityRegistry) -> Optional[EventPublisher]:
    if not cfg.events.enabled:
        registry.set(name="events", status="down", enabled=False, mode="disabled")
        return None
    publisher = EventPublisher(
        cfg.events.broker,
        publish_timeout_s=cfg.events.publish_timeout_s,
        connect_timeout_s=cfg.events.connect_timeout_s,
    )
    return _watch_publisher(publisher, registry)


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    store: Optional[SqliteStore] = None,
    publisher: Optional[EventPublisher] = None,
) -> FastAPI:
    """Build the service.

    `store` and `publisher` may be injected (tests); otherwise they are built
    from configuration. An injected publisher is started and closed with the
    app exactly like a configured one.
    """
    app = FastAPI(title="Purchase Service")

    # .env is best-effort; variables already set in the process win
    load_dotenv_auto(override=False, allow_prefixes={"PURCHASE_SERVICE_", "RABBITMQ_"})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    cfg = config or ConfigManager().load()
    setup_logging(cfg.log_level)
    app.state.config = cfg

    app.state.registry = CapabilityRegistry()
    app.state.store = store or SqliteStore(db_path=_resolve_db_path(cfg))
    app.state.registry.set(name="storage", status="up", enabled=True, mode="sqlite")

    if publisher is not None:
        app.state.publisher = _watch_publisher(publisher, app.state.registry)
    else:
        app.state.publisher = _build_publisher(cfg, app.state.registry)

    @app.on_event("startup")
    async def _startup() -> None:
        publisher = app.state.publisher
        if publisher is None:
            logger.info("Event publishing disabled")
            return
        # ConfigurationError always aborts startup
        try:
            await publisher.start()
        except TopologyError as e:
            if cfg.events.startup_policy == "fail":
                raise
            logger.warning("Starting without a usable broker (publisher degraded): %s", e)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        try:
            if app.state.publisher is not None:
                await app.state.publisher.close()
        finally:
            app.state.store.close()

    @app.exception_handler(ApiError)
    async def api_error_handler(_, exc: ApiError):
        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorEnvelope(
                code=exc.code,
                message=exc.message,
                trace_id=new_trace_id(),
                data=exc.data,
            ).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=ErrorEnvelope(
                code="BAD_REQUEST",
                message="Request validation failed",
                trace_id=new_trace_id(),
                data={"errors": jsonable_encoder(exc.errors())},
            ).model_dump(mode="json"),
        )

    app.include_router(http_router, prefix="/api")
    return app
