"""magma entry points.

API server:
  Settings -> Database -> migrations -> HistoryStore -> ModelClient
  -> RemoteToolClient -> ToolRouter -> AgentRunner -> App -> Uvicorn

Tool server (geo tools over HTTP and MCP) runs as a separate process via
tool_server_main().

Uses Starlette lifespan to manage component lifecycle on the same event
loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from magma.api.model_client import ModelClient
from magma.api.remove_feature import create_remove_feature_tool
from magma.api.runner import AgentRunner
from magma.api.tools import RemoteToolClient, ToolRouter
from magma.config import Settings
from magma.errors import ConfigurationError
from magma.storage.database import Database
from magma.storage.history import HistoryStore
from magma.storage.migrator import run_migrations

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. Database - connection pool, pending migrations applied
    2. HistoryStore - conversation persistence
    3. ModelClient - Anthropic Messages API
    4. ToolRouter - local remove_map_feature + remote tool service
    5. AgentRunner - the tool loop
    """
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)

    store = HistoryStore(database)

    model = ModelClient(settings)
    await model.start()

    # Tool service client (separate from ModelClient, no API auth headers)
    tool_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=settings.tool_timeout_read, write=10, pool=10),
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
    )
    router = ToolRouter(RemoteToolClient(settings.tool_server_url, tool_http))
    router.register(create_remove_feature_tool(store))

    runner = AgentRunner(model, router, settings, store=store)

    return {
        "database": database,
        "store": store,
        "model": model,
        "tool_http": tool_http,
        "router": router,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down magma...")

    tool_http = components.get("tool_http")
    if tool_http:
        await tool_http.aclose()

    model = components.get("model")
    if model:
        await model.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("magma shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the API app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        logger.info("magma API started on %s:%d", settings.host, settings.port)
        logger.info(
            "Loop: model=%s, max_tool_rounds=%d, tool service=%s",
            settings.model,
            settings.max_tool_rounds,
            settings.tool_server_url,
        )
        try:
            yield
        finally:
            await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from magma.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        store=_lazy_component(components, "store"),
        database=_lazy_component(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def main() -> None:
    """Entry point: parse settings, build app, run the API server."""
    settings = Settings()
    _configure_logging(settings)

    try:
        settings.require_credentials()
    except ConfigurationError as e:
        logger.error("%s; refusing to start", e)
        raise SystemExit(1) from e

    logger.info("Model: %s", settings.model)
    logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


def tool_server_main() -> None:
    """Entry point for the geospatial tool service."""
    settings = Settings()
    _configure_logging(settings)

    from magma.geo.server import build_tool_app

    logger.info("MCP: %s", "enabled" if settings.mcp_enabled else "disabled")
    app = build_tool_app(settings)

    uvicorn.run(
        app,
        host=settings.tool_server_host,
        port=settings.tool_server_port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
