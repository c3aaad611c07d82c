"""Geospatial tool service.

Endpoints:
  POST /tools/list   - Tool catalog {tools: [{name, description, inputSchema}]}
  POST /tools/call   - {name, arguments} -> {content: [{type: "text", text}]}
  GET  /health       - Liveness

The same tools are exposed over MCP (mcp library's Server + Streamable
HTTP transport) mounted at /mcp.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from mcp.server import Server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from mcp.types import TextContent, Tool
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from magma.api.tools import ToolRouter
from magma.config import Settings
from magma.errors import UnknownToolError
from magma.geo.tools import create_geo_tools

logger = logging.getLogger(__name__)

SERVICE_NAME = "geospatial-server"


def build_geo_router(settings: Settings, http_client: httpx.AsyncClient) -> ToolRouter:
    """Router holding every geo tool, with no remote fallback."""
    router = ToolRouter()
    for tool in create_geo_tools(settings.google_maps_api_key, http_client):
        router.register(tool)
    return router


def create_mcp_server(router: ToolRouter) -> StreamableHTTPSessionManager:
    """Create the MCP server over the geo tools.

    Returns StreamableHTTPSessionManager to be mounted on Starlette; its
    run() context must be active while requests are served.
    """
    server = Server(SERVICE_NAME)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=spec.name, description=spec.description, inputSchema=spec.input_schema)
            for spec in await router.list_tools()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        logger.info("[MCP] Tool called: %s", name)
        try:
            text = await router.call_tool(name, arguments or {})
        except Exception as e:
            logger.error("MCP tool %s error: %s", name, e)
            return [TextContent(type="text", text=f"Error: {e}")]
        return [TextContent(type="text", text=text)]

    return StreamableHTTPSessionManager(server)


def create_tool_app(
    router: ToolRouter,
    mcp_manager: StreamableHTTPSessionManager | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the tool service ASGI app."""

    async def tools_list(request: Request) -> JSONResponse:
        """POST /tools/list - Tool catalog."""
        try:
            specs = await router.list_tools()
        except Exception as e:
            logger.error("List tools error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({
            "tools": [
                {"name": s.name, "description": s.description, "inputSchema": s.input_schema}
                for s in specs
            ]
        })

    async def tools_call(request: Request) -> JSONResponse:
        """POST /tools/call - Execute one tool."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        name = body.get("name") if isinstance(body, dict) else None
        if not name or not isinstance(name, str):
            return JSONResponse({"error": "Missing required field: name"}, status_code=400)
        arguments = body.get("arguments") or {}
        if not isinstance(arguments, dict):
            return JSONResponse({"error": "arguments must be an object"}, status_code=400)

        logger.info("[HTTP] Tool called: %s", name)
        try:
            text = await router.call_tool(name, arguments)
        except UnknownToolError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except Exception as e:
            logger.error("Tool %s error: %s", name, e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({"content": [{"type": "text", "text": text}]})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "ok", "service": SERVICE_NAME})

    routes: list[Any] = [
        Route("/tools/list", tools_list, methods=["POST"]),
        Route("/tools/call", tools_call, methods=["POST"]),
        Route("/health", health),
    ]
    if mcp_manager is not None:
        routes.append(Mount("/mcp", app=mcp_manager.handle_request))

    kwargs: dict[str, Any] = {
        "routes": routes,
        "middleware": [Middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])],
    }
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)


def build_tool_app(settings: Settings) -> Starlette:
    """Build the tool service with its geocoding client and optional MCP mount."""
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=settings.tool_timeout_read, write=10, pool=10),
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
    )
    router = build_geo_router(settings, http_client)
    mcp_manager = create_mcp_server(router) if settings.mcp_enabled else None

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info("Tool service started with %d tools", len(router.local_names))
        if not settings.google_maps_api_key:
            logger.warning("GOOGLE_MAPS_API_KEY not set, geocode_address will be unavailable")
        try:
            if mcp_manager is not None:
                async with mcp_manager.run():
                    logger.info("MCP server mounted at /mcp")
                    yield
            else:
                yield
        finally:
            await http_client.aclose()
            logger.info("Tool service shutdown complete.")

    return create_tool_app(router, mcp_manager=mcp_manager, lifespan=lifespan)
