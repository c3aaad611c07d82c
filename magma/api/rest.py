"""REST API for the magma backend.

Endpoints:
  POST /conversations                 - Create a conversation
  GET  /conversations                 - List conversations, most recent first
  GET  /conversations/{id}            - Conversation with messages and features
  POST /conversations/{id}/messages   - Run the tool loop, streamed as SSE
  GET  /health                        - Health check (DB connectivity)

The message stream carries one named event per loop transition
(user_prompt, llm_response, tool_call, tool_result, tool_error,
geo_feature, remove_geo_feature) and ends with exactly one `done` or
`error` frame.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import UUID

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from magma.api.runner import AgentRunner
from magma.api.schemas import LoopResult
from magma.config import Settings
from magma.events import QueueSink, format_sse
from magma.storage.database import Database
from magma.storage.history import HistoryStore

logger = logging.getLogger(__name__)


def _valid_uuid(value: str) -> bool:
    try:
        UUID(value)
    except ValueError:
        return False
    return True


def done_payload(result: LoopResult, include_history: bool) -> dict[str, Any]:
    """Body of the terminal `done` frame."""
    payload: dict[str, Any] = {
        "final_response": result.final_text,
        "geo_features": [f.to_dict() for f in result.features],
    }
    if include_history:
        payload["llm_history"] = [entry.to_dict() for entry in result.history]
    return payload


def create_app(
    runner: AgentRunner,
    store: HistoryStore,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    # Runs keep going after a client disconnects; hold references until they finish
    background_runs: set[asyncio.Task] = set()

    async def create_conversation(request: Request) -> JSONResponse:
        """POST /conversations - Create a conversation."""
        try:
            body = await request.json() if await request.body() else {}
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "JSON body must be an object"}, status_code=400)

        try:
            conversation = await store.create_conversation(
                title=body.get("title"),
                metadata=body.get("metadata"),
            )
            return JSONResponse(conversation, status_code=201)
        except Exception as e:
            logger.error("Create conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations?limit=50&offset=0 - Recent conversations."""
        try:
            limit = int(request.query_params.get("limit", "50"))
            offset = int(request.query_params.get("offset", "0"))
        except ValueError:
            return JSONResponse({"error": "limit and offset must be integers"}, status_code=400)

        try:
            conversations = await store.list_conversations(limit=limit, offset=offset)
            return JSONResponse({"conversations": conversations})
        except Exception as e:
            logger.error("List conversations error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{id} - Conversation detail."""
        conversation_id = request.path_params["id"]
        if not _valid_uuid(conversation_id):
            return JSONResponse({"error": "Invalid conversation ID"}, status_code=400)

        try:
            conversation = await store.get_conversation(conversation_id)
            if conversation is None:
                return JSONResponse({"error": "Conversation not found"}, status_code=404)
            messages = await store.get_conversation_messages(conversation_id)
            return JSONResponse({**conversation, "messages": messages})
        except Exception as e:
            logger.error("Get conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def post_message(request: Request) -> StreamingResponse:
        """POST /conversations/{id}/messages - SSE stream of one loop run."""
        conversation_id = request.path_params["id"]
        if not _valid_uuid(conversation_id):
            return JSONResponse({"error": "Invalid conversation ID"}, status_code=400)

        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message") if isinstance(body, dict) else None
        if not message or not isinstance(message, str):
            return JSONResponse({"error": "Message is required and must be a string"}, status_code=400)

        sink = QueueSink()
        task = asyncio.create_task(runner.run_conversation(conversation_id, message, sink))
        background_runs.add(task)
        task.add_done_callback(background_runs.discard)
        task.add_done_callback(lambda _: sink.close())

        async def event_generator() -> AsyncIterator[str]:
            while True:
                event = await sink.queue.get()
                if event is None:
                    break
                yield format_sse(event.kind, event.data)

            if task.cancelled():
                logger.warning("Run for conversation %s was cancelled", conversation_id)
                yield format_sse("error", {"error": "Run cancelled"})
                return
            try:
                result = task.result()
            except Exception as e:
                logger.error("Stream error for conversation %s: %s", conversation_id, e)
                yield format_sse("error", {"error": str(e)})
                return
            yield format_sse("done", done_payload(result, settings.include_history_in_done))

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "service": "api-server"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/conversations", create_conversation, methods=["POST"]),
        Route("/conversations", list_conversations, methods=["GET"]),
        Route("/conversations/{id}", get_conversation, methods=["GET"]),
        Route("/conversations/{id}/messages", post_message, methods=["POST"]),
        Route("/health", health),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    kwargs: dict[str, Any] = {"routes": routes, "middleware": middleware}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
