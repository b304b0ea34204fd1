"""REST API for parley.

Endpoints:
  POST   /chat/stream                - Run a turn, stream TurnEvents as SSE
  POST   /chat/{session_id}/cancel   - Cancel the session's in-flight turn
  DELETE /chat/{session_id}          - End a session
  GET    /sessions/{session_id}      - Session summary (messages, tokens, usage)
  POST   /sessions/{session_id}/fork - Fork a session at a message index
  GET    /health                     - Health check (DB connectivity)
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from parley.api.runner import ToolLoopRunner
from parley.api.state import ConversationState
from parley.config import Settings
from parley.storage.database import Database

logger = logging.getLogger(__name__)

_STREAM_FIELDS = ("branch_id", "kb_context", "project", "working_directory", "parent_session_id")


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _session_summary(state: ConversationState) -> dict[str, Any]:
    return {
        "session_id": state.session_id,
        "branch_id": state.branch_id,
        "message_count": len(state.messages),
        "system_blocks": len(state.system_blocks),
        "estimated_tokens": state.estimate_tokens(),
        "usage": state.token_usage.to_dict(),
    }


def create_app(
    runner: ToolLoopRunner,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat_stream(request: Request) -> Response:
        """POST /chat/stream - SSE streaming chat."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        if not message or not isinstance(message, str):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        session_id = body.get("session_id") or str(uuid4())
        options = {k: body.get(k) for k in _STREAM_FIELDS}

        async def event_generator():
            try:
                async for event in runner.stream_turn(session_id, message, **options):
                    yield f"data: {json.dumps(event.to_dict())}\n\n"
            except Exception as e:
                logger.exception("Stream error in session %s", session_id)
                error_data = json.dumps({"type": "error", "kind": "internal", "message": str(e)})
                yield f"data: {error_data}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Session-Id": session_id,
            },
        )

    async def cancel_chat(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/cancel - Cancel an in-flight turn."""
        session_id = request.path_params["session_id"]
        if not runner.cancel(session_id):
            return JSONResponse(
                {"status": "idle", "session_id": session_id}, status_code=409
            )
        return JSONResponse({"status": "cancelling", "session_id": session_id})

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - End a conversation (?delete=true drops the snapshot)."""
        session_id = request.path_params["session_id"]
        delete = request.query_params.get("delete", "").lower() in ("1", "true", "yes")
        await runner.end_session(session_id, delete=delete)
        return JSONResponse({"status": "ended", "session_id": session_id})

    async def get_session(request: Request) -> JSONResponse:
        """GET /sessions/{session_id} - Summary of a cached or persisted session."""
        session_id = request.path_params["session_id"]
        state = runner.get_state(session_id) or await ConversationState.restore(
            settings, runner.store, session_id
        )
        if state is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(_session_summary(state))

    async def fork_session(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/fork - Fork at a message index."""
        session_id = request.path_params["session_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        up_to_index = body.get("up_to_index")
        if not isinstance(up_to_index, int) or isinstance(up_to_index, bool):
            return JSONResponse({"error": "up_to_index must be an integer"}, status_code=400)

        try:
            child = await runner.fork_session(
                session_id,
                up_to_index,
                new_session_id=body.get("new_session_id"),
                new_branch_id=body.get("branch_id"),
            )
        except KeyError:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(_session_summary(child), status_code=201)

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)
        return JSONResponse({
            "status": "healthy",
            "mode": "api" if settings.has_credentials else "cli",
            "model": settings.model,
        })

    routes = [
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}/cancel", cancel_chat, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/sessions/{session_id}", get_session),
        Route("/sessions/{session_id}/fork", fork_session, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
