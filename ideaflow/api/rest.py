"""REST API for ideaflow.

Endpoints:
  POST /ideas                      - Create an idea
  GET  /ideas/{id}                 - Idea detail (synthesis, entry file, session)
  POST /ideas/{id}/exchange        - Run an exchange, streamed as SSE
  POST /ideas/{id}/abort           - Abort the active exchange
  POST /ideas/{id}/errors          - Report a live preview runtime error
  POST /ideas/{id}/notes           - Save an approved note proposal
  GET  /ideas/{id}/snapshots       - List snapshots, newest first
  GET  /health                     - Health check (DB connectivity)

Handlers read their collaborators from ``request.app.state.services``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from ideaflow.agent.errors import AgentProcessError, UpstreamAPIError

if TYPE_CHECKING:
    from ideaflow.agent.controller import AgenticLoopController
    from ideaflow.events import EventBus
    from ideaflow.feedback import RuntimeErrorFeed
    from ideaflow.storage.database import Database
    from ideaflow.storage.repository import IdeaStore
    from ideaflow.storage.snapshots import SnapshotService
    from ideaflow.tools.router import ToolRouter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    controller: AgenticLoopController
    store: IdeaStore
    error_feed: RuntimeErrorFeed
    snapshots: SnapshotService
    database: Database
    router: ToolRouter | None = None
    bus: EventBus | None = None


class BadRequest(Exception):
    pass


def _services(request: Request) -> Services:
    return request.app.state.services


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _json_body(request: Request, *required: str) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise BadRequest("Invalid JSON body") from e
    if not isinstance(body, dict):
        raise BadRequest("Invalid JSON body")
    for name in required:
        if not body.get(name):
            raise BadRequest(f"Missing required field: {name}")
    return body


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Ideas
# ---------------------------------------------------------------------------


async def create_idea(request: Request) -> JSONResponse:
    body = await _json_body(request, "title")
    idea = await _services(request).store.create_idea(body["title"], synthesis=body.get("synthesis"))
    return JSONResponse({"id": idea.id, "title": idea.title}, status_code=201)


async def get_idea(request: Request) -> JSONResponse:
    idea = await _services(request).store.get_idea(request.path_params["id"])
    if idea is None:
        return _error("Idea not found", 404)
    return JSONResponse({
        "id": idea.id,
        "title": idea.title,
        "status": idea.status,
        "synthesis": idea.synthesis,
        "synthesis_version": idea.synthesis_version,
        "entry_file": idea.entry_file,
        "session_id": idea.agent_session_id,
    })


# ---------------------------------------------------------------------------
# Exchanges
# ---------------------------------------------------------------------------


async def exchange(request: Request) -> Response:
    """Stream one exchange as server-sent events.

    A failure after the stream has started arrives as a final
    ``{"type": "error"}`` event, since the status line is already sent.
    """
    services = _services(request)
    idea_id = request.path_params["id"]
    body = await _json_body(request, "message")
    history = body.get("history")
    if history is not None and not isinstance(history, list):
        raise BadRequest("history must be a list of messages")
    if await services.store.get_idea(idea_id) is None:
        return _error("Idea not found", 404)

    async def stream():
        try:
            async for item in services.controller.start_exchange(idea_id, body["message"], history=history):
                yield _sse(item.to_dict())
        except (UpstreamAPIError, AgentProcessError) as e:
            yield _sse({"type": "error", "message": str(e)})
        except Exception as e:
            logger.exception("Exchange stream error for %s", idea_id)
            yield _sse({"type": "error", "message": str(e)})

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def abort(request: Request) -> JSONResponse:
    idea_id = request.path_params["id"]
    aborted = _services(request).controller.abort_exchange(idea_id)
    return JSONResponse({"aborted": aborted, "idea_id": idea_id})


async def report_error(request: Request) -> JSONResponse:
    body = await _json_body(request, "message")
    _services(request).error_feed.report(
        request.path_params["id"],
        body["message"],
        source=body.get("source"),
        line=body.get("line"),
        column=body.get("column"),
        stack=body.get("stack"),
    )
    return JSONResponse({"status": "recorded"}, status_code=202)


async def save_note(request: Request) -> JSONResponse:
    """Persist a note proposal the user approved."""
    services = _services(request)
    idea_id = request.path_params["id"]
    body = await _json_body(request, "content")
    if await services.store.get_idea(idea_id) is None:
        return _error("Idea not found", 404)
    note = await services.store.add_note(
        idea_id, body["content"], title=body.get("title"), category=body.get("category")
    )
    return JSONResponse({"id": note.id, "title": note.title, "category": note.category}, status_code=201)


async def list_snapshots(request: Request) -> JSONResponse:
    items = await _services(request).snapshots.list_snapshots(request.path_params["id"])
    return JSONResponse({
        "snapshots": [
            {
                "id": s.id,
                "version": s.version,
                "tools_used": s.tools_used,
                "file_count": len(s.files or []),
                "node_count": len(s.nodes or []),
                "created_at": s.created_at.isoformat() if s.created_at else None,
            }
            for s in items
        ]
    })


async def health(request: Request) -> JSONResponse:
    try:
        async with _services(request).database.session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)
    return JSONResponse({"status": "healthy"})


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    return _error(str(exc), 400)


def create_app(services: Services | None = None, lifespan: Any | None = None) -> Starlette:
    """Build the Starlette app.

    Pass ``services`` directly, or leave it None and set
    ``app.state.services`` from the lifespan.
    """
    app = Starlette(
        routes=[
            Route("/ideas", create_idea, methods=["POST"]),
            Route("/ideas/{id}", get_idea),
            Route("/ideas/{id}/exchange", exchange, methods=["POST"]),
            Route("/ideas/{id}/abort", abort, methods=["POST"]),
            Route("/ideas/{id}/errors", report_error, methods=["POST"]),
            Route("/ideas/{id}/notes", save_note, methods=["POST"]),
            Route("/ideas/{id}/snapshots", list_snapshots),
            Route("/health", health),
        ],
        exception_handlers={BadRequest: _bad_request},
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services
    return app
