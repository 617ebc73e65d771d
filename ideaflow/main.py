"""ideaflow entry point.

Wiring order:
  Settings -> Database -> IdeaStore -> ToolRouter -> EventBus -> Controller -> App -> Uvicorn

Components live for the Starlette lifespan so they share uvicorn's event
loop. The REST handlers find them on app.state.services.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.routing import Mount
from starlette.types import Receive, Scope, Send

from ideaflow.agent.cancellation import CancellationRegistry
from ideaflow.agent.controller import AgenticLoopController
from ideaflow.agent.prompts import PromptBuilder
from ideaflow.agent.session import SessionRegistry, SessionRunner
from ideaflow.api.mcp import create_mcp_server
from ideaflow.api.rest import Services, create_app
from ideaflow.config import Settings
from ideaflow.events import ANY_EVENT, Event, EventBus
from ideaflow.feedback import RuntimeErrorFeed
from ideaflow.storage.database import Database
from ideaflow.storage.repository import IdeaStore
from ideaflow.storage.snapshots import SnapshotService
from ideaflow.tools import build_router

logger = logging.getLogger(__name__)


async def create_services(settings: Settings, stack: AsyncExitStack) -> Services:
    """Start every component; teardown callbacks are pushed onto ``stack``."""
    database = Database(settings)
    await database.connect()
    stack.push_async_callback(database.disconnect)
    await database.create_schema()

    store = IdeaStore(database)
    error_feed = RuntimeErrorFeed(settings.runtime_error_log or None)

    research_http = await stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(settings.research_timeout, connect=10))
    )
    snapshots = SnapshotService(database)
    router = build_router(settings, store, research_http, snapshots)

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()

        async def audit(event: Event) -> None:
            await store.record_event(event.conversation_id, event.type, dict(event.data))

        bus.on(ANY_EVENT, audit)
        await bus.start()
        stack.push_async_callback(bus.stop)

    controller = AgenticLoopController(
        runner=SessionRunner(settings),
        router=router,
        sessions=SessionRegistry(store),
        cancellations=CancellationRegistry(),
        settings=settings,
        error_feed=error_feed,
        snapshots=snapshots,
        bus=bus,
        prompt_builder=PromptBuilder(store),
        tool_server=router.server_handle(settings) if settings.mcp_enabled else None,
    )

    return Services(
        controller=controller,
        store=store,
        error_feed=error_feed,
        snapshots=snapshots,
        database=database,
        router=router,
        bus=bus,
    )


def build_app(settings: Settings) -> Starlette:
    """REST routes plus, when enabled, the MCP tool server at /mcp."""
    mcp_managers = []

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            services = await create_services(settings, stack)
            app.state.services = services

            if settings.mcp_enabled:
                manager = create_mcp_server(services.router, name=settings.tool_server_name)
                await stack.enter_async_context(manager.run())
                mcp_managers.append(manager)
                stack.callback(mcp_managers.clear)

            logger.info(
                "ideaflow ready: model=%s max_tool_rounds=%d max_error_fix_rounds=%d",
                settings.model,
                settings.max_tool_rounds,
                settings.max_error_fix_rounds,
            )
            yield
            logger.info("Shutting down ideaflow...")

    app = create_app(lifespan=lifespan)

    if settings.mcp_enabled:

        async def mcp_endpoint(scope: Scope, receive: Receive, send: Send) -> None:
            await mcp_managers[0].handle_request(scope, receive, send)

        app.routes.append(Mount("/mcp", app=mcp_endpoint))
        logger.info("MCP tool server mounted at /mcp")

    return app


def main() -> None:
    """Console entry point."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting ideaflow (model %s)", settings.model)
    if settings.mcp_enabled:
        logger.info("Agent runtime reaches tools at %s", settings.tool_server_url)
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set, the agent runtime must be logged in on its own")
    if not settings.firecrawl_api_key:
        logger.warning("FIRECRAWL_API_KEY not set, research tools will be unavailable")
    if shutil.which(settings.agent_cli_path) is None:
        logger.warning("Agent runtime '%s' not found on PATH", settings.agent_cli_path)

    uvicorn.run(build_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
