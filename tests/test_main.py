"""Tests for application wiring in ideaflow.main."""

from contextlib import AsyncExitStack

import pytest
from httpx import ASGITransport, AsyncClient

from ideaflow.agent.controller import AgenticLoopController
from ideaflow.events import EXCHANGE_STARTED, EventBus
from ideaflow.main import build_app, create_services
from tests.conftest import make_settings


class TestServices:
    @pytest.mark.asyncio
    async def test_create_services(self):
        async with AsyncExitStack() as stack:
            services = await create_services(make_settings(), stack)
            assert isinstance(services.controller, AgenticLoopController)
            assert isinstance(services.bus, EventBus)
            assert "propose_note" in services.router.tool_names

    @pytest.mark.asyncio
    async def test_bus_events_audited(self):
        async with AsyncExitStack() as stack:
            services = await create_services(make_settings(), stack)
            idea = await services.store.create_idea("Audit")
            await services.bus.publish(EXCHANGE_STARTED, idea.id, message_length=4)
            # stop delivers everything still queued
            await services.bus.stop()

            (event,) = await services.store.list_events(idea.id)
            assert event.event_type == EXCHANGE_STARTED
            assert event.data == {"message_length": 4}

    @pytest.mark.asyncio
    async def test_bus_disabled(self):
        async with AsyncExitStack() as stack:
            services = await create_services(make_settings(event_bus_enabled=False), stack)
            assert services.bus is None


class TestApp:
    @pytest.mark.asyncio
    async def test_lifespan_serves_rest(self):
        app = build_app(make_settings())
        async with app.router.lifespan_context(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                health = await client.get("/health")
                created = await client.post("/ideas", json={"title": "Fish market app"})

        assert health.json() == {"status": "healthy"}
        assert created.status_code == 201

    def test_mcp_mount(self):
        mounted = [getattr(r, "path", None) for r in build_app(make_settings()).routes]
        assert "/mcp" in mounted

    def test_mcp_disabled(self):
        mounted = [getattr(r, "path", None) for r in build_app(make_settings(mcp_enabled=False)).routes]
        assert "/mcp" not in mounted
