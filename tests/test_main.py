"""Tests for component wiring in parley.main."""

import pytest

from parley.api.fallback import CLIFallback
from parley.api.runner import ToolLoopRunner
from parley.main import _ComponentRef, build_app, create_components, shutdown_components


class TestCreateComponents:
    @pytest.mark.asyncio
    async def test_api_mode(self, settings):
        components = await create_components(settings)
        try:
            assert isinstance(components["runner"], ToolLoopRunner)
            assert "bash" in components["dispatcher"].tool_names
            assert components["runner"]._fallback is None
        finally:
            await shutdown_components(components)

    @pytest.mark.asyncio
    async def test_cli_mode_without_credentials(self, settings):
        settings.anthropic_api_key = ""
        components = await create_components(settings)
        try:
            assert isinstance(components["runner"]._fallback, CLIFallback)
        finally:
            await shutdown_components(components)


class TestComponentRef:
    def test_unresolved_raises(self):
        ref = _ComponentRef({}, "runner")
        with pytest.raises(RuntimeError, match="not available before startup"):
            ref.stream_turn

    def test_resolves_after_update(self):
        components = {}
        ref = _ComponentRef(components, "database")
        components["database"] = type("Db", (), {"url": "sqlite://"})()
        assert ref.url == "sqlite://"

    def test_build_app_routes(self, settings):
        app = build_app(settings)
        paths = {route.path for route in app.routes}
        assert {"/chat/stream", "/health", "/sessions/{session_id}/fork"} <= paths


class TestLifespan:
    @pytest.mark.asyncio
    async def test_components_live_only_during_lifespan(self, settings):
        app = build_app(settings)

        async with app.router.lifespan_context(app):
            components = app.state.components
            assert isinstance(components["runner"], ToolLoopRunner)

        assert components == {}
