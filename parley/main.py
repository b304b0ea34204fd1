"""Run parley as an HTTP service.

Startup wires, in order: database, snapshot store, tool dispatcher,
Anthropic client, then the tool-loop runner (with the CLI fallback when
no credential is configured).  The wiring happens inside the Starlette
lifespan so the httpx client and the database engine are bound to the
loop uvicorn serves on.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from parley.api.builtin_tools import register_builtin_tools
from parley.api.client import AnthropicClient
from parley.api.fallback import CLIFallback
from parley.api.runner import ToolLoopRunner
from parley.api.tools import ToolDispatcher
from parley.config import Settings
from parley.storage.database import Database
from parley.storage.snapshots import SqlSnapshotStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Connect storage, open the HTTP client and build the runner."""
    database = Database(settings)
    await database.connect()
    store = SqlSnapshotStore(database)

    dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher, settings.workspace_dir)

    client = AnthropicClient(settings)
    await client.start()

    fallback = None if settings.has_credentials else CLIFallback(settings)
    runner = ToolLoopRunner(settings, client, dispatcher, store, fallback=fallback)

    return {
        "database": database,
        "store": store,
        "dispatcher": dispatcher,
        "client": client,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Close the HTTP client first, then the database engine."""
    logger.info("Stopping parley")

    client = components.get("client")
    if client:
        await client.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("parley stopped")


class _ComponentRef:
    """Stands in for a component that the lifespan has not built yet.

    Attribute lookups go to ``components[key]`` at call time.
    """

    def __init__(self, components: dict, key: str) -> None:
        self._components = components
        self._key = key

    def __getattr__(self, name):
        target = self._components.get(self._key)
        if target is None:
            raise RuntimeError(f"{self._key} is not available before startup")
        return getattr(target, name)


def build_app(settings: Settings) -> Starlette:
    """Starlette app whose routes see the components built at startup."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "parley ready: %s (mode=%s, max_tool_iterations=%d, max_context_tokens=%d, workspace=%s)",
            settings.agent_name,
            "api" if settings.has_credentials else "cli",
            settings.max_tool_iterations,
            settings.max_context_tokens,
            settings.workspace_dir,
        )
        try:
            yield
        finally:
            await shutdown_components(components)
            components.clear()

    from parley.api.rest import create_app

    return create_app(
        runner=_ComponentRef(components, "runner"),
        database=_ComponentRef(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting parley: %s (model=%s, db=%s)", settings.agent_name, settings.model, settings.db_url)
    if not settings.has_credentials:
        logger.warning(
            "No ANTHROPIC_API_KEY or ANTHROPIC_AUTH_TOKEN; turns go through the %s CLI",
            settings.fallback_cli_path,
        )

    uvicorn.run(
        build_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
