"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from client_evals.api.admin import router as admin_router
from client_evals.api.mcp_server import McpBenchmarkServer, McpEndpoint
from client_evals.app_logging import configure_logging
from client_evals.containers import AppContainer


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging()
    logger = logging.getLogger(__name__)
    benchmark_server = McpBenchmarkServer.from_container(container)
    mcp_endpoint = McpEndpoint(container.session_registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        session_manager = benchmark_server.create_session_manager()
        async with session_manager.run():
            mcp_endpoint.session_manager = session_manager
            logger.info("MCP endpoint ready")
            try:
                yield
            finally:
                mcp_endpoint.session_manager = None
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container
    app.state.benchmark_server = benchmark_server

    app.include_router(admin_router)
    app.add_route("/mcp", mcp_endpoint, include_in_schema=False)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    return app
