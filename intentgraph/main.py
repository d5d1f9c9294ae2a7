"""FastAPI application entry point for the intentgraph service.

Usage:
    uvicorn intentgraph.main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from intentgraph.agents.context import AgentContext
from intentgraph.api.routes import router, set_agent_context
from intentgraph.api.websocket import websocket_router
from intentgraph.config import configure_logging, settings
from intentgraph.events import get_event_bus
from intentgraph.metrics import MetricsCollector

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the shared AgentContext on startup and drop it on shutdown."""
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        default_model=settings.default_model,
    )

    context = AgentContext.from_settings(
        event_bus=get_event_bus(),
        metrics_collector=MetricsCollector(),
    )
    set_agent_context(context)
    app.state.agent_context = context

    logger.info(
        "application_started",
        sandbox_roots=context.sandbox_roots,
        max_sub_agents=context.spawn_limiter.max_active,
    )

    yield

    logger.info("application_shutting_down")
    set_agent_context(None)
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="intentgraph",
    description="Intent graph maintenance: validation, deltas, and "
    "LLM-assisted delta proposals.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["intentgraph"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Welcome message with documentation links."""
    return {
        "message": "intentgraph API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "intentgraph.main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
