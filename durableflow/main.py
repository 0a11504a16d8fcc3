"""
DurableFlow - FastAPI Application Entry Point.

A durable, resumable workflow engine: graphs of typed nodes that survive
restarts and can wait on webhooks, approvals and timers.
"""

from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging

from durableflow.config import settings
from durableflow.api.routes import approvals, graphs, node_types, runs, webhooks, websocket
from durableflow.runtime import Runtime, get_runtime


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def recover_runs(runtime: Runtime) -> None:
    """Continue runs a previous process left between steps."""
    try:
        results = await runtime.engine.recover_stalled()
    except Exception:
        logger.exception("Startup recovery failed")
        return
    if results:
        logger.info(f"Recovered {len(results)} stalled run(s)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    runtime = app.dependency_overrides.get(get_runtime, get_runtime)()
    recovery = None
    if settings.RECOVER_ON_STARTUP:
        recovery = asyncio.create_task(recover_runs(runtime))
    if settings.SCHEDULER_ENABLED:
        await runtime.scheduler.start()

    yield

    logger.info("Shutting down...")
    await runtime.scheduler.stop()
    if recovery is not None and not recovery.done():
        recovery.cancel()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="""
## Durable Workflow Engine API

Runs workflow graphs of typed nodes with a checkpoint after every step.

### Features
- **Durable**: every step is checkpointed; runs continue after a restart
- **Suspension**: runs wait on webhooks, human approvals and timers
- **Branching & Loops**: if-else, router and while nodes
- **Triggers**: webhooks and cron schedules
- **Real-time Updates**: WebSocket stream of run events

### Quick Start
1. List node types: `GET /node-types`
2. Store a graph: `POST /graphs`
3. Start a run: `POST /runs`
4. Inspect it: `GET /runs/{thread_id}`
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(graphs.router)
app.include_router(runs.router)
app.include_router(webhooks.router)
app.include_router(approvals.router)
app.include_router(node_types.router)
app.include_router(websocket.router)


# ============================================================
# Root Endpoints
# ============================================================

@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info and links."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": "A durable, resumable workflow engine",
        "docs": "/docs",
        "redoc": "/redoc",
        "endpoints": {
            "graphs": "/graphs",
            "runs": "/runs",
            "webhooks": "/webhooks/{webhook_id}",
            "approvals": "/approvals/{approval_id}",
            "node_types": "/node-types",
            "websocket": "/ws/threads/{thread_id}",
        },
    }


@app.get("/health", tags=["Root"])
async def health(runtime: Runtime = Depends(get_runtime)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "graphs_count": len(runtime.graphs),
        "suspended_count": len(runtime.engine.suspensions),
        "scheduler_running": runtime.scheduler.running,
    }


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
        },
    )
