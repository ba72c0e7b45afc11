"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fixflow.api.deps import execute_run_task, get_workflow_engine
from fixflow.api.routes import router
from fixflow.api.webhooks import router as webhook_router
from fixflow.config import get_settings
from fixflow.database.runs import RunStore, work_item_from_run
from fixflow.database.session import close_db, get_session_maker, init_db


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


async def resume_unfinished_runs() -> list[asyncio.Task]:
    """Re-dispatch every pending or processing run."""
    engine = get_workflow_engine()
    runs = await RunStore(get_session_maker()).list_unfinished()
    tasks = [
        asyncio.create_task(execute_run_task(engine, work_item_from_run(run)))
        for run in runs
    ]
    if tasks:
        logger.info(f"Resuming {len(tasks)} unfinished run(s)")
    return tasks


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    current = get_settings()
    logger.info(f"Starting {current.app_name} v{current.app_version}")

    # Initialize database
    if current.environment == "development":
        await init_db()
        logger.info("Database initialized")

    app.state.resume_tasks = []
    if current.resume_on_startup:
        app.state.resume_tasks = await resume_unfinished_runs()

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in app.state.resume_tasks:
        task.cancel()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="FixFlow API - GitHub issues to pull requests",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routes
app.include_router(router, prefix="/api")
app.include_router(webhook_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fixflow.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
