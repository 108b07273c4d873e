"""Jobflow API - deferred jobs and workflow executions over HTTP.

Scheduling and workflow state live in the database; this process holds no
execution state of its own, so any number of API instances and workers can
run against the same database.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobflow import __version__
from jobflow.api.routes import scheduled_jobs, templates, workflows
from jobflow.db import execute, init_db
from jobflow.routines.registry import get_routine_registry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Initializing database...")
    init_db()

    logger.info("Loading internal routines...")
    routine_registry = get_routine_registry()
    logger.info(f"Loaded {routine_registry.count()} routines: {', '.join(routine_registry.list_names())}")

    logger.info("Jobflow API ready")
    yield
    logger.info("Shutting down Jobflow API")


app = FastAPI(
    title="Jobflow API",
    description="""
## Deferred Jobs and Workflows

Schedule one-time and recurring jobs (webhooks, internal routines, sandboxed
scripts) and run multi-step workflows that can pause and resume.

### Key Endpoints

- `POST /v1/scheduled-jobs` - Enqueue a job
- `GET /v1/scheduled-jobs/{id}` - Job status, stats and history
- `POST /v1/process-jobs` - Run one poll cycle
- `POST /v1/workflows/{id}/start` - Start a workflow execution
- `POST /v1/workflow-executions/{id}/advance` - Advance an execution
""",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers with /v1 prefix
app.include_router(scheduled_jobs.router, prefix="/v1")
app.include_router(workflows.router, prefix="/v1")
app.include_router(templates.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Jobflow API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "scheduled_jobs": "/v1/scheduled-jobs",
            "process_jobs": "/v1/process-jobs",
            "workflows": "/v1/workflows",
            "workflow_executions": "/v1/workflow-executions/{id}",
            "templates": "/v1/templates/render",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    try:
        execute("SELECT 1", fetch="one")
        database = "ok"
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        database = "unavailable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "routines_loaded": get_routine_registry().count(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
