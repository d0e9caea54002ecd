"""FastAPI application entry point."""

import logging
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from testbed.config import settings
from testbed.routes import docker, runs
from testbed.services.orchestrator import RunOrchestrator

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Script Testbed",
    description="Runs scripts in isolated containers and records their results",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(runs.router)
app.include_router(docker.router)


@app.on_event("startup")
async def startup_event():
    """Create the orchestrator and fail runs a previous process left unfinished."""
    logger.info("Starting application...")

    # Tests may install their own orchestrator before startup
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = RunOrchestrator()

    recovered = app.state.orchestrator.recover_interrupted()
    if recovered:
        logger.warning(f"Marked {recovered} interrupted runs as failed")

    logger.info(f"Run results stored under {app.state.orchestrator.store.root}")


@app.on_event("shutdown")
async def shutdown_event():
    """Let in-flight runs finish, then close notification channels."""
    logger.info("Shutting down application...")
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.shutdown(timeout=settings.SHUTDOWN_TIMEOUT)
        logger.info("Orchestrator stopped")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


def main():
    """Entry point for the testbed server."""
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
