"""FastAPI dependencies."""

from fastapi.requests import HTTPConnection

from testbed.services.docker_driver import DockerDriver
from testbed.services.orchestrator import RunOrchestrator


def get_orchestrator(connection: HTTPConnection) -> RunOrchestrator:
    """Orchestrator owned by the application (set up at startup)."""
    return connection.app.state.orchestrator


def get_driver(connection: HTTPConnection) -> DockerDriver:
    return connection.app.state.orchestrator.driver
