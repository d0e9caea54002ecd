"""Pytest configuration and fixtures."""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from testbed.errors import EnvironmentDriverError
from testbed.services.events import EventHub
from testbed.services.images import ImageResolver
from testbed.services.orchestrator import RunOrchestrator
from testbed.services.run_store import RunStore
from testbed.services.workspace import WorkspaceManager


@dataclass
class FakeBehavior:
    """What a fake container does. "{name}" in chunks expands to the container name."""

    chunks: List[str] = field(default_factory=list)
    exit_code: int = 0
    script_log: Optional[str] = None  # Written to output/ as the entrypoint would
    retained_logs: bytes = b""
    fail_on: Set[str] = field(default_factory=set)
    stream_error: bool = False


class FakeDriver:
    """In-memory environment driver with failure injection."""

    def __init__(self, behavior: Optional[FakeBehavior] = None):
        self.behavior = behavior or FakeBehavior()
        self.by_image: Dict[str, FakeBehavior] = {}
        self.containers: Dict[str, dict] = {}
        self.destroyed: List[str] = []
        self.gate: Optional[asyncio.Event] = None  # Holds await_completion when set

    def _behavior(self, handle: str) -> FakeBehavior:
        return self.containers[handle]["behavior"]

    def _maybe_fail(self, op: str, behavior: FakeBehavior) -> None:
        if op in behavior.fail_on:
            raise EnvironmentDriverError(f"injected {op} failure")

    async def create_environment(self, image, name, command, binds, tty=True):
        behavior = self.by_image.get(image, self.behavior)
        self._maybe_fail("create", behavior)
        handle = f"c-{len(self.containers):04d}-{name}"
        self.containers[handle] = {
            "image": image,
            "name": name,
            "command": command,
            "binds": binds,
            "behavior": behavior,
            "started": False,
        }
        return handle

    async def start_environment(self, handle):
        behavior = self._behavior(handle)
        self._maybe_fail("start", behavior)
        container = self.containers[handle]
        if container["started"]:
            raise EnvironmentDriverError("already started")
        container["started"] = True
        if behavior.script_log is not None:
            host_path = Path(container["binds"][0].split(":", 1)[0])
            (host_path / "output" / "script_output.log").write_text(behavior.script_log)

    async def attach_output_stream(self, handle):
        behavior = self._behavior(handle)
        name = self.containers[handle]["name"]
        for chunk in behavior.chunks:
            await asyncio.sleep(0)
            yield chunk.format(name=name).encode("utf-8")
        if behavior.stream_error:
            raise EnvironmentDriverError("injected stream failure")

    async def await_completion(self, handle):
        behavior = self._behavior(handle)
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_fail("wait", behavior)
        return behavior.exit_code

    async def fetch_logs(self, handle):
        return self._behavior(handle).retained_logs

    async def destroy_environment(self, handle):
        self.destroyed.append(handle)


@pytest.fixture
def results_dir(tmp_path):
    """Temporary results root."""
    return tmp_path / "results"


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def orchestrator(results_dir, fake_driver):
    """Orchestrator wired to the fake driver and a temporary results root."""
    return RunOrchestrator(
        driver=fake_driver,
        store=RunStore(str(results_dir)),
        workspaces=WorkspaceManager(str(results_dir)),
        resolver=ImageResolver(default_image="ubuntu:22.04"),
        hub=EventHub(queue_size=100),
        container_name_prefix="test-run",
        workspace_cleanup=False,
        max_script_bytes=1024,
    )
