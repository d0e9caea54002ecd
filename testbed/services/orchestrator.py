"""Test execution orchestrator: one lifecycle task per submitted run."""

import asyncio
import codecs
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from testbed.config import settings
from testbed.errors import (
    EnvironmentDriverError,
    RunInProgressError,
    TestbedError,
    ValidationError,
    WorkspaceError,
)
from testbed.models.run import Run, RunStatus, Verdict
from testbed.schemas.events import (
    RUN_COMPLETED,
    RUN_ENVIRONMENT_CREATED,
    RUN_ENVIRONMENT_STARTED,
    RUN_FAILED,
    RUN_LOG_CHUNK,
    RUN_STARTED,
)
from testbed.services.classifier import classify
from testbed.services.docker_driver import DockerDriver
from testbed.services.events import EventHub, RunChannel
from testbed.services.images import ImageResolver
from testbed.services.platforms import Platform, platform_for
from testbed.services.run_store import RunStore
from testbed.services.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

SCRIPT_TYPE_PATTERN = re.compile(r"[A-Za-z0-9]{1,10}")


class RunOrchestrator:
    """
    Turns a (script, target OS) pair into a finished, recorded run.

    Submission persists a pending record and returns; the rest of the
    lifecycle runs as an independent asyncio task. Every run that gets a
    record ends in exactly one terminal status, whatever fails along the way.
    """

    def __init__(
        self,
        driver=None,
        store: Optional[RunStore] = None,
        workspaces: Optional[WorkspaceManager] = None,
        resolver: Optional[ImageResolver] = None,
        hub: Optional[EventHub] = None,
        container_name_prefix: Optional[str] = None,
        workspace_cleanup: Optional[bool] = None,
        max_script_bytes: Optional[int] = None,
    ):
        """Initialize the orchestrator and its collaborators."""
        self.driver = driver or DockerDriver()
        self.store = store or RunStore()
        self.workspaces = workspaces or WorkspaceManager(str(self.store.root))
        self.resolver = resolver or ImageResolver()
        self.hub = hub or EventHub()
        self.container_name_prefix = container_name_prefix or settings.CONTAINER_NAME_PREFIX
        self.workspace_cleanup = (
            settings.WORKSPACE_CLEANUP if workspace_cleanup is None else workspace_cleanup
        )
        self.max_script_bytes = max_script_bytes or settings.MAX_SCRIPT_BYTES
        self._active: Dict[str, asyncio.Task] = {}

    # Submission and queries

    async def submit_run(
        self,
        script_content: str,
        target_operating_system: str,
        script_type: Optional[str] = None,
        image_override: Optional[str] = None,
        script_id: Optional[str] = None,
    ) -> Run:
        """
        Validate input, persist a pending record and launch the run.

        Args:
            script_content: Script text to execute
            target_operating_system: OS identifier, e.g. "ubuntu-22.04"
            script_type: File extension; defaults to ps1 on Windows, sh elsewhere
            image_override: Explicit image, bypassing OS resolution
            script_id: Optional caller reference to a stored script

        Returns:
            Snapshot of the initial pending record

        Raises:
            ValidationError: On missing or invalid input (no record is created)
            WorkspaceError: If the initial record cannot be written
        """
        if not script_content or not script_content.strip():
            raise ValidationError("Script content is required")
        if not target_operating_system or not target_operating_system.strip():
            raise ValidationError("Operating system is required")
        if len(script_content.encode("utf-8")) > self.max_script_bytes:
            raise ValidationError(f"Script exceeds {self.max_script_bytes} bytes")

        # Image and platform are resolved once; the whole lifecycle uses this pair
        image = self.resolver.resolve(target_operating_system, image_override)
        platform = platform_for(target_operating_system, image)
        script_type = script_type or platform.default_script_type
        if not SCRIPT_TYPE_PATTERN.fullmatch(script_type):
            raise ValidationError(f"Invalid script type: {script_type!r}")

        run = Run(
            target_operating_system=target_operating_system,
            script_type=script_type,
            script_file=platform.script_filename(script_type),
            script_id=script_id,
        )
        run.container_name = f"{self.container_name_prefix}-{run.id[:8]}"

        try:
            self.store.save(run)
        except OSError as e:
            raise WorkspaceError(f"Failed to persist run record: {e}") from e

        channel = self.hub.open_channel(run.id)
        channel.publish(RUN_STARTED, run)
        snapshot = run.model_copy(deep=True)

        task = asyncio.create_task(
            self._execute(run, script_content, image, platform, channel),
            name=f"run-{run.id}",
        )
        self._active[run.id] = task
        task.add_done_callback(lambda _: self._active.pop(run.id, None))

        logger.info(f"Submitted run {run.id} ({target_operating_system})")
        return snapshot

    def list_runs(self) -> List[Run]:
        return self.store.list()

    def get_run(self, run_id: str) -> Tuple[Run, Optional[Verdict]]:
        """Record plus verdict (None until completed)."""
        run = self.store.get(run_id)
        return run, self.store.get_result(run_id)

    def get_run_logs(self, run_id: str) -> str:
        return self.store.read_logs(run_id)

    def purge_run(self, run_id: str) -> None:
        """
        Delete a finished run's directory.

        Raises:
            RunNotFoundError: If the run does not exist
            RunInProgressError: If the run is still executing
        """
        run = self.store.get(run_id)
        if run_id in self._active or not run.is_terminal:
            raise RunInProgressError(f"Run {run_id} is still {run.status.value}")
        self.store.delete(run_id)

    def recover_interrupted(self) -> int:
        """
        Fail records left non-terminal by a previous process.

        Returns:
            Number of records moved to failed
        """
        recovered = 0
        for run in self.store.list():
            if run.is_terminal or run.id in self._active:
                continue
            run.fail("Interrupted by service restart")
            self.store.save(run)
            recovered += 1
            logger.warning(f"Marked interrupted run {run.id} as failed")
        return recovered

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all in-flight runs to finish.

        Returns:
            True if no run is still active
        """
        tasks = list(self._active.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        return not self._active

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight runs, cancel stragglers and close all channels."""
        if not await self.wait_idle(timeout):
            stragglers = list(self._active.values())
            logger.warning(f"Cancelling {len(stragglers)} unfinished runs")
            for task in stragglers:
                task.cancel()
            await asyncio.gather(*stragglers, return_exceptions=True)
        self.hub.close()

    # Lifecycle

    def _set_phase(self, run: Run, phase: str) -> None:
        run.phase = phase
        self.store.save(run)
        logger.info(f"Run {run.id} -> {phase}")

    async def _execute(
        self,
        run: Run,
        script_content: str,
        image: str,
        platform: Platform,
        channel: RunChannel,
    ) -> None:
        workspace: Optional[Path] = None
        try:
            self._set_phase(run, "launching")
            run.environment_image = image
            workspace = await asyncio.to_thread(
                self.workspaces.prepare, run.id, script_content, run.script_type, platform
            )

            handle = await self.driver.create_environment(
                run.environment_image,
                run.container_name,
                platform.build_command(run.script_file),
                platform.bind(str(workspace)),
            )
            run.environment_handle = handle
            self.store.save(run)
            channel.publish(RUN_ENVIRONMENT_CREATED, run, handle=handle)

            await self.driver.start_environment(handle)
            run.transition(RunStatus.RUNNING)
            self._set_phase(run, "streaming")
            channel.publish(RUN_ENVIRONMENT_STARTED, run)

            streamed = await self._consume_stream(run, channel)

            self._set_phase(run, "awaiting-exit")
            exit_code = await self.driver.await_completion(handle)

            self._set_phase(run, "classifying")
            verdict = await self._classify(run, streamed)

            self.store.save_result(run.id, verdict)
            run.complete(exit_code, verdict)
            self.store.save(run)
            logger.info(
                f"Run {run.id} completed: exit code {exit_code}, "
                f"success={verdict.success}, {verdict.error_count} error lines"
            )
        except asyncio.CancelledError:
            await self._finish_failed(run, channel, "Run cancelled during service shutdown")
            raise
        except TestbedError as e:
            logger.error(f"Run {run.id} failed during {run.phase}: {e}")
            await self._finish_failed(run, channel, str(e))
        except Exception as e:
            logger.error(f"Run {run.id} failed unexpectedly during {run.phase}: {e}", exc_info=True)
            await self._finish_failed(run, channel, str(e) or e.__class__.__name__)
        else:
            await self._destroy(run)
            channel.publish(RUN_COMPLETED, run, result=verdict.model_dump())
        finally:
            if workspace is not None and self.workspace_cleanup:
                await asyncio.to_thread(self.workspaces.teardown, workspace)
            channel.close()

    async def _consume_stream(self, run: Run, channel: RunChannel) -> str:
        """Forward each output chunk as it arrives and return the accumulated text."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parts = []
        async for chunk in self.driver.attach_output_stream(run.environment_handle):
            text = decoder.decode(chunk)
            if text:
                parts.append(text)
                channel.publish(RUN_LOG_CHUNK, run, text=text)
        tail = decoder.decode(b"", final=True)
        if tail:
            parts.append(tail)
            channel.publish(RUN_LOG_CHUNK, run, text=tail)
        return "".join(parts)

    async def _classify(self, run: Run, streamed: str) -> Verdict:
        """Classify from the durable entrypoint log, else from the stream text."""
        if not streamed:
            # Attach can race container startup and deliver nothing
            try:
                raw = await self.driver.fetch_logs(run.environment_handle)
                streamed = raw.decode("utf-8", errors="replace")
            except EnvironmentDriverError as e:
                logger.warning(f"Could not fetch logs for run {run.id}: {e}")

        await asyncio.to_thread(self.store.save_stream_dump, run.id, streamed)

        script_log = await asyncio.to_thread(self.store.read_script_log, run.id)
        if script_log is not None:
            return classify(script_log)
        return classify(streamed)

    async def _destroy(self, run: Run) -> None:
        if run.environment_handle:
            await self.driver.destroy_environment(run.environment_handle)

    async def _finish_failed(self, run: Run, channel: RunChannel, reason: str) -> None:
        """Destroy the environment if any, then persist and announce the failure."""
        await self._destroy(run)

        if run.is_terminal:
            # Terminal in memory but the final write failed; retry it as is
            logger.error(f"Run {run.id} reached {run.status.value} but could not be saved: {reason}")
        else:
            run.fail(reason)

        try:
            self.store.save(run)
        except OSError as e:
            logger.error(f"Failed to persist terminal state of run {run.id}: {e}")

        if run.status is RunStatus.FAILED:
            channel.publish(RUN_FAILED, run, error=run.failure_reason)
        else:
            result = self.store.get_result(run.id)
            channel.publish(RUN_COMPLETED, run, result=result.model_dump() if result else None)
