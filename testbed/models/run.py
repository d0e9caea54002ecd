"""Run record and classifier verdict models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from testbed.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Durable status of a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})

VALID_TRANSITIONS = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class Verdict(BaseModel):
    """Structured result derived from captured output."""

    success: bool = False
    exit_code: Optional[int] = None
    error_count: int = 0
    error_lines: List[str] = Field(default_factory=list)


class Run(BaseModel):
    """Run represents one execution of a script inside an isolated environment."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    target_operating_system: str
    script_type: str
    script_file: str
    script_id: Optional[str] = None
    environment_image: Optional[str] = None
    environment_handle: Optional[str] = None
    container_name: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    phase: str = "pending"  # Finer-grained orchestrator step, informational only
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    success: Optional[bool] = None
    error_count: Optional[int] = None
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: RunStatus) -> None:
        """
        Move the run to a new status.

        Args:
            new_status: Target status

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move
        """
        allowed = VALID_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Invalid status transition for run {self.id}: "
                f"{self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        self.phase = new_status.value
        if new_status in TERMINAL_STATUSES:
            self.ended_at = utcnow()

    def complete(self, exit_code: int, verdict: Verdict) -> None:
        """Mark the run completed with the authoritative exit code and verdict."""
        self.transition(RunStatus.COMPLETED)
        self.exit_code = exit_code
        self.success = verdict.success
        self.error_count = verdict.error_count

    def fail(self, reason: str) -> None:
        """Mark the run failed with a human-readable cause."""
        self.transition(RunStatus.FAILED)
        self.failure_reason = reason
