"""Domain models."""

from testbed.models.run import Run, RunStatus, Verdict

__all__ = [
    "Run",
    "RunStatus",
    "Verdict",
]
