"""Run-related Pydantic schemas."""

from typing import List, Optional

from pydantic import BaseModel

from testbed.models.run import Run, Verdict


class RunCreate(BaseModel):
    """Schema for submitting a run. Required fields are checked by the orchestrator."""

    script_content: Optional[str] = None
    operating_system: Optional[str] = None
    script_type: Optional[str] = None  # File extension, e.g. "sh" or "ps1"
    custom_image: Optional[str] = None
    script_id: Optional[str] = None


class RunSubmitted(BaseModel):
    """Response after submitting a run."""

    message: str
    run: Run


class RunList(BaseModel):
    """All runs, newest first."""

    count: int
    runs: List[Run]


class RunDetail(BaseModel):
    """A run record with its verdict once completed."""

    run: Run
    result: Optional[Verdict] = None


class RunLogs(BaseModel):
    """Captured output of a run."""

    run_id: str
    logs: str
