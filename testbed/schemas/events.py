"""Run notification schemas."""

from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, Field

from testbed.models.run import utcnow

RUN_STARTED = "run:started"
RUN_ENVIRONMENT_CREATED = "run:environment-created"
RUN_ENVIRONMENT_STARTED = "run:environment-started"
RUN_LOG_CHUNK = "run:log-chunk"
RUN_COMPLETED = "run:completed"
RUN_FAILED = "run:failed"


class RunEvent(BaseModel):
    """A single lifecycle notification for one run."""

    event: str
    run_id: str
    run: Dict[str, Any]  # Record snapshot at emission time
    data: Dict[str, Any] = Field(default_factory=dict)  # handle / text / result / error
    timestamp: datetime = Field(default_factory=utcnow)
