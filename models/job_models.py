# models/job_models.py
"""Models describing persisted background jobs."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import Field

from .analysis_models import PanelBaseModel


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BackgroundJob(PanelBaseModel):
    """Snapshot of a long-running analysis, persisted after every mutation."""

    id: str
    type: str
    status: JobStatus = JobStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    current_step: str = "Initializing..."
    total_steps: int = 0
    completed_steps: int = 0
    results: list[Any] = Field(default_factory=list)
    error: str | None = None
    start_time: float = Field(default_factory=time.time)
    end_time: float | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)
