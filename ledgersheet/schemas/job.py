"""
Job schema - tracks one dataset run.

A Job is created when a run starts, mutated in place as progress advances,
and finishes in exactly one terminal state. Jobs are never reused.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Status of a job."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self != JobStatus.RUNNING


@dataclass
class Job:
    """
    A record of one dataset run.

    Attributes:
        job_id: Generated hex identifier, stored under job_<job_id>
        dataset_id: Dataset being run
        status: running, completed or failed
        progress: 0-100, never decreases
        message: Human-readable description of the current checkpoint
        trigger: "manual" or "schedule"
        start_time: When the run started
        end_time: When the run reached a terminal state
        error: Error message if failed
        result: Result envelope if completed
    """
    job_id: str
    dataset_id: str
    status: JobStatus = JobStatus.RUNNING
    progress: int = 0
    message: str = "Starting"
    trigger: str = "manual"
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[dict[str, Any]] = None

    def advance(self, progress: int, message: str) -> None:
        """Move to a later checkpoint. Progress never goes backwards."""
        if self.status.terminal:
            raise ValueError(f"Job {self.job_id} is already {self.status.value}")
        self.progress = max(self.progress, min(100, int(progress)))
        self.message = message

    def complete(self, result: dict[str, Any]) -> None:
        if self.status.terminal:
            raise ValueError(f"Job {self.job_id} is already {self.status.value}")
        self.status = JobStatus.COMPLETED
        self.progress = 100
        self.message = "Completed"
        self.result = result
        self.end_time = _utcnow()

    def fail(self, error: str) -> None:
        if self.status.terminal:
            raise ValueError(f"Job {self.job_id} is already {self.status.value}")
        self.status = JobStatus.FAILED
        self.message = "Failed"
        self.error = error
        self.end_time = _utcnow()

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "dataset_id": self.dataset_id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "trigger": self.trigger,
            "start_time": self.start_time.isoformat(),
        }
        if self.end_time is not None:
            result["end_time"] = self.end_time.isoformat()
        if self.error is not None:
            result["error"] = self.error
        if self.result is not None:
            result["result"] = self.result
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Deserialize from dictionary."""
        end_time = None
        if data.get("end_time"):
            end_time = datetime.fromisoformat(data["end_time"])
        return cls(
            job_id=data["job_id"],
            dataset_id=data["dataset_id"],
            status=JobStatus(data.get("status", "running")),
            progress=int(data.get("progress", 0)),
            message=data.get("message", ""),
            trigger=data.get("trigger", "manual"),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=end_time,
            error=data.get("error"),
            result=data.get("result"),
        )
