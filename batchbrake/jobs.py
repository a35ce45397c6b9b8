from __future__ import annotations

import logging
import os
import sys
import time
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from batchbrake.errors import InvalidTransitionError
from batchbrake.utils import format_file_size


_JOB_LOGGER = logging.getLogger("batchbrake.jobs")
if not _JOB_LOGGER.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    _JOB_LOGGER.addHandler(handler)
    _JOB_LOGGER.propagate = False
_JOB_LOGGER.setLevel(logging.DEBUG)

_JOB_LEVEL_MAP: Dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "success": logging.INFO,
    "debug": logging.DEBUG,
}


def _emit_job_log(job_id: str, level: str, message: str) -> None:
    normalized = (level or "info").lower()
    log_level = _JOB_LEVEL_MAP.get(normalized, logging.INFO)
    try:
        _JOB_LOGGER.log(log_level, "[job %s] %s", job_id, message)
    except Exception:
        try:
            sys.stderr.write(f"Logging failed for job {job_id}: {message}\n")
            traceback.print_exc(file=sys.stderr)
        except Exception:
            pass


class JobStatus(str, Enum):
    NOT_STARTED = "not_started"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_eligible(self) -> bool:
        return self in ELIGIBLE_STATUSES


ELIGIBLE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.NOT_STARTED, JobStatus.QUEUED})
TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.NOT_STARTED: frozenset({JobStatus.IN_PROGRESS}),
    JobStatus.QUEUED: frozenset({JobStatus.IN_PROGRESS}),
    JobStatus.IN_PROGRESS: TERMINAL_STATUSES,
    JobStatus.COMPLETED: frozenset({JobStatus.QUEUED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.CANCELLED: frozenset({JobStatus.QUEUED}),
}


@dataclass
class JobLog:
    timestamp: float
    message: str
    level: str = "info"


@dataclass
class VideoInfo:
    file_name: Optional[str] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None
    codec: Optional[str] = None
    file_size_bytes: Optional[int] = None

    @property
    def file_size(self) -> Optional[str]:
        if self.file_size_bytes is None:
            return None
        return format_file_size(self.file_size_bytes)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "duration": self.duration,
            "resolution": self.resolution,
            "codec": self.codec,
            "fileSizeBytes": self.file_size_bytes,
            "fileSize": self.file_size,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> Optional["VideoInfo"]:
        if not isinstance(payload, dict):
            return None
        duration = payload.get("duration")
        size = payload.get("fileSizeBytes")
        return cls(
            file_name=payload.get("fileName"),
            duration=float(duration) if isinstance(duration, (int, float)) else None,
            resolution=payload.get("resolution"),
            codec=payload.get("codec"),
            file_size_bytes=int(size) if isinstance(size, (int, float)) else None,
        )


def normalize_path(path: Any) -> str:
    return os.path.normcase(os.path.abspath(os.path.expanduser(str(path))))


@dataclass
class ConversionJob:
    input_path: str
    output_path: str
    preset: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    index: int = 0
    status: JobStatus = JobStatus.NOT_STARTED
    progress: float = 0.0
    error: Optional[str] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    video_info: Optional[VideoInfo] = None
    logs: List[JobLog] = field(default_factory=list, repr=False, compare=False)

    @property
    def key(self) -> str:
        return normalize_path(self.input_path)

    @property
    def file_name(self) -> str:
        return os.path.basename(self.input_path)

    @property
    def elapsed(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0.0, end - self.started_at)

    @property
    def estimated_time_remaining(self) -> Optional[float]:
        if self.status != JobStatus.IN_PROGRESS or not self.started_at or self.progress <= 0:
            return None
        elapsed = time.time() - self.started_at
        if elapsed <= 0:
            return None
        total_estimated = elapsed / (self.progress / 100.0)
        return max(0.0, total_estimated - elapsed)

    def add_log(self, message: str, level: str = "info") -> None:
        entry = JobLog(timestamp=time.time(), message=message, level=level)
        self.logs.append(entry)
        _emit_job_log(self.id, level, message)

    # State machine ------------------------------------------------------
    def _transition(self, target: JobStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def mark_started(self) -> None:
        self._transition(JobStatus.IN_PROGRESS)
        self.progress = 0.0
        self.error = None
        self.started_at = time.time()
        self.ended_at = None

    def update_progress(self, value: float) -> bool:
        """Record ``value`` if it is an increase; returns whether it was applied."""
        if self.status != JobStatus.IN_PROGRESS or value <= self.progress:
            return False
        self.progress = value
        return True

    def mark_completed(self) -> None:
        self._transition(JobStatus.COMPLETED)
        self.progress = 100.0
        self.ended_at = time.time()

    def mark_failed(self, reason: str) -> None:
        self._transition(JobStatus.FAILED)
        self.error = reason or "Conversion failed"
        self.ended_at = time.time()

    def mark_cancelled(self) -> None:
        self._transition(JobStatus.CANCELLED)
        self.progress = 0.0
        self.ended_at = time.time()

    def reset(self) -> None:
        self._transition(JobStatus.QUEUED)
        self.progress = 0.0
        self.error = None
        self.started_at = None
        self.ended_at = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "index": self.index,
            "input_path": self.input_path,
            "output_path": self.output_path,
            "preset": self.preset,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "video_info": self.video_info.as_dict() if self.video_info else None,
            "logs": [log.__dict__ for log in self.logs],
        }
