from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable

from batchbrake.jobs import ConversionJob, JobStatus


@dataclass(frozen=True)
class QueueStatus:
    queue_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    waiting_count: int = 0
    is_running: bool = False

    @property
    def can_start(self) -> bool:
        return not self.is_running and self.queue_count > 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "queue_count": self.queue_count,
            "processing_count": self.processing_count,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "cancelled_count": self.cancelled_count,
            "waiting_count": self.waiting_count,
            "is_running": self.is_running,
            "can_start": self.can_start,
        }


def summarize(jobs: Iterable[ConversionJob], is_running: bool) -> QueueStatus:
    counts = {status: 0 for status in JobStatus}
    total = 0
    for job in jobs:
        counts[job.status] += 1
        total += 1
    return QueueStatus(
        queue_count=total,
        processing_count=counts[JobStatus.IN_PROGRESS],
        completed_count=counts[JobStatus.COMPLETED],
        failed_count=counts[JobStatus.FAILED],
        cancelled_count=counts[JobStatus.CANCELLED],
        waiting_count=counts[JobStatus.NOT_STARTED] + counts[JobStatus.QUEUED],
        is_running=is_running,
    )


def describe(status: QueueStatus, *, stopped: bool = False) -> str:
    """Short human-readable line for the host's status bar."""
    if status.is_running:
        finished = status.completed_count + status.failed_count + status.cancelled_count
        current = min(finished + max(status.processing_count, 1), status.queue_count)
        return f"Converting {current} of {status.queue_count}"
    if stopped:
        return "Conversion stopped"
    finished = status.completed_count + status.failed_count + status.cancelled_count
    if finished == 0:
        return "Ready"
    text = f"Finished: {status.completed_count} completed, {status.failed_count} failed"
    if status.cancelled_count:
        text += f", {status.cancelled_count} cancelled"
    return text
