from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Dict, Iterator, List, Optional

from batchbrake.errors import DuplicateJobError, QueueBusyError
from batchbrake.jobs import ConversionJob, JobStatus, VideoInfo, normalize_path

logger = logging.getLogger(__name__)

QueueListener = Callable[[], None]


def default_output_path(input_path: str) -> str:
    root, ext = os.path.splitext(input_path)
    return f"{root}_converted{ext}"


class QueueStore:
    """Ordered, duplicate-free list of conversion jobs.

    ``lock`` guards every job-state write in the application; the scheduler
    shares it. Listeners run after the lock has been released.
    """

    def __init__(self, lock: Optional[threading.RLock] = None) -> None:
        self.lock = lock or threading.RLock()
        self._jobs: List[ConversionJob] = []
        self._by_key: Dict[str, ConversionJob] = {}
        self._listeners: List[QueueListener] = []

    # Listeners ---------------------------------------------------------
    def subscribe(self, callback: QueueListener) -> Callable[[], None]:
        with self.lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self.lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        with self.lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Queue listener failed")

    # Mutations ---------------------------------------------------------
    def add(
        self,
        path: str,
        *,
        output_path: Optional[str] = None,
        preset: Optional[str] = None,
        video_info: Optional[VideoInfo] = None,
    ) -> ConversionJob:
        input_path = os.path.abspath(os.path.expanduser(str(path)))
        job = ConversionJob(
            input_path=input_path,
            output_path=output_path or default_output_path(input_path),
            preset=preset,
            video_info=video_info,
        )
        return self.insert(job)

    def insert(self, job: ConversionJob) -> ConversionJob:
        key = job.key
        with self.lock:
            if key in self._by_key:
                raise DuplicateJobError(job.input_path)
            job.index = len(self._jobs)
            self._jobs.append(job)
            self._by_key[key] = job
        self._notify()
        return job

    def remove(self, job: ConversionJob) -> bool:
        with self.lock:
            current = self._by_key.get(job.key)
            if current is None or current.id != job.id:
                return False
            if current.status == JobStatus.IN_PROGRESS:
                raise QueueBusyError(f"{current.file_name} is converting; stop the batch first")
            self._jobs.remove(current)
            del self._by_key[current.key]
            self._reindex_locked()
        self._notify()
        return True

    def clear_completed(self) -> int:
        with self.lock:
            kept = [job for job in self._jobs if job.status != JobStatus.COMPLETED]
            removed = len(self._jobs) - len(kept)
            if removed:
                self._replace_locked(kept)
        if removed:
            self._notify()
        return removed

    def clear_all(self) -> int:
        with self.lock:
            if any(job.status == JobStatus.IN_PROGRESS for job in self._jobs):
                raise QueueBusyError("Cannot clear the queue while conversions are running")
            removed = len(self._jobs)
            self._replace_locked([])
        if removed:
            self._notify()
        return removed

    def _replace_locked(self, jobs: List[ConversionJob]) -> None:
        self._jobs = jobs
        self._by_key = {job.key: job for job in jobs}
        self._reindex_locked()

    def _reindex_locked(self) -> None:
        for index, job in enumerate(self._jobs):
            job.index = index

    # Queries -----------------------------------------------------------
    def jobs(self) -> List[ConversionJob]:
        with self.lock:
            return list(self._jobs)

    def get(self, job_id: str) -> Optional[ConversionJob]:
        with self.lock:
            for job in self._jobs:
                if job.id == job_id:
                    return job
        return None

    def find(self, path: str) -> Optional[ConversionJob]:
        with self.lock:
            return self._by_key.get(normalize_path(path))

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.find(path) is not None

    def __len__(self) -> int:
        with self.lock:
            return len(self._jobs)

    def __iter__(self) -> Iterator[ConversionJob]:
        return iter(self.jobs())
