from __future__ import annotations

import logging
import math
import threading
import traceback
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

from batchbrake.cancellation import CancellationSource
from batchbrake.converter import ConversionResult, Converter
from batchbrake.errors import (
    ConversionCancelledError,
    ConversionFailedError,
    ConverterUnavailableError,
    SourceDeletionError,
)
from batchbrake.jobs import ConversionJob, JobStatus
from batchbrake.utils import delete_source_file

logger = logging.getLogger(__name__)

JobCallback = Callable[[ConversionJob], None]
BatchCallback = Callable[[], None]


class _Batch:
    def __init__(self, jobs: Iterable[ConversionJob], parallelism: int, delete_source: bool) -> None:
        self.pending: Deque[ConversionJob] = deque(jobs)
        self.gate = threading.BoundedSemaphore(parallelism)
        self.source = CancellationSource()
        self.active: Dict[str, ConversionJob] = {}
        self.workers: List[threading.Thread] = []
        self.delete_source = delete_source
        self.closed = False
        self.stopped = False
        self.done = threading.Event()


class Scheduler:
    """Runs eligible jobs through a converter, at most ``parallelism`` at once.

    Jobs are admitted in FIFO order by a dispatcher thread; each admitted job
    gets its own worker thread. Every job-state write happens under ``lock``,
    which is shared with the queue store.
    """

    def __init__(
        self,
        converter: Converter,
        *,
        lock: Optional[threading.RLock] = None,
        on_job_update: Optional[JobCallback] = None,
        on_batch_finished: Optional[BatchCallback] = None,
        poll_interval: float = 0.1,
    ) -> None:
        self.converter = converter
        self.lock = lock or threading.RLock()
        self.on_job_update = on_job_update
        self.on_batch_finished = on_batch_finished
        self.poll_interval = poll_interval
        self._batch: Optional[_Batch] = None

    @property
    def is_running(self) -> bool:
        with self.lock:
            return self._batch is not None and not self._batch.closed

    # Batch control ----------------------------------------------------
    def start(self, jobs: Iterable[ConversionJob], parallelism: int, *, delete_source: bool = False) -> int:
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if self.is_running:
            logger.warning("A batch is already running; start request ignored")
            return 0
        if not self.converter.is_available():
            raise ConverterUnavailableError("The converter is not available. Check the HandBrakeCLI path.")

        with self.lock:
            if self._batch is not None and not self._batch.closed:
                logger.warning("A batch is already running; start request ignored")
                return 0
            eligible = [job for job in jobs if job.status.is_eligible]
            if not eligible:
                return 0
            batch = _Batch(eligible, parallelism, delete_source)
            dispatcher = threading.Thread(
                target=self._dispatch,
                args=(batch,),
                name="batchbrake-dispatcher",
                daemon=True,
            )
            self._batch = batch
        logger.info("Starting batch of %d job(s) with %d parallel instance(s)", len(eligible), parallelism)
        dispatcher.start()
        return len(eligible)

    def stop(self) -> List[ConversionJob]:
        """Close admission and cancel every running job of the current batch.

        Running jobs are marked cancelled immediately; the processes are
        killed asynchronously. Jobs that were still waiting keep their status.
        """
        with self.lock:
            batch = self._batch
            if batch is None or batch.closed:
                return []
            batch.closed = True
            batch.stopped = True
            cancelled: List[ConversionJob] = []
            for job in batch.active.values():
                if job.status == JobStatus.IN_PROGRESS:
                    job.mark_cancelled()
                    job.add_log("Conversion stopped by user", level="warning")
                    cancelled.append(job)
            batch.pending.clear()
        batch.source.cancel()
        for job in cancelled:
            self._emit_job_update(job)
        logger.info("Batch stopped; %d running job(s) cancelled", len(cancelled))
        return cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self.lock:
            batch = self._batch
        if batch is None:
            return True
        return batch.done.wait(timeout)

    def discard(self, job: ConversionJob) -> bool:
        with self.lock:
            batch = self._batch
            if batch is None or batch.closed or job not in batch.pending:
                return False
            batch.pending.remove(job)
            return True

    # Dispatcher -------------------------------------------------------
    def _acquire_slot(self, batch: _Batch) -> bool:
        while not batch.source.cancelled:
            if batch.gate.acquire(timeout=self.poll_interval):
                return True
        return False

    def _next_job_locked(self, batch: _Batch) -> Optional[ConversionJob]:
        while batch.pending and not batch.closed:
            candidate = batch.pending.popleft()
            if candidate.status.is_eligible:
                return candidate
        return None

    def _dispatch(self, batch: _Batch) -> None:
        try:
            while self._acquire_slot(batch):
                with self.lock:
                    job = self._next_job_locked(batch)
                    if job is None:
                        batch.gate.release()
                        break
                    job.mark_started()
                    job.add_log("Conversion started", level="info")
                    batch.active[job.id] = job
                    source = batch.source.child()
                    worker = threading.Thread(
                        target=self._run_job,
                        args=(batch, job, source),
                        name=f"batchbrake-worker-{job.id[:8]}",
                        daemon=True,
                    )
                    batch.workers.append(worker)
                self._emit_job_update(job)
                worker.start()
            for worker in list(batch.workers):
                worker.join()
        except Exception:
            logger.exception("Dispatcher failed")
        finally:
            with self.lock:
                batch.closed = True
                stopped = batch.stopped
            if not stopped:
                logger.info("Batch finished")
                if self.on_batch_finished is not None:
                    try:
                        self.on_batch_finished()
                    except Exception:
                        logger.exception("Batch finished callback failed")
            batch.done.set()

    # Workers ----------------------------------------------------------
    def _owns(self, batch: _Batch, job: ConversionJob) -> bool:
        return not batch.stopped and job.status == JobStatus.IN_PROGRESS and batch.active.get(job.id) is job

    def _report_progress(self, batch: _Batch, job: ConversionJob, value: float) -> None:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return
        if not math.isfinite(number):
            return
        number = max(0.0, min(100.0, number))
        with self.lock:
            if not self._owns(batch, job) or not job.update_progress(number):
                return
        self._emit_job_update(job)

    def _run_job(self, batch: _Batch, job: ConversionJob, source: CancellationSource) -> None:
        result: Optional[ConversionResult] = None
        error: Optional[Exception] = None
        try:
            try:
                source.signal.raise_if_cancelled()
                result = self.converter.convert(
                    job.input_path,
                    job.output_path,
                    job.preset,
                    lambda value: self._report_progress(batch, job, value),
                    source.signal,
                )
            except Exception as exc:
                error = exc
            self._finish_job(batch, job, source, result, error)
        except Exception:
            logger.exception("Worker for job %s failed", job.id)
        finally:
            with self.lock:
                batch.active.pop(job.id, None)
            batch.gate.release()

    def _finish_job(
        self,
        batch: _Batch,
        job: ConversionJob,
        source: CancellationSource,
        result: Optional[ConversionResult],
        error: Optional[Exception],
    ) -> None:
        delete_source = False
        with self.lock:
            if not self._owns(batch, job):
                return
            if isinstance(error, ConversionCancelledError) or source.cancelled:
                job.mark_cancelled()
                job.add_log("Conversion was cancelled", level="warning")
            elif isinstance(error, ConversionFailedError):
                job.mark_failed(error.reason)
                job.add_log(f"Conversion failed: {error.reason}", level="error")
            elif error is not None:
                exc_type = error.__class__.__name__
                job.mark_failed(f"{exc_type}: {error}")
                job.add_log(f"Conversion failed ({exc_type}): {error}", level="error")
                tb_lines = traceback.format_exception(error.__class__, error, error.__traceback__)
                for line in tb_lines[:20]:
                    trimmed = line.rstrip()
                    if trimmed:
                        for snippet in trimmed.splitlines():
                            job.add_log(f"TRACE: {snippet}", level="debug")
            elif result is None or not result.success:
                reason = (result.error if result is not None else None) or "Conversion failed"
                job.mark_failed(reason)
                job.add_log(f"Conversion failed: {reason}", level="error")
            else:
                job.mark_completed()
                job.add_log("Conversion completed", level="success")
                delete_source = batch.delete_source
        self._emit_job_update(job)

        if delete_source:
            try:
                delete_source_file(job.input_path)
            except SourceDeletionError as exc:
                with self.lock:
                    job.add_log(str(exc), level="warning")
            else:
                with self.lock:
                    job.add_log(f"Deleted source file {job.input_path}", level="info")
            self._emit_job_update(job)

    def _emit_job_update(self, job: ConversionJob) -> None:
        if self.on_job_update is None:
            return
        try:
            self.on_job_update(job)
        except Exception:
            logger.exception("Job update callback failed for %s", job.id)
