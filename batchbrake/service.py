from __future__ import annotations

import logging
import os
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional

from batchbrake.converter import Converter
from batchbrake.errors import ConverterUnavailableError, DuplicateJobError, PersistenceError, QueueBusyError
from batchbrake.handbrake import HandBrakeConfig, HandBrakeConverter
from batchbrake.jobs import ConversionJob, JobStatus, VideoInfo, normalize_path
from batchbrake.preferences import (
    MAX_PARALLEL_INSTANCES,
    Preferences,
    load_preferences,
    resolve_output_path,
)
from batchbrake.probe import FFmpegProbe
from batchbrake.queue_store import QueueStore
from batchbrake.scheduler import Scheduler
from batchbrake.session import (
    SessionAutosaver,
    SessionSettings,
    SessionStore,
    apply_snapshot,
    build_snapshot,
)
from batchbrake.status import QueueStatus, describe, summarize

logger = logging.getLogger(__name__)

ServiceListener = Callable[[Optional[ConversionJob], QueueStatus], None]
ActivityListener = Callable[[str], None]


class ActivityLog:
    """Bounded, append-only list of ``[HH:MM:SS] message`` lines."""

    def __init__(self, max_lines: int = 1000) -> None:
        self._lines: Deque[str] = deque(maxlen=max(1, int(max_lines)))
        self._lock = threading.Lock()
        self._listeners: List[ActivityListener] = []

    def append(self, message: str) -> str:
        line = f"[{datetime.now():%H:%M:%S}] {message}"
        with self._lock:
            self._lines.append(line)
            listeners = list(self._listeners)
        logger.info(message)
        for listener in listeners:
            try:
                listener(line)
            except Exception:
                logger.exception("Activity listener failed")
        return line

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def subscribe(self, callback: ActivityListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


def _settings_from_preferences(prefs: Preferences) -> SessionSettings:
    return SessionSettings(
        default_preset=prefs.default_preset,
        default_output_path=prefs.default_output_path,
        default_output_format=prefs.default_output_format,
        parallel_instances=prefs.default_parallel_instances,
        delete_source_after_conversion=prefs.delete_source_after_conversion,
    )


def _first_line(text: Optional[str]) -> str:
    if not text:
        return ""
    return text.strip().splitlines()[0] if text.strip() else ""


class BatchService:
    """Host-facing facade over the queue, scheduler and session store."""

    def __init__(
        self,
        converter: Converter,
        *,
        session_store: Optional[SessionStore] = None,
        settings: Optional[SessionSettings] = None,
        preferences: Optional[Preferences] = None,
        prober: Optional[FFmpegProbe] = None,
        autosave: bool = True,
        max_log_lines: Optional[int] = None,
    ) -> None:
        self.preferences = preferences or Preferences()
        self.settings = settings or _settings_from_preferences(self.preferences)
        self._lock = threading.RLock()
        self.queue = QueueStore(self._lock)
        self.scheduler = Scheduler(
            converter,
            lock=self._lock,
            on_job_update=self._on_job_update,
            on_batch_finished=self._on_batch_finished,
        )
        self.activity = ActivityLog(max_log_lines or self.preferences.max_log_lines)
        self._session_store = session_store
        self._prober = prober
        self._listeners: List[ServiceListener] = []
        self._last_status: Dict[str, JobStatus] = {}
        self._stopped = False
        self._status = summarize([], False)
        self._autosaver: Optional[SessionAutosaver] = None
        if session_store is not None and autosave:
            self._autosaver = SessionAutosaver(self.save_session)
        self.queue.subscribe(self._on_queue_changed)

    # Observation --------------------------------------------------------
    @property
    def status(self) -> QueueStatus:
        with self._lock:
            return self._status

    @property
    def status_text(self) -> str:
        with self._lock:
            return describe(self._status, stopped=self._stopped)

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running

    def jobs(self) -> List[ConversionJob]:
        return self.queue.jobs()

    def log_lines(self) -> List[str]:
        return self.activity.lines()

    def subscribe(self, callback: ServiceListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def _refresh_status(self, job: Optional[ConversionJob] = None) -> QueueStatus:
        with self._lock:
            status = summarize(self.queue.jobs(), self.scheduler.is_running)
            self._status = status
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(job, status)
            except Exception:
                logger.exception("Status listener failed")
        return status

    def _request_save(self) -> None:
        if self._autosaver is not None:
            self._autosaver.request()

    # Queue operations ---------------------------------------------------
    def _output_path_for(self, input_path: str) -> str:
        output = resolve_output_path(
            self.settings.default_output_path,
            input_path,
            self.settings.default_output_format,
        )
        if normalize_path(output) == normalize_path(input_path):
            root, ext = os.path.splitext(output)
            output = f"{root}_converted{ext}"
        return output

    def _probe(self, input_path: str) -> Optional[VideoInfo]:
        if self._prober is None:
            return None
        try:
            return self._prober.probe(input_path)
        except Exception as exc:
            logger.warning("Probe failed for %s: %s", input_path, exc)
            return None

    def add_job(
        self,
        path: str,
        *,
        preset: Optional[str] = None,
        output_path: Optional[str] = None,
    ) -> Optional[ConversionJob]:
        input_path = os.path.abspath(os.path.expanduser(str(path)))
        if self.queue.find(input_path) is not None:
            self.activity.append(f"Already in queue: {os.path.basename(input_path)}")
            return None
        video_info = self._probe(input_path)
        try:
            job = self.queue.add(
                input_path,
                output_path=output_path or self._output_path_for(input_path),
                preset=preset or self.settings.default_preset or None,
                video_info=video_info,
            )
        except DuplicateJobError:
            self.activity.append(f"Already in queue: {os.path.basename(input_path)}")
            return None
        with self._lock:
            self._last_status[job.id] = job.status
            job.add_log(f"Added to queue as {job.output_path}", level="debug")
        self.activity.append(f"Added: {job.file_name}")
        return job

    def add_jobs(self, paths: Iterable[str], *, preset: Optional[str] = None) -> List[ConversionJob]:
        added: List[ConversionJob] = []
        for path in paths:
            job = self.add_job(path, preset=preset)
            if job is not None:
                added.append(job)
        return added

    def remove_job(self, job: ConversionJob) -> bool:
        with self._lock:
            current = self.queue.find(job.input_path)
            if current is None or current.id != job.id:
                return False
            if current.status == JobStatus.IN_PROGRESS:
                raise QueueBusyError(f"{current.file_name} is converting; stop the batch first")
            self.scheduler.discard(current)
        removed = self.queue.remove(job)
        if removed:
            with self._lock:
                self._last_status.pop(job.id, None)
            self.activity.append(f"Removed: {job.file_name}")
        return removed

    def clear_completed(self) -> int:
        removed = self.queue.clear_completed()
        if removed:
            self.activity.append(f"Cleared {removed} completed videos from queue")
        return removed

    def clear_all(self) -> int:
        if self.scheduler.is_running:
            raise QueueBusyError("Cannot clear the queue while a batch is running; stop it first")
        removed = self.queue.clear_all()
        with self._lock:
            self._last_status.clear()
            self._stopped = False
        if removed:
            self.activity.append(f"Cleared {removed} videos from queue")
        self._refresh_status()
        return removed

    def reset_job(self, job: ConversionJob) -> None:
        with self._lock:
            job.reset()
            job.add_log("Queued for retry", level="info")
            self._last_status[job.id] = job.status
        self.activity.append(f"Queued for retry: {job.file_name}")
        self._refresh_status(job)
        self._request_save()

    def set_parallelism(self, value: int) -> int:
        number = int(value)
        if number < 1:
            raise ValueError("parallelism must be at least 1")
        number = min(number, MAX_PARALLEL_INSTANCES)
        with self._lock:
            self.settings.parallel_instances = number
        self.activity.append(f"Parallel instances set to {number}")
        self._request_save()
        return number

    # Batch control ------------------------------------------------------
    def start(self) -> int:
        if self.scheduler.is_running:
            self.activity.append("Conversion is already running")
            return 0
        try:
            count = self.scheduler.start(
                self.queue.jobs(),
                self.settings.parallel_instances,
                delete_source=self.settings.delete_source_after_conversion,
            )
        except ConverterUnavailableError as exc:
            self.activity.append(f"Error: {exc}")
            raise
        if count == 0:
            self.activity.append("No videos to convert")
            return 0
        with self._lock:
            self._stopped = False
        self.activity.append(
            f"Starting conversion of {count} video(s) with {self.settings.parallel_instances} parallel instance(s)"
        )
        self._refresh_status()
        return count

    def stop(self) -> List[ConversionJob]:
        if not self.scheduler.is_running:
            return []
        with self._lock:
            self._stopped = True
        cancelled = self.scheduler.stop()
        self.activity.append("Conversion stopped by user")
        self._refresh_status()
        self._request_save()
        return cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.scheduler.wait(timeout)

    # Session ------------------------------------------------------------
    def save_session(self) -> bool:
        if self._session_store is None:
            return False
        with self._lock:
            snapshot = build_snapshot(self.queue.jobs(), self.settings)
        return self._session_store.save_snapshot(snapshot)

    def restore_session(self) -> List[ConversionJob]:
        if self._session_store is None:
            return []
        try:
            snapshot = self._session_store.load()
        except PersistenceError as exc:
            logger.warning("%s", exc)
            self.activity.append("Could not restore previous session")
            return []
        if snapshot is None:
            return []
        with self._lock:
            self.settings = snapshot.settings
        restored = apply_snapshot(snapshot, self.queue)
        with self._lock:
            for job in restored:
                self._last_status[job.id] = job.status
        if restored:
            self.activity.append(f"Restored {len(restored)} video(s) from previous session")
        return restored

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        if self.scheduler.is_running:
            self.stop()
        self.scheduler.wait(timeout)
        if self._autosaver is not None:
            self._autosaver.shutdown(flush=True)

    # Callbacks ----------------------------------------------------------
    def _on_queue_changed(self) -> None:
        self._refresh_status()
        self._request_save()

    def _on_job_update(self, job: ConversionJob) -> None:
        with self._lock:
            previous = self._last_status.get(job.id)
            current = job.status
            self._last_status[job.id] = current
            error = job.error
        if previous != current:
            self._log_transition(job, current, error)
        self._refresh_status(job)
        if previous != current and current.is_terminal:
            self._request_save()

    def _log_transition(self, job: ConversionJob, status: JobStatus, error: Optional[str]) -> None:
        if status == JobStatus.IN_PROGRESS:
            self.activity.append(f"Started: {job.file_name}")
        elif status == JobStatus.COMPLETED:
            self.activity.append(f"Completed: {job.file_name}")
        elif status == JobStatus.FAILED:
            self.activity.append(f"Failed: {job.file_name} ({_first_line(error) or 'unknown error'})")
        elif status == JobStatus.CANCELLED:
            self.activity.append(f"Cancelled: {job.file_name}")

    def _on_batch_finished(self) -> None:
        status = self._refresh_status()
        self.activity.append(describe(status))
        self._request_save()


def build_service(
    preferences: Optional[Preferences] = None,
    *,
    session_path: Optional[str] = None,
    converter: Optional[Converter] = None,
    autosave: Optional[bool] = None,
) -> BatchService:
    prefs = preferences or load_preferences()
    if converter is None:
        converter = HandBrakeConverter(
            HandBrakeConfig(
                cli_path=prefs.handbrake_cli_path,
                preset_files=tuple(prefs.preset_files),
                additional_arguments=prefs.additional_arguments,
            )
        )
    prober = FFmpegProbe(prefs.ffmpeg_path, use_static_ffmpeg=prefs.use_static_ffmpeg)
    return BatchService(
        converter,
        session_store=SessionStore(session_path),
        preferences=prefs,
        prober=prober,
        autosave=prefs.auto_save_session if autosave is None else autosave,
    )
