from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from batchbrake.errors import DuplicateJobError, PersistenceError
from batchbrake.jobs import ConversionJob, JobStatus, VideoInfo
from batchbrake.preferences import (
    DEFAULT_OUTPUT_TEMPLATE,
    MAX_PARALLEL_INSTANCES,
    MIN_PARALLEL_INSTANCES,
    _coerce_bool,
    _coerce_int,
)
from batchbrake.queue_store import QueueStore
from batchbrake.utils import get_session_path

logger = logging.getLogger(__name__)

SESSION_VERSION = 1

# Integer codes used by session files written before string tags.
_LEGACY_STATUS_CODES: List[JobStatus] = [
    JobStatus.NOT_STARTED,
    JobStatus.QUEUED,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
]

_STATUS_ALIASES: Dict[str, JobStatus] = {status.name.lower().replace("_", ""): status for status in JobStatus}


@dataclass
class SessionSettings:
    default_preset: str = ""
    default_output_path: str = DEFAULT_OUTPUT_TEMPLATE
    default_output_format: str = "mp4"
    parallel_instances: int = 2
    delete_source_after_conversion: bool = False


@dataclass
class SessionSnapshot:
    jobs: List[ConversionJob] = field(default_factory=list)
    settings: SessionSettings = field(default_factory=SessionSettings)
    last_saved: Optional[float] = None


def parse_status(value: Any) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Unknown conversion status: {value!r}")
    if isinstance(value, int):
        if 0 <= value < len(_LEGACY_STATUS_CODES):
            return _LEGACY_STATUS_CODES[value]
        raise ValueError(f"Unknown conversion status code: {value}")
    text = str(value or "").strip()
    if text.isdigit():
        return parse_status(int(text))
    try:
        return JobStatus(text)
    except ValueError:
        pass
    alias = _STATUS_ALIASES.get(text.lower().replace("_", "").replace(" ", ""))
    if alias is None:
        raise ValueError(f"Unknown conversion status: {value!r}")
    return alias


def _format_timestamp(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value).isoformat()


def _parse_timestamp(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    try:
        return datetime.fromisoformat(str(value)).timestamp()
    except ValueError:
        return None


def build_snapshot(jobs: Iterable[ConversionJob], settings: SessionSettings) -> SessionSnapshot:
    """Copy the persistable part of the queue; running jobs are left out."""
    saved = [replace(job, logs=[]) for job in jobs if job.status != JobStatus.IN_PROGRESS]
    return SessionSnapshot(jobs=saved, settings=replace(settings), last_saved=time.time())


def serialize_snapshot(snapshot: SessionSnapshot) -> Dict[str, Any]:
    videos = []
    for job in snapshot.jobs:
        videos.append(
            {
                "inputFilePath": job.input_path,
                "outputFilePath": job.output_path,
                "preset": job.preset,
                "conversionStatus": job.status.value,
                "videoInfo": job.video_info.as_dict() if job.video_info else None,
                "errorMessage": job.error if job.status == JobStatus.FAILED else None,
                "startTime": _format_timestamp(job.started_at),
                "endTime": _format_timestamp(job.ended_at),
            }
        )
    settings = snapshot.settings
    return {
        "version": SESSION_VERSION,
        "videos": videos,
        "defaultPreset": settings.default_preset,
        "defaultOutputPath": settings.default_output_path,
        "defaultOutputFormat": settings.default_output_format,
        "parallelInstances": settings.parallel_instances,
        "deleteSourceAfterConversion": settings.delete_source_after_conversion,
        "lastSaved": _format_timestamp(snapshot.last_saved),
    }


def deserialize_snapshot(payload: Any) -> SessionSnapshot:
    if not isinstance(payload, dict):
        raise PersistenceError("Session data is not a JSON object")
    videos = payload.get("videos") or []
    if not isinstance(videos, list):
        raise PersistenceError("Session 'videos' must be a list")

    jobs: List[ConversionJob] = []
    for entry in videos:
        if not isinstance(entry, dict):
            logger.warning("Skipping malformed session entry: %r", entry)
            continue
        input_path = str(entry.get("inputFilePath") or "").strip()
        if not input_path:
            continue
        try:
            status = parse_status(entry.get("conversionStatus", JobStatus.NOT_STARTED.value))
        except ValueError as exc:
            logger.warning("Resetting status of %s: %s", input_path, exc)
            status = JobStatus.NOT_STARTED
        error = entry.get("errorMessage") if status == JobStatus.FAILED else None
        jobs.append(
            ConversionJob(
                input_path=input_path,
                output_path=str(entry.get("outputFilePath") or ""),
                preset=entry.get("preset") or None,
                status=status,
                progress=100.0 if status == JobStatus.COMPLETED else 0.0,
                error=str(error) if error else None,
                started_at=_parse_timestamp(entry.get("startTime")),
                ended_at=_parse_timestamp(entry.get("endTime")),
                video_info=VideoInfo.from_dict(entry.get("videoInfo")),
            )
        )

    defaults = SessionSettings()
    settings = SessionSettings(
        default_preset=str(payload.get("defaultPreset") or ""),
        default_output_path=str(payload.get("defaultOutputPath") or defaults.default_output_path),
        default_output_format=str(payload.get("defaultOutputFormat") or defaults.default_output_format),
        parallel_instances=_coerce_int(
            payload.get("parallelInstances"),
            defaults.parallel_instances,
            minimum=MIN_PARALLEL_INSTANCES,
            maximum=MAX_PARALLEL_INSTANCES,
        ),
        delete_source_after_conversion=_coerce_bool(
            payload.get("deleteSourceAfterConversion"),
            defaults.delete_source_after_conversion,
        ),
    )
    return SessionSnapshot(jobs=jobs, settings=settings, last_saved=_parse_timestamp(payload.get("lastSaved")))


def apply_snapshot(snapshot: SessionSnapshot, queue: QueueStore) -> List[ConversionJob]:
    """Re-create the saved jobs whose input files still exist, in saved order."""
    restored: List[ConversionJob] = []
    for saved in snapshot.jobs:
        if saved.status == JobStatus.IN_PROGRESS:
            continue
        if not os.path.isfile(saved.input_path):
            logger.info("Skipping missing file from previous session: %s", saved.input_path)
            continue
        job = ConversionJob(
            input_path=saved.input_path,
            output_path=saved.output_path,
            preset=saved.preset,
            status=saved.status,
            progress=saved.progress,
            error=saved.error if saved.status == JobStatus.FAILED else None,
            started_at=saved.started_at,
            ended_at=saved.ended_at,
            video_info=saved.video_info,
        )
        try:
            restored.append(queue.insert(job))
        except DuplicateJobError:
            continue
    return restored


class SessionStore:
    """Reads and writes ``session.json``."""

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = path

    @property
    def path(self) -> str:
        if self._path is None:
            self._path = get_session_path()
        return self._path

    def save(self, jobs: Iterable[ConversionJob], settings: SessionSettings) -> bool:
        return self.save_snapshot(build_snapshot(jobs, settings))

    def save_snapshot(self, snapshot: SessionSnapshot) -> bool:
        tmp_path = f"{self.path}.tmp"
        try:
            payload = serialize_snapshot(snapshot)
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, self.path)
        except Exception as exc:
            logger.warning("Failed to save session to %s: %s", self.path, exc)
            try:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            except OSError:
                pass
            return False
        return True

    def load(self) -> Optional[SessionSnapshot]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Could not read session file {self.path}: {exc}") from exc
        return deserialize_snapshot(payload)

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Failed to clear session %s: %s", self.path, exc)


class SessionAutosaver:
    """Background thread that coalesces save requests.

    ``request`` never blocks; several requests arriving within ``delay``
    seconds result in one save.
    """

    def __init__(self, save_callback: Callable[[], bool], *, delay: float = 0.25) -> None:
        self._save_callback = save_callback
        self._delay = delay
        self._wake_event = threading.Event()
        self._stop_event = threading.Event()
        self._save_lock = threading.Lock()
        self._thread_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def _ensure_thread(self) -> None:
        with self._thread_lock:
            if self._stop_event.is_set():
                return
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._loop, name="batchbrake-autosave", daemon=True)
                self._thread.start()

    def request(self) -> None:
        self._ensure_thread()
        self._wake_event.set()

    def flush(self) -> bool:
        self._wake_event.clear()
        return self._save()

    def shutdown(self, *, flush: bool = True) -> None:
        self._stop_event.set()
        self._wake_event.set()
        with self._thread_lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout=5.0)
        if flush:
            self._save()

    def _save(self) -> bool:
        with self._save_lock:
            try:
                return bool(self._save_callback())
            except Exception:
                logger.exception("Session autosave failed")
                return False

    def _loop(self) -> None:
        while True:
            self._wake_event.wait()
            if self._stop_event.is_set():
                return
            self._stop_event.wait(self._delay)
            self._wake_event.clear()
            if self._stop_event.is_set():
                return
            self._save()
