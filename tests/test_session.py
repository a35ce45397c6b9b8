from __future__ import annotations

import json
import os

import pytest

from batchbrake.errors import PersistenceError
from batchbrake.jobs import JobStatus, VideoInfo
from batchbrake.queue_store import QueueStore
from batchbrake.session import (
    SessionAutosaver,
    SessionSettings,
    SessionStore,
    apply_snapshot,
    deserialize_snapshot,
    parse_status,
)
from tests.fakes import wait_until


def test_save_skips_in_progress_and_reload_preserves_status(tmp_path, make_videos):
    store = QueueStore()
    v1, v2, v3 = (store.add(path) for path in make_videos("v1.mp4", "v2.mp4", "v3.mp4"))
    v2.mark_started()
    v3.mark_started()
    v3.mark_completed()
    sessions = SessionStore(str(tmp_path / "session.json"))

    assert sessions.save(store.jobs(), SessionSettings(parallel_instances=3)) is True

    snapshot = sessions.load()
    assert snapshot is not None
    assert [job.file_name for job in snapshot.jobs] == ["v1.mp4", "v3.mp4"]
    assert snapshot.settings.parallel_instances == 3

    restored_queue = QueueStore()
    restored = apply_snapshot(snapshot, restored_queue)
    assert [(job.file_name, job.status) for job in restored] == [
        ("v1.mp4", JobStatus.NOT_STARTED),
        ("v3.mp4", JobStatus.COMPLETED),
    ]
    assert [job.index for job in restored_queue.jobs()] == [0, 1]
    assert restored[0].id != v1.id


def test_saved_file_uses_camel_case_keys_and_status_tags(tmp_path, make_videos):
    store = QueueStore()
    (job,) = (store.add(path) for path in make_videos("a.mp4"))
    job.video_info = VideoInfo(file_name="a.mp4", duration=12.0, resolution="1280x720", codec="h264")
    job.mark_started()
    job.mark_failed("exit 1")
    path = tmp_path / "session.json"

    SessionStore(str(path)).save(store.jobs(), SessionSettings())

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert payload["parallelInstances"] == 2
    video = payload["videos"][0]
    assert video["conversionStatus"] == "failed"
    assert video["errorMessage"] == "exit 1"
    assert video["videoInfo"]["resolution"] == "1280x720"
    assert video["startTime"] is not None
    assert not (tmp_path / "session.json.tmp").exists()


def test_apply_drops_missing_files_and_duplicates(tmp_path, make_videos):
    store = QueueStore()
    a, b = (store.add(path) for path in make_videos("a.mp4", "b.mp4"))
    sessions = SessionStore(str(tmp_path / "session.json"))
    sessions.save(store.jobs(), SessionSettings())
    os.remove(b.input_path)

    target = QueueStore()
    target.add(a.input_path)
    restored = apply_snapshot(sessions.load(), target)

    assert restored == []
    assert len(target) == 1


def test_load_missing_file_returns_none(tmp_path):
    assert SessionStore(str(tmp_path / "nope.json")).load() is None


def test_load_corrupt_file_raises_persistence_error(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError):
        SessionStore(str(path)).load()


def test_save_failure_is_reported_not_raised(tmp_path, make_videos):
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    store = QueueStore()
    store.add(make_videos("a.mp4")[0])

    assert SessionStore(str(blocker / "session.json")).save(store.jobs(), SessionSettings()) is False


def test_legacy_status_names_and_codes_are_accepted(tmp_path):
    payload = {
        "videos": [
            {"inputFilePath": "/v/a.mp4", "outputFilePath": "/o/a.mp4", "conversionStatus": "Completed"},
            {"inputFilePath": "/v/b.mp4", "outputFilePath": "/o/b.mp4", "conversionStatus": 4, "errorMessage": "x"},
            {"inputFilePath": "/v/c.mp4", "outputFilePath": "/o/c.mp4", "conversionStatus": "NotStarted"},
            {"inputFilePath": "/v/d.mp4", "outputFilePath": "/o/d.mp4", "conversionStatus": "Cancelled", "errorMessage": "stale"},
            {"inputFilePath": "/v/e.mp4", "outputFilePath": "/o/e.mp4", "conversionStatus": "Bogus"},
        ],
        "parallelInstances": "4",
        "defaultOutputPath": "$(Folder)\\$(FileName)_conv.$(Ext)",
    }

    snapshot = deserialize_snapshot(payload)

    assert [job.status for job in snapshot.jobs] == [
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.NOT_STARTED,
        JobStatus.CANCELLED,
        JobStatus.NOT_STARTED,
    ]
    assert snapshot.jobs[1].error == "x"
    assert snapshot.jobs[3].error is None
    assert snapshot.settings.parallel_instances == 4
    assert snapshot.settings.default_output_path == "$(Folder)\\$(FileName)_conv.$(Ext)"


def test_parse_status_variants():
    assert parse_status("in_progress") is JobStatus.IN_PROGRESS
    assert parse_status("InProgress") is JobStatus.IN_PROGRESS
    assert parse_status("2") is JobStatus.IN_PROGRESS
    with pytest.raises(ValueError):
        parse_status(9)


def test_clear_removes_session_file(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{}", encoding="utf-8")
    sessions = SessionStore(str(path))

    sessions.clear()
    sessions.clear()

    assert not path.exists()


def test_default_path_follows_settings_dir(tmp_path):
    sessions = SessionStore()

    assert sessions.path == os.path.join(str(tmp_path / "settings"), "session.json")


def test_autosaver_coalesces_requests():
    saves = []
    autosaver = SessionAutosaver(lambda: saves.append(True) or True, delay=0.05)

    for _ in range(10):
        autosaver.request()

    assert wait_until(lambda: len(saves) >= 1)
    autosaver.shutdown(flush=False)
    assert 1 <= len(saves) < 10


def test_autosaver_shutdown_flushes():
    saves = []
    autosaver = SessionAutosaver(lambda: saves.append(True) or True, delay=10)
    autosaver.request()

    autosaver.shutdown()

    assert saves == [True]


def test_settings_are_coerced_like_preferences():
    snapshot = deserialize_snapshot(
        {"videos": [], "deleteSourceAfterConversion": "false", "parallelInstances": 500}
    )

    assert snapshot.settings.delete_source_after_conversion is False
    assert snapshot.settings.parallel_instances == 10

    snapshot = deserialize_snapshot({"videos": [], "deleteSourceAfterConversion": "yes", "parallelInstances": "0"})

    assert snapshot.settings.delete_source_after_conversion is True
    assert snapshot.settings.parallel_instances == 1
