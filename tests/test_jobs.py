from __future__ import annotations

import io

import pytest

from batchbrake.errors import InvalidTransitionError
from batchbrake.jobs import _JOB_LOGGER, ConversionJob, JobStatus, VideoInfo


def _job(tmp_path, name="clip.mp4"):
    return ConversionJob(input_path=str(tmp_path / name), output_path=str(tmp_path / "out.mp4"))


def test_new_job_is_not_started(tmp_path):
    job = _job(tmp_path)

    assert job.status is JobStatus.NOT_STARTED
    assert job.progress == 0.0
    assert job.error is None
    assert job.file_name == "clip.mp4"
    assert job.status.is_eligible


def test_status_values_are_stable_tags():
    assert [status.value for status in JobStatus] == [
        "not_started",
        "queued",
        "in_progress",
        "completed",
        "failed",
        "cancelled",
    ]


def test_full_lifecycle_and_retry(tmp_path):
    job = _job(tmp_path)

    job.mark_started()
    assert job.status is JobStatus.IN_PROGRESS
    assert job.started_at is not None

    job.mark_failed("exit 3")
    assert job.status is JobStatus.FAILED
    assert job.error == "exit 3"
    assert job.ended_at is not None

    job.reset()
    assert job.status is JobStatus.QUEUED
    assert job.error is None
    assert job.started_at is None

    job.mark_started()
    job.mark_completed()
    assert job.status is JobStatus.COMPLETED
    assert job.progress == 100.0


def test_illegal_transitions_raise(tmp_path):
    job = _job(tmp_path)

    with pytest.raises(InvalidTransitionError):
        job.mark_completed()
    with pytest.raises(InvalidTransitionError):
        job.reset()

    job.mark_started()
    with pytest.raises(InvalidTransitionError):
        job.mark_started()


def test_progress_only_increases_while_running(tmp_path):
    job = _job(tmp_path)
    assert job.update_progress(10.0) is False

    job.mark_started()
    assert job.update_progress(10.0) is True
    assert job.update_progress(5.0) is False
    assert job.update_progress(10.0) is False
    assert job.update_progress(42.5) is True
    assert job.progress == 42.5


def test_cancel_resets_progress(tmp_path):
    job = _job(tmp_path)
    job.mark_started()
    job.update_progress(60.0)

    job.mark_cancelled()

    assert job.status is JobStatus.CANCELLED
    assert job.progress == 0.0
    assert job.error is None


def test_failed_without_reason_gets_default_message(tmp_path):
    job = _job(tmp_path)
    job.mark_started()
    job.mark_failed("")

    assert job.error == "Conversion failed"


def test_video_info_round_trips_through_dict():
    info = VideoInfo(file_name="a.mkv", duration=61.5, resolution="1920x1080", codec="h264", file_size_bytes=2048)

    payload = info.as_dict()

    assert payload["fileSize"] == "2 KB"
    assert VideoInfo.from_dict(payload) == info
    assert VideoInfo.from_dict(None) is None


def test_job_add_log_emits_to_stream(tmp_path):
    job = _job(tmp_path)
    job.id = "job-test"

    captured_buffers = []
    for handler in list(_JOB_LOGGER.handlers):
        if not hasattr(handler, "setStream"):
            continue
        buffer = io.StringIO()
        original_stream = getattr(handler, "stream", None)
        handler.setStream(buffer)  # type: ignore[attr-defined]
        captured_buffers.append((handler, original_stream, buffer))

    assert captured_buffers, "Expected job logger to have stream handlers"

    try:
        job.add_log("Test log line", level="error")
        outputs = [buffer.getvalue() for _, _, buffer in captured_buffers]
    finally:
        for handler, original_stream, _ in captured_buffers:
            handler.setStream(original_stream)  # type: ignore[attr-defined]

    assert any("[job job-test] Test log line" in output for output in outputs)
    assert job.logs[-1].message == "Test log line"
    assert job.logs[-1].level == "error"


def test_job_add_log_handles_exception(tmp_path, capsys):
    job = _job(tmp_path)
    job.id = "job-fail-test"

    original_log = _JOB_LOGGER.log

    def side_effect(*args, **kwargs):
        raise RuntimeError("Logger exploded")

    _JOB_LOGGER.log = side_effect

    try:
        job.add_log("This should trigger fallback", level="info")
    finally:
        _JOB_LOGGER.log = original_log

    captured = capsys.readouterr()
    assert "Logging failed for job job-fail-test" in captured.err
    assert "Logger exploded" in captured.err
    assert job.logs[-1].message == "This should trigger fallback"


def test_timing_helpers_and_dict_view(tmp_path):
    job = _job(tmp_path)
    assert job.elapsed is None
    assert job.estimated_time_remaining is None

    job.mark_started()
    job.started_at -= 10
    job.update_progress(50.0)

    assert job.elapsed >= 10
    assert 5 <= job.estimated_time_remaining <= 15

    job.mark_completed()
    payload = job.as_dict()
    assert payload["status"] == "completed"
    assert payload["progress"] == 100.0
    assert job.estimated_time_remaining is None
