from batchbrake.jobs import ConversionJob, JobStatus
from batchbrake.status import describe, summarize


def _job(name, status):
    job = ConversionJob(input_path=f"/videos/{name}", output_path=f"/out/{name}")
    job.status = status
    return job


def test_summarize_counts_each_status():
    jobs = [
        _job("a.mp4", JobStatus.COMPLETED),
        _job("b.mp4", JobStatus.IN_PROGRESS),
        _job("c.mp4", JobStatus.FAILED),
        _job("d.mp4", JobStatus.NOT_STARTED),
        _job("e.mp4", JobStatus.QUEUED),
        _job("f.mp4", JobStatus.CANCELLED),
    ]

    status = summarize(jobs, is_running=True)

    assert status.queue_count == 6
    assert status.processing_count == 1
    assert status.completed_count == 1
    assert status.failed_count == 1
    assert status.cancelled_count == 1
    assert status.waiting_count == 2
    assert status.can_start is False
    assert status.as_dict()["waiting_count"] == 2


def test_can_start_requires_idle_non_empty_queue():
    assert summarize([], is_running=False).can_start is False
    assert summarize([_job("a.mp4", JobStatus.COMPLETED)], is_running=False).can_start is True
    assert summarize([_job("a.mp4", JobStatus.NOT_STARTED)], is_running=True).can_start is False


def test_describe_texts():
    idle = summarize([_job("a.mp4", JobStatus.NOT_STARTED)], is_running=False)
    assert describe(idle) == "Ready"

    running = summarize(
        [
            _job("a.mp4", JobStatus.COMPLETED),
            _job("b.mp4", JobStatus.IN_PROGRESS),
            _job("c.mp4", JobStatus.NOT_STARTED),
            _job("d.mp4", JobStatus.NOT_STARTED),
            _job("e.mp4", JobStatus.NOT_STARTED),
        ],
        is_running=True,
    )
    assert describe(running) == "Converting 2 of 5"

    assert describe(idle, stopped=True) == "Conversion stopped"

    finished = summarize(
        [_job(f"{i}.mp4", JobStatus.COMPLETED) for i in range(4)] + [_job("x.mp4", JobStatus.FAILED)],
        is_running=False,
    )
    assert describe(finished) == "Finished: 4 completed, 1 failed"
