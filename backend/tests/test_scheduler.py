import threading

import pytest

from sitelapse.encoder import EncodeResult
from sitelapse.errors import EncodeFailure, JobBusy
from sitelapse.jobs import Selection, VideoEffects
from sitelapse.models import FAILED, PROCESSING, QUEUED, READY, STARTING
from sitelapse.packager import ArchivePackager


class GatedEncoder:
    """Holds every encode until the gate opens and records how many ran at once."""

    def __init__(self, order, fail_ids=()):
        self.order = order
        self.fail_ids = set(fail_ids)
        self.gate = threading.Event()
        self.started = threading.Event()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def encode(self, plan, reporter):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.order.append(plan.job_id)
        self.started.set()
        try:
            self.gate.wait(5)
            reporter.report(50, "Processed batch 1 of 2")
            if plan.job_id in self.fail_ids:
                raise EncodeFailure("batch 1/1", "ffmpeg exited with 1")
            return EncodeResult(plan.output_path, 0, 1.0, 0.1, 1)
        finally:
            with self._lock:
                self.active -= 1


class RecordingPackager(ArchivePackager):
    def __init__(self, order):
        super().__init__()
        self.order = order

    def package(self, paths, output_path):
        self.order.append(output_path)
        return super().package(paths, output_path)


@pytest.fixture
def order():
    return []


@pytest.fixture
def gated(service, order):
    encoder = GatedEncoder(order)
    service.scheduler.encoder = encoder
    service.scheduler.packager = RecordingPackager(order)
    return encoder


def submit_video(service, tags):
    return service.submit_video(Selection(tags, "20240101", "20240107", "08", "18"), VideoEffects()).id


def submit_photo(service, tags):
    return service.submit_photo(Selection(tags, "20240101", "20240107", "08", "18")).id


def test_video_runs_to_ready(service, example_frames):
    job_id = submit_video(service, example_frames)
    assert service.scheduler.wait_idle(5)
    job = service.get_job(job_id)
    assert job.status == READY
    assert job.progress == 100
    assert job.result_path.endswith(f"video_{job_id}.mp4")
    assert service.scheduler.encoder.runner.stages == ["batch 1/1", "concat", "effects"]


def test_photo_runs_to_ready(service, example_frames):
    job_id = submit_photo(service, example_frames)
    assert service.scheduler.wait_idle(5)
    job = service.get_job(job_id)
    assert job.status == READY
    assert job.result_path.endswith(f"photos_{job_id}.zip")


def test_one_job_at_a_time_videos_first(service, example_frames, gated, order):
    first = submit_video(service, example_frames)
    assert gated.started.wait(5)
    photo = submit_photo(service, example_frames)
    second = submit_video(service, example_frames)

    assert service.scheduler.busy
    assert service.get_job(first).status == STARTING
    assert service.get_job(photo).status == QUEUED
    assert service.get_job(second).status == QUEUED

    gated.gate.set()
    assert service.scheduler.wait_idle(5)

    assert order[:2] == [first, second]
    assert order[2].endswith(f"photos_{photo}.zip")
    assert gated.max_active == 1
    assert all(service.get_job(i).status == READY for i in (first, second, photo))


def test_failure_does_not_stall_the_queue(service, example_frames, gated):
    first = submit_video(service, example_frames)
    assert gated.started.wait(5)
    gated.fail_ids.add(first)
    second = submit_video(service, example_frames)
    gated.gate.set()
    assert service.scheduler.wait_idle(5)

    failed = service.get_job(first)
    assert failed.status == FAILED
    assert "ffmpeg exited with 1" in failed.error
    assert service.get_job(second).status == READY


def test_running_job_cannot_be_deleted(service, example_frames, gated):
    job_id = submit_video(service, example_frames)
    assert gated.started.wait(5)
    with pytest.raises(JobBusy):
        service.delete_job(job_id)
    gated.gate.set()
    assert service.scheduler.wait_idle(5)
    assert service.delete_job(job_id) is True


def test_recover_fails_interrupted_and_resumes(service, example_frames, gated):
    gated.gate.set()
    job_id = submit_video(service, example_frames)
    assert service.scheduler.wait_idle(5)
    service.store.update(job_id, status=PROCESSING, progress=40)

    assert service.scheduler.recover() == 1
    assert service.get_job(job_id).status == FAILED


def test_store_error_on_start_fails_the_job(service, example_frames, monkeypatch):
    update = service.store.update

    def flaky_update(job_id, **fields):
        if fields.get("status") == STARTING:
            raise RuntimeError("database is locked")
        return update(job_id, **fields)

    monkeypatch.setattr(service.store, "update", flaky_update)
    job_id = submit_video(service, example_frames)
    assert service.scheduler.wait_idle(5)

    job = service.get_job(job_id)
    assert job.status == FAILED
    assert job.error == "database is locked"
