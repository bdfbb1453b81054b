# backend/sitelapse/scheduler.py
import logging
import os
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from .archive import Archive
from .encoder import ChunkedEncoder, ProgressReporter, RenderPlan
from .frames import parse_list_file
from .models import FAILED, PHOTO, PROCESSING, QUEUED, READY, STARTING, VIDEO, Job
from .packager import ArchivePackager
from .store import RequestStore

logger = logging.getLogger(__name__)


class StoreProgress(ProgressReporter):
    def __init__(self, store: RequestStore, job_id: str):
        self.store = store
        self.job_id = job_id

    def report(self, progress: int, message: str):
        self.store.update(self.job_id, status=PROCESSING, progress=int(progress), progress_message=message)


class JobScheduler:
    """
    Runs queued jobs one at a time, videos before photos.

    The busy guard is a lock taken without blocking: whoever takes it picks
    the next job and hands it to the single worker thread, which releases it
    when the job reaches a terminal state and then drains again.
    """

    def __init__(self, store: RequestStore, archive: Archive, encoder: ChunkedEncoder,
                 packager: Optional[ArchivePackager] = None, music_dir: str = "", executor=None):
        self.store = store
        self.archive = archive
        self.encoder = encoder
        self.packager = packager or ArchivePackager()
        self.music_dir = music_dir
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="sitelapse-job")
        self._busy = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self.current_job_id: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def enqueue(self, job: Job) -> Job:
        job.status = QUEUED
        job.progress = 0
        job.progress_message = "Waiting in queue..."
        saved = self.store.add(job)
        logger.info("Queued %s job %s (%d frames)", saved.kind, saved.id, saved.frame_count)
        self.drain()
        return saved

    def next_job(self) -> Optional[Job]:
        return self.store.next_queued(VIDEO) or self.store.next_queued(PHOTO)

    def drain(self) -> bool:
        """Dispatch the next queued job unless one is already running; True if one was dispatched."""
        while True:
            if not self._busy.acquire(blocking=False):
                return False
            try:
                job = self.next_job()
                if job is not None:
                    self._idle.clear()
                    self.current_job_id = job.id
                    self._executor.submit(self._run_then_drain, job.id)
                    return True
                self._idle.set()
            except BaseException:
                self.current_job_id = None
                self._idle.set()
                self._busy.release()
                raise
            self._busy.release()
            # a job enqueued while we held the guard found us busy; look once more
            if self.next_job() is None:
                logger.debug("No queued requests found.")
                return False

    def _run_then_drain(self, job_id: str):
        try:
            self.run(job_id)
        finally:
            self.current_job_id = None
            self._busy.release()
        self.drain()

    def run(self, job_id: str):
        job = self.store.get(job_id)
        if job is None:
            logger.warning("Job %s disappeared before it could start", job_id)
            return

        logger.info("Starting %s generation for request ID: %s", job.kind, job.id)
        try:
            self.store.update(job.id, status=STARTING, progress=0,
                              progress_message=f"Initializing {job.kind} generation...")
            if job.kind == VIDEO:
                self._run_video(job)
            elif job.kind == PHOTO:
                self._run_photo(job)
            else:
                raise ValueError(f"Unknown request type: {job.kind}")
        except Exception as e:
            logger.error("%s generation failed for request ID %s: %s\n%s", job.kind.capitalize(), job.id, e,
                         traceback.format_exc())
            self.store.update(job.id, status=FAILED,
                              progress_message=f"{job.kind.capitalize()} generation failed", error=str(e))

    def _frame_paths(self, job: Job, strict: bool):
        if not job.list_file or not os.path.exists(job.list_file):
            raise FileNotFoundError(f"List file not found: {job.list_file}")
        paths = parse_list_file(job.list_file)
        self.archive.fetch_missing(paths, strict=strict)
        return paths

    def _run_video(self, job: Job):
        paths = self._frame_paths(job, strict=True)
        out_dir = os.path.dirname(job.list_file)
        music_path = os.path.join(self.music_dir, job.music_file) if job.music and job.music_file else None
        plan = RenderPlan(
            job_id=job.id,
            frame_paths=paths,
            output_path=os.path.join(out_dir, f"video_{job.id}.mp4"),
            work_dir=out_dir,
            frame_rate=job.frame_rate or 25,
            resolution=job.resolution,
            show_date=job.show_date,
            caption=job.caption or "",
            logo_path=job.logo_path,
            watermark_path=job.watermark_path,
            music_path=music_path,
            contrast=job.contrast,
            brightness=job.brightness,
            saturation=job.saturation,
        )
        result = self.encoder.encode(plan, StoreProgress(self.store, job.id))
        logger.info("Video generation completed for request ID: %s", job.id)
        self.store.update(
            job.id,
            status=READY,
            progress=100,
            progress_message="Video generation completed",
            result_path=result.path,
            size_bytes=result.size_bytes,
            duration_seconds=result.duration_seconds,
            time_taken_seconds=result.time_taken_seconds,
        )
        for path in (job.list_file, job.logo_path, job.watermark_path):
            if path and os.path.exists(path):
                os.remove(path)

    def _run_photo(self, job: Job):
        paths = self._frame_paths(job, strict=False)
        self.store.update(job.id, status=PROCESSING, progress_message=f"Packing {len(paths)} photos...")
        out_path = os.path.join(os.path.dirname(job.list_file), f"photos_{job.id}.zip")
        result = self.packager.package(paths, out_path)
        message = "Photo archive completed"
        if result.skipped:
            message += f" ({result.skipped} missing files skipped)"
        self.store.update(job.id, status=READY, progress=100, progress_message=message,
                          result_path=result.path, size_bytes=result.size_bytes)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def recover(self) -> int:
        """Fail jobs left mid-flight by a previous process, then resume the queue."""
        count = self.store.fail_interrupted()
        self.drain()
        return count

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
