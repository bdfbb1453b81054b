# backend/sitelapse/jobs.py
import logging
import math
import os
from dataclasses import dataclass
from typing import List, Optional

from .archive import Archive, FrameIndexFile, build_archive
from .config import Settings
from .db import make_engine
from .encoder import ChunkedEncoder
from .errors import InsufficientFrames, JobBusy, NotFound, ValidationError
from .ffmpeg_utils import FfmpegRunner
from .filtergraph import RESOLUTIONS, clamp
from .frames import Frame, Tags, normalize_date, normalize_hour, normalize_variant, write_list_file
from .image_index import ImageIndex
from .models import KINDS, PHOTO, PROCESSING, READY, STARTING, VIDEO, Job, new_job_id
from .sampler import Sampler
from .scheduler import JobScheduler
from .store import RequestStore, SqlRequestStore

logger = logging.getLogger(__name__)

SPEED_FRAME_RATES = {"fast": 30, "regular": 15, "slow": 5}
MAX_FRAME_RATE = 120
WEEKLY_PREVIEW_FRAME_RATE = 2


@dataclass
class Selection:
    tags: Tags
    date1: str
    date2: str
    hour1: str = "00"
    hour2: str = "23"
    variant: str = "large"

    def normalized(self) -> "Selection":
        d1 = normalize_date(self.date1, "start date")
        d2 = normalize_date(self.date2, "end date")
        if d1 > d2:
            raise ValidationError(f"start date {d1} is after end date {d2}")
        h1 = normalize_hour(self.hour1, "start hour")
        h2 = normalize_hour(self.hour2, "end hour")
        if h1 > h2:
            raise ValidationError(f"start hour {h1} is after end hour {h2}")
        return Selection(self.tags, d1, d2, h1, h2, normalize_variant(self.variant))


@dataclass
class VideoEffects:
    duration: Optional[float] = None
    frame_rate: Optional[int] = None
    speed: Optional[str] = None
    resolution: str = "720"
    show_date: bool = False
    caption: str = ""
    logo_path: Optional[str] = None
    watermark_path: Optional[str] = None
    music: bool = False
    music_file: str = ""
    contrast: float = 1.0
    brightness: float = 0.0
    saturation: float = 1.0


@dataclass
class Requester:
    id: Optional[str] = None
    name: Optional[str] = None


@dataclass
class Submission:
    id: str
    matched_frame_count: int
    frame_rate: Optional[int] = None
    estimated_duration: Optional[int] = None

    def as_dict(self) -> dict:
        data = {"id": self.id, "matchedFrameCount": self.matched_frame_count}
        if self.frame_rate is not None:
            data["frameRate"] = self.frame_rate
            data["estimatedDuration"] = self.estimated_duration
        return data


def compute_frame_rate(count: int, duration=None, frame_rate=None, speed=None, default: int = 25) -> int:
    """Explicit rate wins, then a target duration, then a speed preset."""
    if frame_rate not in (None, ""):
        try:
            rate = int(frame_rate)
        except (TypeError, ValueError):
            raise ValidationError(f"invalid frame rate {frame_rate!r}")
        if not 1 <= rate <= MAX_FRAME_RATE:
            raise ValidationError(f"frame rate must be between 1 and {MAX_FRAME_RATE}")
        return rate
    if duration not in (None, ""):
        try:
            seconds = float(duration)
        except (TypeError, ValueError):
            raise ValidationError(f"invalid duration {duration!r}")
        if seconds <= 0:
            raise ValidationError("duration must be positive")
        return min(MAX_FRAME_RATE, max(1, math.ceil(count / seconds)))
    if speed:
        if speed not in SPEED_FRAME_RATES:
            raise ValidationError(f"invalid speed {speed!r}; expected one of {', '.join(SPEED_FRAME_RATES)}")
        return SPEED_FRAME_RATES[speed]
    return default


class JobService:
    """Front door for video/photo requests: resolve frames now, encode later."""

    def __init__(self, settings: Settings, archive: Archive, index: ImageIndex, store: RequestStore,
                 scheduler: JobScheduler):
        self.settings = settings
        self.archive = archive
        self.index = index
        self.sampler = Sampler(index)
        self.store = store
        self.scheduler = scheduler

    def _job_dir(self, tags: Tags) -> str:
        return os.path.join(self.settings.output_root, tags.owner, tags.collection, tags.device, "videos")

    def _resolve(self, selection: Selection) -> List[Frame]:
        frames = self.index.select(selection.tags, selection.date1, selection.date2,
                                   selection.hour1, selection.hour2, selection.variant)
        if not frames:
            raise NotFound("No pictures found for the specified date and hour range")
        return frames

    def _persist_list(self, job_id: str, selection: Selection, frames: List[Frame]) -> str:
        list_file = os.path.join(self._job_dir(selection.tags), f"image_list_{job_id}.txt")
        write_list_file(list_file, [self.archive.local_path(f) for f in frames])
        return list_file

    def _base_job(self, job_id: str, kind: str, selection: Selection, frames: List[Frame],
                  requester: Optional[Requester]) -> Job:
        requester = requester or Requester()
        return Job(
            id=job_id,
            kind=kind,
            owner=selection.tags.owner,
            collection=selection.tags.collection,
            device=selection.tags.device,
            variant=selection.variant,
            start_date=selection.date1,
            end_date=selection.date2,
            start_hour=selection.hour1,
            end_hour=selection.hour2,
            frame_count=len(frames),
            list_file=self._persist_list(job_id, selection, frames),
            requester_id=requester.id,
            requester_name=requester.name,
        )

    def submit_video(self, selection: Selection, effects: VideoEffects,
                     requester: Optional[Requester] = None) -> Submission:
        selection = selection.normalized()
        if effects.resolution not in RESOLUTIONS:
            raise ValidationError(f"invalid resolution {effects.resolution!r}; expected one of {', '.join(RESOLUTIONS)}")
        if effects.music and (not effects.music_file or os.path.basename(effects.music_file) != effects.music_file):
            raise ValidationError("background music needs a plain track file name")

        frames = self._resolve(selection)
        if len(frames) < 2:
            raise InsufficientFrames("Not enough images to generate a video.", found=len(frames))
        rate = compute_frame_rate(len(frames), effects.duration, effects.frame_rate, effects.speed,
                                  default=self.settings.default_frame_rate)
        return self._enqueue_video(selection, frames, effects, rate, requester)

    def submit_weekly_preview(self, tags: Tags, variant: str = "large",
                              requester: Optional[Requester] = None) -> Submission:
        """Queue the weekly noon frames as a short video job."""
        frames = self.sampler.weekly(tags, variant)
        selection = Selection(tags, frames[0].date, frames[-1].date, "12", "12", normalize_variant(variant))
        logger.info("Weekly preview for %s: %d frames", tags.slug, len(frames))
        return self._enqueue_video(selection, frames, VideoEffects(), WEEKLY_PREVIEW_FRAME_RATE, requester)

    def _enqueue_video(self, selection: Selection, frames: List[Frame], effects: VideoEffects, rate: int,
                       requester: Optional[Requester]) -> Submission:
        job_id = new_job_id()
        job = self._base_job(job_id, VIDEO, selection, frames, requester)
        job.frame_rate = rate
        job.resolution = effects.resolution
        job.show_date = bool(effects.show_date)
        job.caption = effects.caption or None
        job.logo_path = effects.logo_path
        job.watermark_path = effects.watermark_path
        job.music = bool(effects.music)
        job.music_file = effects.music_file or None
        job.contrast = clamp(effects.contrast, 0.0, 3.0, 1.0)
        job.brightness = clamp(effects.brightness, -1.0, 1.0, 0.0)
        job.saturation = clamp(effects.saturation, 0.0, 3.0, 1.0)

        self.scheduler.enqueue(job)
        return Submission(job_id, len(frames), frame_rate=rate, estimated_duration=round(len(frames) / rate))

    def submit_photo(self, selection: Selection, requester: Optional[Requester] = None) -> Submission:
        selection = selection.normalized()
        frames = self._resolve(selection)
        job_id = new_job_id()
        self.scheduler.enqueue(self._base_job(job_id, PHOTO, selection, frames, requester))
        return Submission(job_id, len(frames))

    def download_url(self, job: Job) -> Optional[str]:
        if job.status != READY:
            return None
        return f"{self.settings.public_base_url.rstrip('/')}/result/{job.id}"

    def job_record(self, job: Job) -> dict:
        record = job.to_record()
        record["downloadUrl"] = self.download_url(job)
        return record

    def list_jobs(self, kind: Optional[str] = None) -> List[dict]:
        if kind is not None and kind not in KINDS:
            raise ValidationError(f"invalid job kind {kind!r}")
        return [self.job_record(job) for job in self.store.list(kind=kind)]

    def get_job(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        return job

    def delete_job(self, job_id: str) -> bool:
        job = self.store.get(job_id)
        if job is None:
            return False
        if job.status in (STARTING, PROCESSING) or self.scheduler.current_job_id == job_id:
            raise JobBusy(f"Job {job_id} is {job.status}; wait until it finishes")
        for path in (job.list_file, job.result_path, job.logo_path, job.watermark_path):
            if path and os.path.exists(path):
                os.remove(path)
        deleted = self.store.delete(job_id)
        logger.info("Deleted %s job %s", job.kind, job_id)
        return deleted

    def frame_payload(self, frame: Optional[Frame]) -> Optional[dict]:
        if frame is None:
            return None
        return {"timestamp": frame.timestamp, "key": frame.key, "url": self.archive.url_for(frame)}


def build_service(settings: Settings, store: Optional[RequestStore] = None, archive: Optional[Archive] = None,
                  runner: Optional[FfmpegRunner] = None, executor=None) -> JobService:
    settings.ensure_dirs()
    archive = archive or build_archive(settings)
    index = ImageIndex(archive, FrameIndexFile(settings.index_dir))
    store = store or SqlRequestStore(make_engine(settings.database_url))
    encoder = ChunkedEncoder(
        runner or FfmpegRunner(settings.ffmpeg_bin, settings.ffprobe_bin),
        batch_size=settings.batch_size,
        font_file=settings.font_file,
        cleanup_on_failure=settings.cleanup_on_failure,
    )
    scheduler = JobScheduler(store, archive, encoder, music_dir=settings.music_dir, executor=executor)
    return JobService(settings, archive, index, store, scheduler)
