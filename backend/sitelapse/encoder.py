# backend/sitelapse/encoder.py
"""
Chunked time-lapse encoding.

Frames are encoded in fixed-size batches (0-80% of progress), the batch
videos are joined with a stream copy (80%), and a last pass applies colour
adjustment and optional background music (80-95%, 100% once the job is
marked ready). Any failing step aborts the whole encode.
"""
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import List, Optional

from .errors import EncodeFailure, InsufficientFrames
from .ffmpeg_utils import FfmpegRunner, build_batch_command, build_concat_command, build_effects_command
from .filtergraph import batch_graph, effects_graph
from .frames import timestamp_from_name, write_list_file

logger = logging.getLogger(__name__)

BATCH_SHARE = 80
EFFECTS_SHARE = 20
EFFECTS_CAP = 95


class ProgressReporter:
    """Receives progress updates; the scheduler's implementation writes them to the job record."""

    def report(self, progress: int, message: str):
        pass


@dataclass
class RenderPlan:
    job_id: str
    frame_paths: List[str]
    output_path: str
    work_dir: str
    frame_rate: int
    resolution: Optional[str] = "HD"
    show_date: bool = False
    caption: str = ""
    logo_path: Optional[str] = None
    watermark_path: Optional[str] = None
    music_path: Optional[str] = None
    contrast: float = 1.0
    brightness: float = 0.0
    saturation: float = 1.0


@dataclass
class EncodeResult:
    path: str
    size_bytes: int
    duration_seconds: float
    time_taken_seconds: float
    batch_count: int


class ChunkedEncoder:
    def __init__(self, runner: Optional[FfmpegRunner] = None, batch_size: int = 200,
                 font_file: str = "", cleanup_on_failure: bool = False):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.runner = runner or FfmpegRunner()
        self.batch_size = batch_size
        self.font_file = font_file
        self.cleanup_on_failure = cleanup_on_failure

    def plan_batches(self, paths: List[str]) -> List[List[str]]:
        return [paths[i:i + self.batch_size] for i in range(0, len(paths), self.batch_size)]

    def encode(self, plan: RenderPlan, reporter: Optional[ProgressReporter] = None) -> EncodeResult:
        reporter = reporter or ProgressReporter()
        started = time.monotonic()
        if len(plan.frame_paths) < 2:
            raise InsufficientFrames(f"a video needs at least 2 frames, got {len(plan.frame_paths)}",
                                     found=len(plan.frame_paths))

        missing = [p for p in plan.frame_paths if not os.path.exists(p)]
        if missing:
            # a dropped frame would shift every later frame's timing
            raise EncodeFailure("prepare", f"{len(missing)} frames missing, first: {missing[0]}")
        for label, asset in (("logo", plan.logo_path), ("watermark", plan.watermark_path)):
            if asset and not os.path.exists(asset):
                raise EncodeFailure("prepare", f"{label} image not found: {asset}")

        os.makedirs(plan.work_dir, exist_ok=True)
        scratch: List[str] = []
        try:
            batch_videos = self._encode_batches(plan, reporter, scratch)
            intermediate = self._concatenate(plan, batch_videos, reporter, scratch)
            self._apply_effects(plan, intermediate, reporter)
            os.remove(intermediate)
        except Exception:
            if self.cleanup_on_failure:
                self._remove(scratch)
            else:
                logger.info("Leaving %d scratch files of job %s for diagnosis", len(scratch), plan.job_id)
            raise

        info = self.runner.probe(plan.output_path)
        result = EncodeResult(
            path=plan.output_path,
            size_bytes=os.path.getsize(plan.output_path),
            duration_seconds=float(info.get("duration") or 0.0),
            time_taken_seconds=round(time.monotonic() - started, 3),
            batch_count=len(batch_videos),
        )
        logger.info("Video for job %s ready: %s (%d bytes, %.1fs)", plan.job_id, result.path,
                    result.size_bytes, result.duration_seconds)
        return result

    def _encode_batches(self, plan: RenderPlan, reporter: ProgressReporter, scratch: List[str]) -> List[str]:
        batches = self.plan_batches(plan.frame_paths)
        count = len(batches)
        total = len(plan.frame_paths)
        logo_input = 1 if plan.logo_path else None
        watermark_input = (2 if plan.logo_path else 1) if plan.watermark_path else None

        reporter.report(0, f"Processing batch 1 of {count} ({total} images)")
        outputs = []
        for index, batch in enumerate(batches):
            list_path = os.path.join(plan.work_dir, f"batch_list_{plan.job_id}_{index}.txt")
            video_path = os.path.join(plan.work_dir, f"batch_video_{plan.job_id}_{index}.mp4")
            write_list_file(list_path, batch)
            scratch += [list_path, video_path]

            graph = batch_graph(
                [timestamp_from_name(p) or "" for p in batch],
                resolution=plan.resolution,
                logo_input=logo_input,
                watermark_input=watermark_input,
                show_date=plan.show_date,
                caption=plan.caption,
                font_file=self.font_file,
            )
            args = build_batch_command(list_path, video_path, plan.frame_rate, graph,
                                       logo_path=plan.logo_path, watermark_path=plan.watermark_path)
            self.runner.run(args, stage=f"batch {index + 1}/{count}")

            os.remove(list_path)
            scratch.remove(list_path)
            outputs.append(video_path)
            logger.info("Processed batch %d/%d for job %s", index + 1, count, plan.job_id)
            reporter.report(math.floor((index + 1) / count * BATCH_SHARE),
                            f"Processed batch {index + 1} of {count} ({total} images)")
        return outputs

    def _concatenate(self, plan: RenderPlan, batch_videos: List[str], reporter: ProgressReporter,
                     scratch: List[str]) -> str:
        reporter.report(BATCH_SHARE, "Concatenating video segments...")
        list_path = os.path.join(plan.work_dir, f"concat_list_{plan.job_id}.txt")
        root, ext = os.path.splitext(plan.output_path)
        intermediate = f"{root}_no_audio{ext or '.mp4'}"
        write_list_file(list_path, batch_videos)
        scratch += [list_path, intermediate]

        self.runner.run(build_concat_command(list_path, intermediate), stage="concat")

        self._remove(batch_videos + [list_path])
        for path in batch_videos + [list_path]:
            scratch.remove(path)
        return intermediate

    def _apply_effects(self, plan: RenderPlan, intermediate: str, reporter: ProgressReporter):
        if plan.music_path and not os.path.exists(plan.music_path):
            raise EncodeFailure("effects", f"background track not found: {plan.music_path}")
        reporter.report(BATCH_SHARE, "Applying visual effects and audio...")

        last = [BATCH_SHARE]

        def on_percent(percent: float):
            value = min(EFFECTS_CAP, BATCH_SHARE + math.floor(percent / 100 * EFFECTS_SHARE))
            if value > last[0]:
                last[0] = value
                reporter.report(value, "Finalizing video...")

        graph = effects_graph(plan.contrast, plan.brightness, plan.saturation)
        args = build_effects_command(intermediate, plan.output_path, graph, music_path=plan.music_path)
        total_seconds = len(plan.frame_paths) / float(plan.frame_rate or 1)
        self.runner.run_with_progress(args, stage="effects", total_seconds=total_seconds, on_percent=on_percent)

    @staticmethod
    def _remove(paths: List[str]):
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
