# backend/sitelapse/ffmpeg_utils.py
import logging
import subprocess
from collections import deque
from typing import Callable, Dict, List, Optional

from .errors import EncodeFailure
from .filtergraph import FilterGraph

logger = logging.getLogger(__name__)

X264_OPTIONS = ["-c:v", "libx264", "-preset", "slow", "-crf", "18", "-pix_fmt", "yuv420p"]


def run_cmd(cmd: list):
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    return proc.returncode, proc.stdout, proc.stderr


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class FfmpegRunner:
    """Runs ffmpeg/ffprobe to completion; a non-zero exit becomes ``EncodeFailure``."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe"):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    def run(self, args: List[str], stage: str):
        cmd = [self.ffmpeg_bin, "-hide_banner", "-y"] + args
        logger.info("FFmpeg command for %s: %s", stage, subprocess.list2cmdline(cmd))
        code, _, stderr = run_cmd(cmd)
        if code != 0:
            logger.error("%s failed (rc=%d):\n%s", stage, code, _tail(stderr))
            raise EncodeFailure(stage, f"ffmpeg exited with {code}", _tail(stderr))

    def run_with_progress(self, args: List[str], stage: str, total_seconds: float,
                          on_percent: Optional[Callable[[float], None]] = None):
        """Like ``run`` but reports percent of ``total_seconds`` encoded, read from ``-progress``."""
        cmd = [self.ffmpeg_bin, "-hide_banner", "-y", "-nostats", "-progress", "pipe:1"] + args
        logger.info("FFmpeg command for %s: %s", stage, subprocess.list2cmdline(cmd))
        tail = deque(maxlen=20)
        with subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True) as proc:
            try:
                for line in proc.stdout:
                    line = line.strip()
                    if line.startswith("out_time_ms=") or line.startswith("out_time_us="):
                        if on_percent and total_seconds > 0:
                            try:
                                done = int(line.split("=", 1)[1]) / 1_000_000
                            except ValueError:
                                continue
                            on_percent(min(100.0, done / total_seconds * 100))
                    elif "=" not in line:
                        tail.append(line)
            except BaseException:
                proc.kill()
                raise
            code = proc.wait()
        if code != 0:
            logger.error("%s failed (rc=%d):\n%s", stage, code, "\n".join(tail))
            raise EncodeFailure(stage, f"ffmpeg exited with {code}", "\n".join(tail))

    def probe(self, path: str) -> Dict:
        return get_video_info(path, self.ffprobe_bin)


def get_video_info(path: str, ffprobe_bin: str = "ffprobe") -> Dict:
    """Return dict: {duration: float_seconds, width: int, height: int}"""
    # duration
    cmd_dur = [
        ffprobe_bin, "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        path
    ]
    _, out, _ = run_cmd(cmd_dur)
    try:
        duration = float(out.strip() or 0.0)
    except ValueError:
        duration = 0.0

    # widthxheight
    cmd_wh = [
        ffprobe_bin, "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height",
        "-of", "csv=p=0:s=x",
        path
    ]
    _, out2, _ = run_cmd(cmd_wh)
    wh = out2.strip()
    if 'x' in wh:
        width, height = map(int, wh.split('x')[:2])
    else:
        width = height = None

    return {"duration": duration, "width": width, "height": height}


def build_batch_command(list_path: str, output_path: str, frame_rate: int, graph: FilterGraph,
                        logo_path: Optional[str] = None, watermark_path: Optional[str] = None) -> List[str]:
    """
    Encode one batch of stills read through the concat demuxer.

    Overlay images become inputs 1 and 2 in the order logo, watermark;
    ``graph`` must have been built with the same input indexes.
    """
    args = ["-f", "concat", "-safe", "0", "-r", str(frame_rate), "-i", list_path]
    for extra in (logo_path, watermark_path):
        if extra:
            args += ["-i", extra]
    args += ["-filter_complex", graph.render(), "-map", f"[{graph.output}]", "-r", str(frame_rate)]
    args += X264_OPTIONS + [output_path]
    return args


def build_concat_command(list_path: str, output_path: str) -> List[str]:
    # stream copy: batches share codec parameters, so no re-encode
    return ["-f", "concat", "-safe", "0", "-i", list_path, "-c", "copy", output_path]


def build_effects_command(input_path: str, output_path: str, graph: FilterGraph,
                          music_path: Optional[str] = None) -> List[str]:
    args = ["-i", input_path]
    if music_path:
        args += ["-i", music_path]
    args += ["-filter_complex", graph.render(), "-map", f"[{graph.output}]"]
    if music_path:
        args += ["-map", "1:a", "-shortest"]
    args += X264_OPTIONS + [output_path]
    return args
