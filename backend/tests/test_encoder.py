import os

import pytest

from sitelapse.encoder import ChunkedEncoder, ProgressReporter, RenderPlan
from sitelapse.errors import EncodeFailure, InsufficientFrames


class RecordingReporter(ProgressReporter):
    def __init__(self):
        self.values = []

    def report(self, progress, message):
        self.values.append(progress)


@pytest.fixture
def frame_paths(tmp_path):
    folder = tmp_path / "frames"
    folder.mkdir()
    paths = []
    for i in range(450):
        path = folder / f"202401{1 + i // 100:02d}{i % 24:02d}{i % 60:02d}00.jpg"
        path.write_bytes(b"jpeg")
        paths.append(str(path))
    return sorted(set(paths))


def make_plan(tmp_path, paths, **kwargs):
    work = tmp_path / "videos"
    return RenderPlan(job_id="job1", frame_paths=paths, output_path=str(work / "video_job1.mp4"),
                     work_dir=str(work), frame_rate=25, **kwargs)


def scratch_files(tmp_path):
    return [n for n in os.listdir(tmp_path / "videos") if n != "video_job1.mp4"]


def test_batches_concat_then_effects(tmp_path, frame_paths, make_runner):
    runner = make_runner()
    reporter = RecordingReporter()
    encoder = ChunkedEncoder(runner, batch_size=200)
    result = encoder.encode(make_plan(tmp_path, frame_paths), reporter)

    assert result.batch_count == 3
    assert runner.stages == ["batch 1/3", "batch 2/3", "batch 3/3", "concat", "effects"]
    assert reporter.values[:4] == [0, 26, 53, 80]
    assert reporter.values == sorted(reporter.values)
    assert max(reporter.values) == 95
    assert result.duration_seconds == 4.0
    assert scratch_files(tmp_path) == []


def test_concat_is_a_stream_copy(tmp_path, frame_paths, make_runner):
    runner = make_runner()
    ChunkedEncoder(runner, batch_size=200).encode(make_plan(tmp_path, frame_paths))
    concat_args = dict(runner.commands)["concat"]
    assert concat_args[concat_args.index("-c") + 1] == "copy"


def test_two_frames_make_one_batch(tmp_path, frame_paths, make_runner):
    runner = make_runner()
    result = ChunkedEncoder(runner).encode(make_plan(tmp_path, frame_paths[:2]))
    assert result.batch_count == 1


def test_needs_two_frames(tmp_path, frame_paths, make_runner):
    with pytest.raises(InsufficientFrames):
        ChunkedEncoder(make_runner()).encode(make_plan(tmp_path, frame_paths[:1]))


def test_missing_frame_fails_before_encoding(tmp_path, frame_paths, make_runner):
    runner = make_runner()
    with pytest.raises(EncodeFailure) as exc:
        ChunkedEncoder(runner).encode(make_plan(tmp_path, frame_paths[:3] + [str(tmp_path / "gone.jpg")]))
    assert exc.value.stage == "prepare"
    assert runner.commands == []


def test_overlays_become_inputs(tmp_path, frame_paths, make_runner):
    logo = tmp_path / "logo.png"
    logo.write_bytes(b"png")
    runner = make_runner()
    ChunkedEncoder(runner).encode(make_plan(tmp_path, frame_paths[:5], logo_path=str(logo)))
    args = dict(runner.commands)["batch 1/1"]
    assert str(logo) in args
    assert "overlay=W-w-10:10" in args[args.index("-filter_complex") + 1]


def test_missing_music_fails_effects(tmp_path, frame_paths, make_runner):
    with pytest.raises(EncodeFailure) as exc:
        ChunkedEncoder(make_runner()).encode(
            make_plan(tmp_path, frame_paths[:5], music_path=str(tmp_path / "track.mp3")))
    assert exc.value.stage == "effects"


def test_music_is_mapped_and_shortest(tmp_path, frame_paths, make_runner):
    track = tmp_path / "track.mp3"
    track.write_bytes(b"mp3")
    runner = make_runner()
    ChunkedEncoder(runner).encode(make_plan(tmp_path, frame_paths[:5], music_path=str(track)))
    args = dict(runner.commands)["effects"]
    assert "1:a" in args
    assert "-shortest" in args


def test_failed_batch_keeps_scratch_by_default(tmp_path, frame_paths, make_runner):
    runner = make_runner(fail_stage="batch 2")
    with pytest.raises(EncodeFailure):
        ChunkedEncoder(runner, batch_size=200).encode(make_plan(tmp_path, frame_paths))
    assert "batch_video_job1_0.mp4" in scratch_files(tmp_path)
    assert "concat" not in runner.stages


def test_failed_concat_cleans_up_when_asked(tmp_path, frame_paths, make_runner):
    runner = make_runner(fail_stage="concat")
    with pytest.raises(EncodeFailure):
        ChunkedEncoder(runner, batch_size=200, cleanup_on_failure=True).encode(make_plan(tmp_path, frame_paths))
    assert scratch_files(tmp_path) == []
