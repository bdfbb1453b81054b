import pytest

from sitelapse.archive import FrameIndexFile, LocalArchive
from sitelapse.config import Settings
from sitelapse.db import make_engine
from sitelapse.errors import EncodeFailure
from sitelapse.frames import Tags
from sitelapse.jobs import build_service
from sitelapse.store import SqlRequestStore


class FakeRunner:
    """Stands in for ffmpeg: records every command and writes its output file."""

    def __init__(self, fail_stage=None, duration=4.0):
        self.commands = []
        self.fail_stage = fail_stage
        self.duration = duration

    @property
    def stages(self):
        return [stage for stage, _ in self.commands]

    def run(self, args, stage):
        self.commands.append((stage, list(args)))
        if self.fail_stage and stage.startswith(self.fail_stage):
            raise EncodeFailure(stage, "ffmpeg exited with 1", "Conversion failed!")
        with open(args[-1], "wb") as fh:
            fh.write(b"video")

    def run_with_progress(self, args, stage, total_seconds, on_percent=None):
        self.run(args, stage)
        if on_percent:
            for percent in (25.0, 50.0, 100.0):
                on_percent(percent)

    def probe(self, path):
        return {"duration": self.duration, "width": 1280, "height": 720}


@pytest.fixture
def tags():
    return Tags("dsv", "p1", "cam1")


@pytest.fixture
def media_root(tmp_path):
    root = tmp_path / "upload"
    root.mkdir()
    return root


@pytest.fixture
def make_frames(media_root):
    def _make(tags, stamps, variant="large"):
        folder = media_root / tags.owner / tags.collection / tags.device / variant
        folder.mkdir(parents=True, exist_ok=True)
        for ts in stamps:
            (folder / f"{ts}.jpg").write_bytes(b"\xff\xd8jpeg")
        return folder
    return _make


@pytest.fixture
def archive(media_root):
    return LocalArchive(str(media_root), "http://testserver")


@pytest.fixture
def index_file(tmp_path):
    return FrameIndexFile(str(tmp_path / "camerapics"))


@pytest.fixture
def store(tmp_path):
    return SqlRequestStore(make_engine(f"sqlite:///{tmp_path / 'db' / 'jobs.db'}"))


@pytest.fixture
def make_runner():
    return FakeRunner


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def settings(tmp_path, media_root):
    return Settings().with_overrides(
        media_root=str(media_root),
        output_root=str(tmp_path / "output"),
        index_dir=str(tmp_path / "camerapics"),
        music_dir=str(tmp_path / "music"),
        upload_dir=str(tmp_path / "uploads"),
        database_url=f"sqlite:///{tmp_path / 'db' / 'jobs.db'}",
        archive_backend="local",
        public_base_url="http://testserver",
        batch_size=200,
    )


@pytest.fixture
def service(settings, store, archive, runner):
    svc = build_service(settings, store=store, archive=archive, runner=runner)
    yield svc
    svc.scheduler.shutdown(wait=True)


@pytest.fixture
def example_frames(make_frames, tags):
    make_frames(tags, ["20240101090000", "20240103130000", "20240108100000"])
    return tags