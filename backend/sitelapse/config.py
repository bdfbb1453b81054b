# backend/sitelapse/config.py
import os
from dataclasses import dataclass, field, replace

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
STORAGE_DIR = os.environ.get("STORAGE_DIR", os.path.join(BASE_DIR, "storage"))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    media_root: str = field(default_factory=lambda: os.environ.get("MEDIA_ROOT", os.path.join(STORAGE_DIR, "upload")))
    output_root: str = field(default_factory=lambda: os.environ.get("OUTPUT_ROOT", os.path.join(STORAGE_DIR, "output")))
    index_dir: str = field(default_factory=lambda: os.environ.get("INDEX_DIR", os.path.join(STORAGE_DIR, "camerapics")))
    music_dir: str = field(default_factory=lambda: os.environ.get("MUSIC_DIR", os.path.join(STORAGE_DIR, "music")))
    upload_dir: str = field(default_factory=lambda: os.environ.get("UPLOAD_DIR", os.path.join(STORAGE_DIR, "uploads")))
    database_url: str = field(
        default_factory=lambda: os.environ.get("DATABASE_URL", f"sqlite:///{os.path.join(STORAGE_DIR, 'database.db')}")
    )

    archive_backend: str = field(default_factory=lambda: os.environ.get("ARCHIVE_BACKEND", "local"))
    s3_bucket: str = field(default_factory=lambda: os.environ.get("S3_BUCKET", "camera-pictures"))
    s3_endpoint_url: str = field(default_factory=lambda: os.environ.get("S3_ENDPOINT_URL", ""))
    s3_region: str = field(default_factory=lambda: os.environ.get("S3_REGION", "us-east-1"))
    s3_prefix: str = field(default_factory=lambda: os.environ.get("S3_PREFIX", "upload/"))
    s3_cache_dir: str = field(default_factory=lambda: os.environ.get("S3_CACHE_DIR", os.path.join(STORAGE_DIR, "s3cache")))
    presigned_url_expiry: int = field(default_factory=lambda: int(os.environ.get("PRESIGNED_URL_EXPIRY", str(7 * 24 * 3600))))

    batch_size: int = field(default_factory=lambda: int(os.environ.get("BATCH_SIZE", "200")))
    default_frame_rate: int = field(default_factory=lambda: int(os.environ.get("DEFAULT_FRAME_RATE", "25")))
    ffmpeg_bin: str = field(default_factory=lambda: os.environ.get("FFMPEG_BIN", "ffmpeg"))
    ffprobe_bin: str = field(default_factory=lambda: os.environ.get("FFPROBE_BIN", "ffprobe"))
    font_file: str = field(default_factory=lambda: os.environ.get("FONT_FILE", ""))
    cleanup_on_failure: bool = field(default_factory=lambda: _env_bool("CLEANUP_ON_FAILURE", False))

    public_base_url: str = field(default_factory=lambda: os.environ.get("PUBLIC_BASE_URL", "http://127.0.0.1:8000"))
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO"))

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)

    def ensure_dirs(self):
        for path in (self.output_root, self.index_dir, self.music_dir, self.upload_dir):
            os.makedirs(path, exist_ok=True)


def load_settings() -> Settings:
    """Read the environment at call time so tests can monkeypatch it."""
    return Settings()
