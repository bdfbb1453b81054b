# backend/sitelapse/models.py
import secrets
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

VIDEO = "video"
PHOTO = "photo"
KINDS = (VIDEO, PHOTO)

QUEUED = "queued"
STARTING = "starting"
PROCESSING = "processing"
READY = "ready"
FAILED = "failed"
TERMINAL = (READY, FAILED)


def new_job_id() -> str:
    return secrets.token_hex(12)


class Job(SQLModel, table=True):
    id: str = Field(default_factory=new_job_id, primary_key=True, nullable=False)
    seq: int = Field(default=0, index=True)                 # insertion order, assigned by the store
    kind: str = Field(nullable=False, index=True)           # video | photo

    owner: str = Field(nullable=False)
    collection: str = Field(nullable=False)
    device: str = Field(nullable=False)
    variant: str = Field(default="large")
    start_date: str = Field(nullable=False)                 # YYYYMMDD
    end_date: str = Field(nullable=False)
    start_hour: str = Field(nullable=False)                 # HH
    end_hour: str = Field(nullable=False)
    frame_count: int = Field(default=0)
    list_file: Optional[str] = Field(default=None)

    # video only
    frame_rate: Optional[int] = Field(default=None)
    resolution: Optional[str] = Field(default=None)         # 720 | HD | 4K
    show_date: bool = Field(default=False)
    caption: Optional[str] = Field(default=None)
    logo_path: Optional[str] = Field(default=None)
    watermark_path: Optional[str] = Field(default=None)
    music: bool = Field(default=False)
    music_file: Optional[str] = Field(default=None)
    contrast: float = Field(default=1.0)
    brightness: float = Field(default=0.0)
    saturation: float = Field(default=1.0)

    status: str = Field(default=QUEUED, nullable=False, index=True)   # queued | starting | processing | ready | failed
    progress: int = Field(default=0, nullable=False)                  # 0 - 100
    progress_message: Optional[str] = Field(default="Waiting in queue...")
    error: Optional[str] = Field(default=None)
    result_path: Optional[str] = Field(default=None)
    size_bytes: Optional[int] = Field(default=None)
    duration_seconds: Optional[float] = Field(default=None)
    time_taken_seconds: Optional[float] = Field(default=None)

    requester_id: Optional[str] = Field(default=None)
    requester_name: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_record(self) -> dict:
        record = {
            "id": self.id,
            "kind": self.kind,
            "tags": {"owner": self.owner, "collection": self.collection, "device": self.device},
            "dateRange": {"start": self.start_date, "end": self.end_date},
            "hourRange": {"start": self.start_hour, "end": self.end_hour},
            "frameCount": self.frame_count,
            "status": self.status,
            "progress": self.progress,
            "progressMessage": self.progress_message,
            "requester": {"id": self.requester_id, "name": self.requester_name},
            "createdAt": self.created_at.isoformat(),
        }
        if self.error:
            record["error"] = self.error
        if self.result_path:
            record["resultPath"] = self.result_path
        if self.size_bytes is not None:
            record["sizeBytes"] = self.size_bytes
        if self.duration_seconds is not None:
            record["durationSeconds"] = self.duration_seconds
        if self.time_taken_seconds is not None:
            record["timeTakenSeconds"] = self.time_taken_seconds
        if self.kind == VIDEO:
            record["video"] = {
                "frameRate": self.frame_rate,
                "resolution": self.resolution,
                "showDate": self.show_date,
                "caption": self.caption,
                "music": self.music,
                "musicFile": self.music_file,
                "contrast": self.contrast,
                "brightness": self.brightness,
                "saturation": self.saturation,
            }
        return record
