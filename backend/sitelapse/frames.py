# backend/sitelapse/frames.py
import os
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, List, Optional, Union

from .errors import ValidationError

VARIANTS = ("large", "optimized", "thumbs")
FRAME_SUFFIX = ".jpg"

_TIMESTAMP_RE = re.compile(r"^\d{14}$")
_DATE_RE = re.compile(r"^\d{8}$")
_DASHED_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_TIME_PREFIX_RE = re.compile(r"^\d{1,6}$")
_LIST_LINE_RE = re.compile(r"^file\s+'(.+)'$")


@dataclass(frozen=True, order=True)
class Tags:
    owner: str
    collection: str
    device: str

    def __post_init__(self):
        for name in ("owner", "collection", "device"):
            value = getattr(self, name)
            if not value or not isinstance(value, str):
                raise ValidationError(f"missing {name} tag")
            if "/" in value or "\\" in value or value in (".", "..") or value.strip() != value:
                raise ValidationError(f"invalid {name} tag: {value!r}")

    @property
    def prefix(self) -> str:
        return f"{self.owner}/{self.collection}/{self.device}"

    @property
    def slug(self) -> str:
        return f"{self.owner}-{self.collection}-{self.device}"


@dataclass(frozen=True, order=True)
class Frame:
    """One archived still, ordered by its capture timestamp."""

    timestamp: str
    tags: Tags
    variant: str = "large"

    def __post_init__(self):
        if not _TIMESTAMP_RE.match(self.timestamp or ""):
            raise ValidationError(f"invalid image timestamp {self.timestamp!r}; use YYYYMMDDHHMMSS")

    @property
    def date(self) -> str:
        return self.timestamp[:8]

    @property
    def time(self) -> str:
        return self.timestamp[8:14]

    @property
    def hour(self) -> int:
        return int(self.timestamp[8:10])

    @property
    def filename(self) -> str:
        return self.timestamp + FRAME_SUFFIX

    @property
    def key(self) -> str:
        return f"{self.tags.prefix}/{self.variant}/{self.filename}"

    @property
    def captured_at(self) -> datetime:
        return datetime.strptime(self.timestamp, "%Y%m%d%H%M%S")


def timestamp_from_name(name: str) -> Optional[str]:
    """'.../20240101120000.jpg' -> '20240101120000'; None for anything else."""
    base = os.path.basename(name.strip())
    if not base.endswith(FRAME_SUFFIX):
        return None
    stem = base[: -len(FRAME_SUFFIX)]
    return stem if _TIMESTAMP_RE.match(stem) else None


def frames_from_names(names: Iterable[str], tags: Tags, variant: str) -> List[Frame]:
    stamps = {ts for ts in (timestamp_from_name(n) for n in names) if ts}
    return [Frame(ts, tags, variant) for ts in sorted(stamps)]


def normalize_variant(variant: str) -> str:
    if variant not in VARIANTS:
        raise ValidationError(f"invalid variant {variant!r}; expected one of {', '.join(VARIANTS)}")
    return variant


def normalize_date(value: Union[str, date, None], field_name: str = "date") -> str:
    """Accept YYYYMMDD or YYYY-MM-DD and return YYYYMMDD."""
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    if value is None or not str(value).strip():
        raise ValidationError(f"missing {field_name}")
    text = str(value).strip()
    m = _DASHED_DATE_RE.match(text)
    if m:
        text = "".join(m.groups())
    if not _DATE_RE.match(text):
        raise ValidationError(f"invalid {field_name} {value!r}; use YYYYMMDD or YYYY-MM-DD")
    try:
        datetime.strptime(text, "%Y%m%d")
    except ValueError:
        raise ValidationError(f"invalid {field_name} {value!r}; not a calendar date")
    return text


def normalize_hour(value: Union[str, int, None], field_name: str = "hour") -> str:
    if value is None or str(value).strip() == "":
        raise ValidationError(f"missing {field_name}")
    try:
        hour = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"invalid {field_name} {value!r}")
    if not 0 <= hour <= 23:
        raise ValidationError(f"{field_name} must be between 0 and 23")
    return f"{hour:02d}"


def normalize_time_prefix(value: Union[str, int, None]) -> str:
    """Time-of-day prefix for matching: "12", "1205", "120000".

    An omitted value means exactly noon; one digit is treated as an hour.
    """
    if value is None or str(value).strip() == "":
        return "120000"
    text = str(value).strip()
    if not _TIME_PREFIX_RE.match(text):
        raise ValidationError(f"invalid time {value!r}; use HH, HHMM or HHMMSS")
    if len(text) < 2:
        text = text.zfill(2)
    return text


def format_date(yyyymmdd: str) -> str:
    return f"{yyyymmdd[:4]}-{yyyymmdd[4:6]}-{yyyymmdd[6:8]}"


def forward_slashes(path: str) -> str:
    return path.replace("\\", "/")


def write_list_file(path: str, files: Iterable[str]) -> int:
    """Write an ffmpeg concat-demuxer list; returns the number of entries."""
    lines = [f"file '{forward_slashes(os.path.abspath(f))}'" for f in files]
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write("\n".join(lines))
    return len(lines)


def parse_list_file(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as fh:
        content = fh.read()
    files = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        m = _LIST_LINE_RE.match(line)
        files.append(m.group(1) if m else line)
    return files
