# backend/sitelapse/image_index.py
import logging
from typing import List, Optional

from .archive import Archive, FrameIndexFile
from .frames import (
    Frame, Tags, format_date, frames_from_names, normalize_date, normalize_hour,
    normalize_time_prefix, normalize_variant, timestamp_from_name,
)

logger = logging.getLogger(__name__)

WORKING_HOURS = (8, 17)


class ImageIndex:
    """
    Queries over the frames of one camera.

    A precomputed index file answers everything without touching the archive;
    without one the archive is listed. Unknown cameras and empty archives give
    empty results, only listing failures raise (``ArchiveUnavailable``).
    """

    def __init__(self, archive: Archive, index_file: Optional[FrameIndexFile] = None):
        self.archive = archive
        self.index_file = index_file

    def _cached(self, tags: Tags) -> Optional[List[str]]:
        if self.index_file is None:
            return None
        return self.index_file.load(tags)

    def resolve(self, tags: Tags, variant: str = "large") -> List[Frame]:
        variant = normalize_variant(variant)
        stamps = self._cached(tags)
        if stamps is not None:
            return [Frame(ts, tags, variant) for ts in stamps]
        logger.info("No frame index for %s, listing archive", tags.slug)
        return frames_from_names(self.archive.list_names(tags, variant), tags, variant)

    def first(self, tags: Tags, variant: str = "large") -> Optional[Frame]:
        variant = normalize_variant(variant)
        stamps = self._cached(tags)
        if stamps is not None:
            return Frame(stamps[0], tags, variant)
        ts = timestamp_from_name(self.archive.first_name(tags, variant) or "")
        return Frame(ts, tags, variant) if ts else None

    def last(self, tags: Tags, variant: str = "large") -> Optional[Frame]:
        variant = normalize_variant(variant)
        stamps = self._cached(tags)
        if stamps is not None:
            return Frame(stamps[-1], tags, variant)
        ts = timestamp_from_name(self.archive.last_name(tags, variant) or "")
        return Frame(ts, tags, variant) if ts else None

    def by_date_range(self, tags: Tags, date1, date2, variant: str = "large") -> List[Frame]:
        d1 = normalize_date(date1, "date1")
        d2 = normalize_date(date2, "date2")
        return [f for f in self.resolve(tags, variant) if d1 <= f.date <= d2]

    def select(self, tags: Tags, date1, date2, hour1, hour2, variant: str = "large") -> List[Frame]:
        """Frames inside both the inclusive date range and the inclusive hour range."""
        h1 = normalize_hour(hour1, "start hour")
        h2 = normalize_hour(hour2, "end hour")
        return [f for f in self.by_date_range(tags, date1, date2, variant) if h1 <= f.time[:2] <= h2]

    def nearest_to_time(self, tags: Tags, date, time_prefix, variant: str = "large") -> Optional[Frame]:
        """Earliest frame of ``date`` whose time-of-day starts with ``time_prefix``."""
        day = normalize_date(date)
        prefix = normalize_time_prefix(time_prefix)
        for frame in self.resolve(tags, variant):
            if frame.date == day and frame.time.startswith(prefix):
                return frame
        return None

    def available_dates(self, tags: Tags, variant: str = "large") -> List[str]:
        return sorted({format_date(f.date) for f in self.resolve(tags, variant)})

    def working_hours(self, tags: Tags, variant: str = "large") -> List[Frame]:
        start, end = WORKING_HOURS
        return [f for f in self.resolve(tags, variant) if start <= f.hour <= end]
