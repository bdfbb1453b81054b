# backend/sitelapse/sampler.py
import calendar
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from .errors import InsufficientFrames, NotFound, ValidationError
from .frames import Frame, Tags, normalize_date, normalize_time_prefix
from .image_index import ImageIndex

logger = logging.getLogger(__name__)

NOON = 120000
NOON_HOURS = (10, 14)

# range kind -> (months back, days back, step in days)
SLIDESHOW_RANGES = {
    "30days": (0, 30, 1),
    "quarter": (3, 0, 3),
    "6months": (6, 0, 7),
    "1year": (12, 0, 7),
}

SLIDESHOW_DESCRIPTIONS = {
    "30days": "Last 30 days - Daily images at 12 PM",
    "quarter": "Last quarter (3 months) - Every 3 days at 12 PM",
    "6months": "Last 6 months - Weekly images at 12 PM",
    "1year": "Last 1 year - Weekly images at 12 PM",
}


def _day(yyyymmdd: str) -> date:
    return datetime.strptime(yyyymmdd, "%Y%m%d").date()


def _key(d: date) -> str:
    return d.strftime("%Y%m%d")


def shift_months(d: date, months: int) -> date:
    """Move ``d`` by whole months, clamping to the last day of a shorter month."""
    index = d.year * 12 + (d.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


def _by_date(frames: List[Frame]) -> Dict[str, List[Frame]]:
    days: Dict[str, List[Frame]] = defaultdict(list)
    for frame in frames:
        days[frame.date].append(frame)
    return days


@dataclass
class Comparison:
    first: Frame
    second: Frame
    first_time: str
    second_time: str


class Sampler:
    def __init__(self, index: ImageIndex):
        self.index = index

    def weekly(self, tags: Tags, variant: str = "large") -> List[Frame]:
        """One noon-hour frame every 7 days from the first capture day to the last."""
        frames = self.index.resolve(tags, variant)
        if not frames:
            raise InsufficientFrames("No pictures found in camera directory", found=0)

        days = _by_date(frames)
        anchor = _day(frames[0].date)
        latest = _day(frames[-1].date)
        selected = []
        while anchor <= latest:
            for frame in days.get(_key(anchor), ()):
                if frame.time.startswith("12"):
                    selected.append(frame)
                    break
            anchor += timedelta(days=7)

        if len(selected) < 2:
            raise InsufficientFrames(
                f"Not enough weekly noon images for {tags.slug}: found {len(selected)}", found=len(selected)
            )
        return selected

    def slideshow(self, tags: Tags, range_kind: str, variant: str = "large") -> List[Frame]:
        if range_kind not in SLIDESHOW_RANGES:
            raise ValidationError(f"invalid range type {range_kind!r}; expected one of {', '.join(SLIDESHOW_RANGES)}")
        frames = self.index.resolve(tags, variant)
        if not frames:
            raise NotFound("No pictures found in camera directory")

        months, days_back, step = SLIDESHOW_RANGES[range_kind]
        first_day = _day(frames[0].date)
        last_day = _day(frames[-1].date)
        if days_back:
            # counted back from midnight after the last capture day
            start = last_day + timedelta(days=1) - timedelta(days=days_back)
        else:
            start = shift_months(last_day, -months)
        start = max(start, first_day)
        logger.info("Slideshow %s for %s: %s..%s", range_kind, tags.slug, start, last_day)

        days = _by_date(frames)
        selected = []
        current = start
        while current <= last_day:
            pick = self._closest_to_noon(days.get(_key(current), ()))
            if pick is not None and NOON_HOURS[0] <= pick.hour <= NOON_HOURS[1]:
                selected.append(pick)
            current += timedelta(days=step)
        return sorted(selected)

    @staticmethod
    def _closest_to_noon(day_frames) -> Optional[Frame]:
        best = None
        best_diff = None
        for frame in day_frames:
            diff = abs(int(frame.time) - NOON)
            if best_diff is None or diff < best_diff:
                best, best_diff = frame, diff
        return best

    def compare(self, tags: Tags, date1, time1, date2, time2, variant: str = "large") -> Comparison:
        """Earliest frame matching each (date, time prefix); NotFound names every missing side."""
        d1 = normalize_date(date1, "date1")
        d2 = normalize_date(date2, "date2")
        t1 = normalize_time_prefix(time1)
        t2 = normalize_time_prefix(time2)

        first = self.index.nearest_to_time(tags, d1, t1, variant)
        second = self.index.nearest_to_time(tags, d2, t2, variant)

        missing = []
        if first is None:
            missing.append(("first", f"No image found for date1: {d1} with time prefix: {t1}"))
        if second is None:
            missing.append(("second", f"No image found for date2: {d2} with time prefix: {t2}"))
        if missing:
            raise NotFound("; ".join(m for _, m in missing), sides=[s for s, _ in missing])

        return Comparison(first=first, second=second, first_time=first.time, second_time=second.time)
