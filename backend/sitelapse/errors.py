# backend/sitelapse/errors.py
from typing import Iterable, Optional


class SitelapseError(Exception):
    """Base class for every error raised by the archive and job pipeline."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(SitelapseError):
    status_code = 400


class NotFound(SitelapseError):
    status_code = 404

    def __init__(self, message: str, sides: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.sides = list(sides or [])


class ArchiveUnavailable(SitelapseError):
    status_code = 502


class InsufficientFrames(SitelapseError):
    status_code = 422

    def __init__(self, message: str, found: int = 0):
        super().__init__(message)
        self.found = found


class EncodeFailure(SitelapseError):
    def __init__(self, stage: str, message: str, output_tail: str = ""):
        self.stage = stage
        self.output_tail = output_tail
        super().__init__(f"{stage}: {message}")


class JobBusy(SitelapseError):
    status_code = 409
