# backend/sitelapse/packager.py
import logging
import os
import zipfile
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)


@dataclass
class PackageResult:
    path: str
    size_bytes: int
    packed: int
    skipped: int


class ArchivePackager:
    """Streams a job's frames into a ZIP; missing frames are skipped, not fatal."""

    def __init__(self, compresslevel: int = 9):
        self.compresslevel = compresslevel

    def package(self, paths: Iterable[str], output_path: str) -> PackageResult:
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        packed = skipped = 0
        with zipfile.ZipFile(output_path, "w", zipfile.ZIP_DEFLATED, compresslevel=self.compresslevel) as z:
            for path in paths:
                if not os.path.exists(path):
                    logger.warning("File not found, skipping: %s", path)
                    skipped += 1
                    continue
                z.write(path, os.path.basename(path))
                packed += 1
        size = os.path.getsize(output_path)
        logger.info("Photo ZIP created: %s, %d files, %d skipped, size: %d bytes", output_path, packed, skipped, size)
        return PackageResult(path=output_path, size_bytes=size, packed=packed, skipped=skipped)
