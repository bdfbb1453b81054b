# backend/sitelapse/archive.py
"""
Storage collaborators for the photo archive.

Frames live under ``<owner>/<collection>/<device>/<variant>/<YYYYMMDDHHMMSS>.jpg``
either on a local disk (``LocalArchive``) or in an S3-compatible bucket
(``S3Archive``). Both answer listings in key order, which for this naming
scheme is chronological order.
"""
import json
import logging
import os
from typing import Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import ArchiveUnavailable
from .frames import FRAME_SUFFIX, Frame, Tags, forward_slashes, timestamp_from_name

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000


class Archive:
    """Listing/fetch capability the index and the job pipeline depend on."""

    def list_names(self, tags: Tags, variant: str) -> List[str]:
        raise NotImplementedError

    def first_name(self, tags: Tags, variant: str) -> Optional[str]:
        names = self.list_names(tags, variant)
        return names[0] if names else None

    def last_name(self, tags: Tags, variant: str) -> Optional[str]:
        names = self.list_names(tags, variant)
        return names[-1] if names else None

    def local_path(self, frame: Frame) -> str:
        raise NotImplementedError

    def fetch_missing(self, paths: Iterable[str], strict: bool = True) -> int:
        """Make sure every path produced by ``local_path`` exists locally.

        With ``strict`` off, frames that cannot be fetched are logged and left missing.
        """
        return 0

    def url_for(self, frame: Frame) -> str:
        raise NotImplementedError


def _is_frame_name(name: str) -> bool:
    return timestamp_from_name(name) is not None


class LocalArchive(Archive):
    def __init__(self, root: str, public_base_url: str = ""):
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")

    def _dir(self, tags: Tags, variant: str) -> str:
        return os.path.join(self.root, tags.owner, tags.collection, tags.device, variant)

    def list_names(self, tags: Tags, variant: str) -> List[str]:
        folder = self._dir(tags, variant)
        if not os.path.isdir(folder):
            return []
        try:
            names = os.listdir(folder)
        except OSError as e:
            raise ArchiveUnavailable(f"cannot list {folder}: {e}")
        return sorted(n for n in names if _is_frame_name(n))

    def local_path(self, frame: Frame) -> str:
        return os.path.join(self._dir(frame.tags, frame.variant), frame.filename)

    def url_for(self, frame: Frame) -> str:
        return f"{self.public_base_url}/media/{frame.key}"


class S3Archive(Archive):
    """Frames in an S3-compatible bucket, materialized into a local cache for encoding."""

    def __init__(self, bucket: str, prefix: str = "upload/", cache_dir: str = "",
                 client=None, url_expiry: int = 7 * 24 * 3600):
        self.bucket = bucket
        self.prefix = prefix
        self.cache_dir = cache_dir
        self.url_expiry = url_expiry
        self.client = client or boto3.client("s3")

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3Archive":
        kwargs = {"region_name": settings.s3_region}
        if settings.s3_endpoint_url:
            kwargs["endpoint_url"] = settings.s3_endpoint_url
        client = boto3.client("s3", **kwargs)
        return cls(settings.s3_bucket, settings.s3_prefix, settings.s3_cache_dir,
                   client=client, url_expiry=settings.presigned_url_expiry)

    def _folder_prefix(self, tags: Tags, variant: str) -> str:
        return f"{self.prefix}{tags.prefix}/{variant}/"

    def _object_key(self, frame: Frame) -> str:
        return f"{self.prefix}{frame.key}"

    def _pages(self, prefix: str, page_size: int = LIST_PAGE_SIZE):
        token = None
        while True:
            kwargs = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": page_size}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                resp = self.client.list_objects_v2(**kwargs)
            except (BotoCoreError, ClientError) as e:
                logger.error("Error listing s3://%s/%s: %s", self.bucket, prefix, e)
                raise ArchiveUnavailable(f"failed to list objects from S3: {e}")
            keys = [obj.get("Key") for obj in resp.get("Contents") or [] if obj.get("Key")]
            yield keys
            token = resp.get("NextContinuationToken")
            if not resp.get("IsTruncated") or not token:
                break

    def list_names(self, tags: Tags, variant: str) -> List[str]:
        names = []
        for keys in self._pages(self._folder_prefix(tags, variant)):
            names.extend(os.path.basename(k) for k in keys)
        return sorted(n for n in names if _is_frame_name(n))

    def first_name(self, tags: Tags, variant: str) -> Optional[str]:
        # S3 lists in key order, so the first frame key is the earliest
        for keys in self._pages(self._folder_prefix(tags, variant), page_size=1):
            names = sorted(os.path.basename(k) for k in keys if _is_frame_name(k))
            if names:
                return names[0]
        return None

    def last_name(self, tags: Tags, variant: str) -> Optional[str]:
        last = None
        for keys in self._pages(self._folder_prefix(tags, variant)):
            names = sorted(os.path.basename(k) for k in keys if _is_frame_name(k))
            if names:
                last = names[-1]
        return last

    def local_path(self, frame: Frame) -> str:
        return os.path.join(self.cache_dir, *frame.key.split("/"))

    def fetch_missing(self, paths: Iterable[str], strict: bool = True) -> int:
        fetched = 0
        cache_root = os.path.abspath(self.cache_dir)
        for path in paths:
            if os.path.exists(path):
                continue
            rel = os.path.relpath(os.path.abspath(path), cache_root)
            key = self.prefix + forward_slashes(rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            try:
                self.client.download_file(self.bucket, key, path)
            except (BotoCoreError, ClientError) as e:
                if not strict:
                    logger.warning("Could not fetch s3://%s/%s: %s", self.bucket, key, e)
                    continue
                logger.error("Error downloading s3://%s/%s: %s", self.bucket, key, e)
                raise ArchiveUnavailable(f"failed to fetch {key}: {e}")
            fetched += 1
        if fetched:
            logger.info("Fetched %d frames from s3://%s", fetched, self.bucket)
        return fetched

    def url_for(self, frame: Frame) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": self._object_key(frame)},
                ExpiresIn=self.url_expiry,
            )
        except (BotoCoreError, ClientError) as e:
            raise ArchiveUnavailable(f"failed to generate presigned URL: {e}")


def build_archive(settings: Settings) -> Archive:
    if settings.archive_backend == "s3":
        return S3Archive.from_settings(settings)
    return LocalArchive(settings.media_root, settings.public_base_url)


class FrameIndexFile:
    """
    Precomputed per-camera frame lists kept as ``<owner>-<collection>-<device>.json``.

    Three layouts exist in the wild:
      {"developer": ..., "images": ["20230101110101.jpg", ...]}
      ["20230101110101.jpg", ...]
      20230101110101.jpg,20230101113001.jpg      (not JSON at all)
    """

    def __init__(self, index_dir: str):
        self.index_dir = index_dir
        self._cache: Dict[str, Tuple[float, List[str]]] = {}

    def path_for(self, tags: Tags) -> str:
        return os.path.join(self.index_dir, f"{tags.slug}.json")

    def load(self, tags: Tags) -> Optional[List[str]]:
        """Sorted timestamps, or None when no usable index exists for ``tags``."""
        path = self.path_for(tags)
        try:
            mtime = os.path.getmtime(path)
        except OSError:
            return None

        cached = self._cache.get(path)
        if cached and cached[0] == mtime:
            return cached[1]

        try:
            with open(path, "r", encoding="utf-8") as fh:
                content = fh.read()
        except OSError as e:
            logger.warning("Cannot read frame index %s: %s", path, e)
            return None

        names = self._parse(content)
        stamps = sorted({ts for ts in (timestamp_from_name(n) for n in names) if ts})
        if not stamps:
            return None
        self._cache[path] = (mtime, stamps)
        return stamps

    @staticmethod
    def _parse(content: str) -> List[str]:
        try:
            data = json.loads(content)
        except ValueError:
            return [n.strip() for n in content.split(",") if n.strip().endswith(FRAME_SUFFIX)]
        if isinstance(data, dict) and isinstance(data.get("images"), list):
            return [str(n) for n in data["images"]]
        if isinstance(data, list):
            return [str(n) for n in data]
        return []

    def write(self, tags: Tags, timestamps: Iterable[str]):
        os.makedirs(self.index_dir, exist_ok=True)
        images = [ts + FRAME_SUFFIX for ts in sorted(set(timestamps))]
        payload = {"developer": tags.owner, "project": tags.collection, "camera": tags.device, "images": images}
        with open(self.path_for(tags), "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
