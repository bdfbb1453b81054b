import os

import pytest
from botocore.exceptions import ClientError

from sitelapse.archive import LocalArchive, S3Archive
from sitelapse.errors import ArchiveUnavailable
from sitelapse.frames import Frame


class FakeS3:
    """Minimal list/download/presign surface of a boto3 S3 client."""

    def __init__(self, keys, missing=()):
        self.keys = sorted(keys)
        self.missing = set(missing)
        self.list_calls = []
        self.fail_listing = False

    def list_objects_v2(self, Bucket, Prefix, MaxKeys, ContinuationToken=None):
        self.list_calls.append(MaxKeys)
        if self.fail_listing:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "ListObjectsV2")
        matching = [k for k in self.keys if k.startswith(Prefix)]
        start = int(ContinuationToken or 0)
        page = matching[start:start + MaxKeys]
        resp = {"Contents": [{"Key": k} for k in page], "IsTruncated": start + MaxKeys < len(matching)}
        if resp["IsTruncated"]:
            resp["NextContinuationToken"] = str(start + MaxKeys)
        return resp

    def download_file(self, bucket, key, path):
        if key in self.missing:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        with open(path, "wb") as fh:
            fh.write(b"jpeg")

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://s3.example/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


def keys_for(tags, stamps, variant="large"):
    return [f"upload/{tags.prefix}/{variant}/{ts}.jpg" for ts in stamps]


@pytest.fixture
def stamps():
    return [f"202401{d:02d}120000" for d in range(1, 26)]


def test_listing_walks_every_page(tmp_path, tags, stamps):
    client = FakeS3(keys_for(tags, stamps) + [f"upload/{tags.prefix}/large/notes.txt"])
    archive = S3Archive("bucket", cache_dir=str(tmp_path), client=client)
    archive_pages = list(archive._pages(f"upload/{tags.prefix}/large/", page_size=10))
    assert len(archive_pages) == 3
    assert archive.list_names(tags, "large") == [f"{ts}.jpg" for ts in stamps]


def test_first_and_last(tmp_path, tags, stamps):
    client = FakeS3(keys_for(tags, stamps))
    archive = S3Archive("bucket", cache_dir=str(tmp_path), client=client)
    assert archive.first_name(tags, "large") == "20240101120000.jpg"
    assert client.list_calls == [1]
    assert archive.last_name(tags, "large") == "20240125120000.jpg"


def test_listing_errors_become_archive_unavailable(tmp_path, tags):
    client = FakeS3([])
    client.fail_listing = True
    with pytest.raises(ArchiveUnavailable):
        S3Archive("bucket", cache_dir=str(tmp_path), client=client).list_names(tags, "large")


def test_fetch_missing_materializes_into_cache(tmp_path, tags, stamps):
    client = FakeS3(keys_for(tags, stamps), missing=keys_for(tags, stamps[1:2]))
    archive = S3Archive("bucket", cache_dir=str(tmp_path / "cache"), client=client)
    paths = [archive.local_path(Frame(ts, tags)) for ts in stamps[:3]]

    with pytest.raises(ArchiveUnavailable):
        archive.fetch_missing(paths)

    assert archive.fetch_missing(paths, strict=False) == 1
    assert [os.path.exists(p) for p in paths] == [True, False, True]


def test_urls(tmp_path, tags):
    frame = Frame("20240101120000", tags)
    s3 = S3Archive("bucket", cache_dir=str(tmp_path), client=FakeS3([]), url_expiry=60)
    assert s3.url_for(frame) == "https://s3.example/bucket/upload/dsv/p1/cam1/large/20240101120000.jpg?expires=60"
    local = LocalArchive(str(tmp_path), "http://host/")
    assert local.url_for(frame) == "http://host/media/dsv/p1/cam1/large/20240101120000.jpg"
