import zipfile

from sitelapse.packager import ArchivePackager


def test_packs_existing_and_skips_missing(tmp_path):
    frames = []
    for ts in ("20240101120000", "20240102120000"):
        path = tmp_path / f"{ts}.jpg"
        path.write_bytes(b"jpeg")
        frames.append(str(path))
    frames.append(str(tmp_path / "20240103120000.jpg"))

    result = ArchivePackager().package(frames, str(tmp_path / "out" / "photos.zip"))

    assert (result.packed, result.skipped) == (2, 1)
    assert result.size_bytes > 0
    with zipfile.ZipFile(result.path) as z:
        assert sorted(z.namelist()) == ["20240101120000.jpg", "20240102120000.jpg"]
