import pytest

from sitelapse.errors import ValidationError
from sitelapse.frames import (
    Frame, Tags, frames_from_names, normalize_date, normalize_hour, normalize_time_prefix,
    parse_list_file, timestamp_from_name, write_list_file,
)


def test_timestamp_from_name():
    assert timestamp_from_name("upload/a/b/c/large/20240101120000.jpg") == "20240101120000"
    assert timestamp_from_name("20240101120000.png") is None
    assert timestamp_from_name("2024010112.jpg") is None
    assert timestamp_from_name("thumbs.db") is None


def test_frames_are_sorted_and_deduplicated(tags):
    frames = frames_from_names(["20240102000000.jpg", "20240101000000.jpg", "x/20240102000000.jpg"], tags, "large")
    assert [f.timestamp for f in frames] == ["20240101000000", "20240102000000"]


def test_frame_properties(tags):
    frame = Frame("20240315134501", tags, "thumbs")
    assert frame.date == "20240315"
    assert frame.time == "134501"
    assert frame.hour == 13
    assert frame.key == "dsv/p1/cam1/thumbs/20240315134501.jpg"


@pytest.mark.parametrize("bad", ["", "a/b", "..", " cam"])
def test_tags_reject_unsafe_values(bad):
    with pytest.raises(ValidationError):
        Tags("dsv", "p1", bad)


def test_normalize_date_accepts_both_layouts():
    assert normalize_date("20240105") == "20240105"
    assert normalize_date("2024-01-05") == "20240105"
    with pytest.raises(ValidationError):
        normalize_date("2024-13-01")
    with pytest.raises(ValidationError):
        normalize_date("05/01/2024")


def test_normalize_hour():
    assert normalize_hour("8") == "08"
    assert normalize_hour(17) == "17"
    with pytest.raises(ValidationError):
        normalize_hour("24")


def test_time_prefix_defaults_to_noon():
    assert normalize_time_prefix(None) == "120000"
    assert normalize_time_prefix("") == "120000"
    assert normalize_time_prefix("9") == "09"
    assert normalize_time_prefix("1205") == "1205"
    with pytest.raises(ValidationError):
        normalize_time_prefix("12:05")


def test_list_file_uses_concat_demuxer_syntax(tmp_path):
    path = tmp_path / "lists" / "image_list.txt"
    frame = tmp_path / "20240101120000.jpg"
    assert write_list_file(str(path), [str(frame)]) == 1
    assert path.read_text().startswith("file '")
    assert parse_list_file(str(path)) == [str(frame).replace("\\", "/")]
