import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dashcam_export.errors import NoValidCameraFiles  # noqa: E402
from dashcam_export.inputs import resolve_camera_inputs, write_concat_manifest  # noqa: E402
from dashcam_export.models import Segment  # noqa: E402
from dashcam_export.segments import intersect_segments  # noqa: E402


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x00")
    return path


def test_three_files_produce_one_manifest_in_order(tmp_path):
    clips = [_touch(tmp_path / "clips" / f"{index}-front.mp4") for index in range(3)]
    segments = [Segment(files={"front": str(clip)}, duration_sec=60.0) for clip in clips]
    relevant = intersect_segments(segments, 30_000, 150_000)
    temp_files = []

    inputs = resolve_camera_inputs(relevant, ["front"], 30_000, tmp_path, temp_files)

    assert len(inputs) == 1
    resolved = inputs[0]
    assert resolved.is_concat
    assert resolved.offset_sec == pytest.approx(30.0)
    assert temp_files == [resolved.path]

    lines = resolved.path.read_text(encoding="utf-8").split("\n")
    assert lines == [f"file '{clip.as_posix()}'" for clip in clips]


def test_single_file_is_used_directly(tmp_path):
    clip = _touch(tmp_path / "front.mp4")
    relevant = intersect_segments([Segment(files={"front": str(clip)}, duration_sec=60.0)], 5_000, 20_000)
    temp_files = []

    inputs = resolve_camera_inputs(relevant, ["front"], 5_000, tmp_path, temp_files)

    assert inputs[0].path == clip
    assert not inputs[0].is_concat
    assert inputs[0].offset_sec == pytest.approx(5.0)
    assert temp_files == []


def test_missing_files_are_skipped_and_order_follows_grid(tmp_path):
    back = _touch(tmp_path / "back.mp4")
    front = _touch(tmp_path / "front.mp4")
    segment = Segment(
        files={"back": str(back), "front": str(front), "left_pillar": str(tmp_path / "gone.mp4")},
        duration_sec=60.0,
    )
    relevant = intersect_segments([segment], 0, 10_000)

    inputs = resolve_camera_inputs(relevant, ["back", "front", "left_pillar"], 0, tmp_path, [])

    assert [item.camera for item in inputs] == ["front", "back"]


def test_offset_measured_from_first_segment_with_footage(tmp_path):
    later = _touch(tmp_path / "1-front.mp4")
    segments = [
        Segment(files={}, duration_sec=60.0),
        Segment(files={"front": str(later)}, duration_sec=60.0),
    ]
    relevant = intersect_segments(segments, 30_000, 90_000)

    inputs = resolve_camera_inputs(relevant, ["front"], 30_000, tmp_path, [])

    assert inputs[0].offset_sec == 0.0


def test_no_camera_files_raises(tmp_path):
    relevant = intersect_segments([Segment(files={"front": str(tmp_path / "none.mp4")})], 0, 1_000)

    with pytest.raises(NoValidCameraFiles):
        resolve_camera_inputs(relevant, ["front"], 0, tmp_path, [])


def test_manifest_uses_forward_slashes(tmp_path):
    manifest = write_concat_manifest([Path("C:\\clips\\a.mp4"), Path("b.mp4")], tmp_path / "list.txt")

    text = manifest.read_text(encoding="utf-8")
    assert "\\" not in text
    assert text.endswith("file 'b.mp4'")
