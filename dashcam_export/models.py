"""Data models used across the dashcam export pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

# Grid raster order: top row pillars around the front camera, bottom row
# repeaters around the back camera.
CAMERA_ORDER: Tuple[str, ...] = (
    "left_pillar",
    "front",
    "right_pillar",
    "left_repeater",
    "back",
    "right_repeater",
)

MIRRORED_CAMERAS = frozenset({"back", "left_repeater", "right_repeater"})

QUALITY_TIERS: Tuple[str, ...] = ("mobile", "medium", "high", "max")

DEFAULT_SEGMENT_DURATION_SEC = 60.0


@dataclass(frozen=True)
class Segment:
    """A recorded chunk with one file per camera (sparse)."""

    files: Mapping[str, str]
    duration_sec: Optional[float] = None

    @property
    def duration_ms(self) -> float:
        duration = self.duration_sec or DEFAULT_SEGMENT_DURATION_SEC
        return duration * 1000.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Segment":
        files = raw.get("files") or {}
        duration = raw.get("duration_sec", raw.get("durationSec"))
        return cls(
            files={str(camera): str(path) for camera, path in files.items() if path},
            duration_sec=float(duration) if duration else None,
        )


@dataclass(frozen=True)
class RelevantSegment:
    """A segment overlapping the export window, with absolute offsets."""

    index: int
    segment: Segment
    seg_start_ms: float
    seg_end_ms: float

    def file_for(self, camera: str) -> Optional[str]:
        return self.segment.files.get(camera)


@dataclass(frozen=True)
class GpsSample:
    """One row of the GPS/time interpolation table."""

    timestamp_ms: float
    lat: float
    lon: float
    heading: float = 0.0


@dataclass(frozen=True)
class MinimapOptions:
    """Map overlay request attached to an export."""

    path: Tuple[Tuple[float, float], ...]
    samples: Tuple[GpsSample, ...]
    position: str = "top-right"
    size: str = "small"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MinimapOptions":
        path = tuple((float(lat), float(lon)) for lat, lon in raw.get("path", []))
        samples = tuple(
            GpsSample(
                timestamp_ms=float(item["t"]),
                lat=float(item["lat"]),
                lon=float(item["lon"]),
                heading=float(item.get("heading") or 0.0),
            )
            for item in raw.get("samples", [])
        )
        return cls(
            path=path,
            samples=samples,
            position=str(raw.get("position", "top-right")),
            size=str(raw.get("size", "small")),
        )


@dataclass(frozen=True)
class ExportRequest:
    """Immutable description of one export submitted by the UI."""

    start_time_ms: float
    end_time_ms: float
    segments: Tuple[Segment, ...]
    output_path: Path
    cameras: Tuple[str, ...] = CAMERA_ORDER
    quality: Optional[str] = None
    mobile_export: bool = False
    minimap: Optional[MinimapOptions] = None

    @property
    def duration_sec(self) -> float:
        return (self.end_time_ms - self.start_time_ms) / 1000.0

    @property
    def quality_tier(self) -> str:
        if self.quality:
            return self.quality
        return "mobile" if self.mobile_export else "high"

    @property
    def is_front_only(self) -> bool:
        return set(self.cameras) == {"front"}

    def active_cameras(self) -> Tuple[str, ...]:
        """Selected cameras in grid order."""
        selected = set(self.cameras)
        return tuple(camera for camera in CAMERA_ORDER if camera in selected)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ExportRequest":
        minimap_raw = raw.get("minimap")
        cameras = raw.get("cameras") or CAMERA_ORDER
        return cls(
            start_time_ms=float(raw["start_time_ms"]),
            end_time_ms=float(raw["end_time_ms"]),
            segments=tuple(Segment.from_dict(item) for item in raw.get("segments", [])),
            output_path=Path(raw["output_path"]),
            cameras=tuple(str(camera) for camera in cameras),
            quality=raw.get("quality"),
            mobile_export=bool(raw.get("mobile_export", False)),
            minimap=MinimapOptions.from_dict(minimap_raw) if minimap_raw else None,
        )


@dataclass(frozen=True)
class ResolvedCameraInput:
    """Encode-ready input for one camera."""

    camera: str
    path: Path
    offset_sec: float
    is_concat: bool


@dataclass(frozen=True)
class QualityProfile:
    """Per-camera target size and quality parameter for a tier."""

    width: int
    height: int
    quality: int


@dataclass(frozen=True)
class EncoderChoice:
    """Encoder and the arguments it needs."""

    codec: str
    name: str
    params: Tuple[str, ...]
    hardware: bool


@dataclass(frozen=True)
class MapBounds:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


@dataclass(frozen=True)
class TileGrid:
    """Tile rectangle covering a set of bounds at one zoom level."""

    zoom: int
    top_left: Tuple[int, int]
    bottom_right: Tuple[int, int]
    tile_paths: Dict[Tuple[int, int], Path] = field(default_factory=dict)

    @property
    def tiles_x(self) -> int:
        return self.bottom_right[0] - self.top_left[0] + 1

    @property
    def tiles_y(self) -> int:
        return self.bottom_right[1] - self.top_left[1] + 1

    def iter_tiles(self) -> Sequence[Tuple[int, int]]:
        """Tile coordinates in row-major order."""
        return [
            (x, y)
            for y in range(self.top_left[1], self.bottom_right[1] + 1)
            for x in range(self.top_left[0], self.bottom_right[0] + 1)
        ]


@dataclass(frozen=True)
class MapBackground:
    """Stitched basemap raster and the geographic bounds of its edges."""

    image_path: Path
    bounds: MapBounds
    zoom: int


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    kind: str
    percentage: int
    message: str


@dataclass(frozen=True)
class CompletionEvent:
    job_id: str
    state: str
    success: bool
    message: str
    output_path: Path


__all__ = [
    "CAMERA_ORDER",
    "CompletionEvent",
    "EncoderChoice",
    "ExportRequest",
    "GpsSample",
    "MapBackground",
    "MapBounds",
    "MinimapOptions",
    "MIRRORED_CAMERAS",
    "ProgressEvent",
    "QUALITY_TIERS",
    "QualityProfile",
    "RelevantSegment",
    "ResolvedCameraInput",
    "Segment",
    "TileGrid",
]
