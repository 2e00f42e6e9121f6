"""Filter graph construction for the multi-camera grid."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from dashcam_export.models import MIRRORED_CAMERAS, QualityProfile
from dashcam_export.progress import format_seconds

GRID_LABEL = "grid"
OUTPUT_LABEL = "out"
OUTPUT_PIXEL_FORMAT = "yuv420p"

OVERLAY_PADDING = 20

_LABEL_PATTERN = re.compile(r"^(\d+:v|[A-Za-z_][A-Za-z0-9_]*)$")
_INPUT_STREAM_PATTERN = re.compile(r"^(\d+):v$")


def overlay_position(position: str, padding: int = OVERLAY_PADDING) -> str:
    """Overlay x:y expression for one of the four corners."""
    positions = {
        "top-left": f"{padding}:{padding}",
        "top-right": f"W-w-{padding}:{padding}",
        "bottom-left": f"{padding}:H-h-{padding}",
        "bottom-right": f"W-w-{padding}:H-h-{padding}",
    }
    return positions.get(position, positions["top-right"])


class FilterGraphError(ValueError):
    """Raised when a filter graph references labels it cannot resolve."""


@dataclass(frozen=True)
class FilterChain:
    """One ``[in]...filter,filter...[out]`` segment of a filter graph."""

    inputs: Tuple[str, ...]
    filters: Tuple[str, ...]
    output: str

    def render(self) -> str:
        sources = "".join(f"[{label}]" for label in self.inputs)
        return f"{sources}{','.join(self.filters)}[{self.output}]"


@dataclass(frozen=True)
class FilterGraph:
    chains: Tuple[FilterChain, ...]

    def render(self) -> str:
        return ";".join(chain.render() for chain in self.chains)

    def outputs(self) -> Tuple[str, ...]:
        return tuple(chain.output for chain in self.chains)

    def validate(self, input_count: int) -> None:
        """Check every label is well formed and resolvable in order."""
        if not self.chains:
            raise FilterGraphError("Filter graph is empty")

        produced: set = set()
        consumed: set = set()
        for chain in self.chains:
            if not chain.filters:
                raise FilterGraphError(f"Chain producing [{chain.output}] has no filters")
            for token in chain.filters:
                if not token or any(char in token for char in "[];\n"):
                    raise FilterGraphError(f"Malformed filter token: {token!r}")

            for label in chain.inputs:
                if not _LABEL_PATTERN.match(label):
                    raise FilterGraphError(f"Malformed input label: {label!r}")
                stream = _INPUT_STREAM_PATTERN.match(label)
                if stream:
                    if int(stream.group(1)) >= input_count:
                        raise FilterGraphError(
                            f"Filter references input {label} but only {input_count} inputs are declared"
                        )
                    continue
                if label not in produced:
                    raise FilterGraphError(f"Filter references unknown label [{label}]")
                if label in consumed:
                    raise FilterGraphError(f"Label [{label}] consumed twice")
                consumed.add(label)

            if not _LABEL_PATTERN.match(chain.output) or _INPUT_STREAM_PATTERN.match(chain.output):
                raise FilterGraphError(f"Malformed output label: {chain.output!r}")
            if chain.output in produced:
                raise FilterGraphError(f"Label [{chain.output}] produced twice")
            produced.add(chain.output)


def grid_shape(count: int) -> Tuple[int, int]:
    """Columns and rows for ``count`` tiles."""
    if count <= 1:
        return 1, 1
    if count == 2:
        return 2, 1
    if count == 3:
        return 3, 1
    if count == 4:
        return 2, 2
    return 3, 2


def grid_positions(count: int, width: int, height: int) -> List[Tuple[int, int]]:
    """Raster-order cell offsets ``(column * width, row * height)``."""
    cols, _ = grid_shape(count)
    return [((index % cols) * width, (index // cols) * height) for index in range(count)]


def output_size(count: int, profile: QualityProfile) -> Tuple[int, int]:
    cols, rows = grid_shape(count)
    return profile.width * cols, profile.height * rows


def black_source(profile: QualityProfile, fps: int, duration_sec: float) -> str:
    """lavfi expression for the placeholder used by cameras without footage."""
    return f"color=c=black:s={profile.width}x{profile.height}:r={fps}:d={format_seconds(duration_sec)}"


def camera_chain(
    index: int,
    source_index: int,
    *,
    profile: QualityProfile,
    fps: int,
    mirror: bool,
) -> FilterChain:
    filters = ["setpts=PTS-STARTPTS", f"fps={fps}:round=near"]
    if mirror:
        filters.append("hflip")
    filters.append(
        f"scale={profile.width}:{profile.height}:force_original_aspect_ratio=disable:flags=lanczos"
    )
    filters.append("setsar=1")
    return FilterChain(inputs=(f"{source_index}:v",), filters=tuple(filters), output=f"v{index}")


def build_grid_chains(
    active_cameras: Sequence[str],
    camera_inputs: Mapping[str, int],
    black_index: int,
    *,
    profile: QualityProfile,
    fps: int,
    mirror_cameras: bool = True,
) -> List[FilterChain]:
    """Normalize each selected camera and tile them into ``[grid]``.

    Cameras missing from ``camera_inputs`` read from the black source and are
    never mirrored.
    """
    chains: List[FilterChain] = []
    for index, camera in enumerate(active_cameras):
        input_index = camera_inputs.get(camera)
        has_video = input_index is not None
        chains.append(
            camera_chain(
                index,
                input_index if has_video else black_index,
                profile=profile,
                fps=fps,
                mirror=has_video and mirror_cameras and camera in MIRRORED_CAMERAS,
            )
        )

    count = len(chains)
    if count == 0:
        raise FilterGraphError("No cameras selected for the grid")

    stream_labels = tuple(chain.output for chain in chains)
    if count == 1:
        chains.append(FilterChain(inputs=stream_labels, filters=("copy",), output=GRID_LABEL))
        return chains

    layout = "|".join(f"{x}_{y}" for x, y in grid_positions(count, profile.width, profile.height))
    chains.append(
        FilterChain(
            inputs=stream_labels,
            filters=(f"xstack=inputs={count}:layout={layout}:fill=black",),
            output=GRID_LABEL,
        )
    )
    return chains


def build_export_graph(
    active_cameras: Sequence[str],
    camera_inputs: Mapping[str, int],
    black_index: int,
    *,
    profile: QualityProfile,
    fps: int,
    mirror_cameras: bool = True,
    overlay_index: Optional[int] = None,
    overlay_corner: str = "top-right",
    overlay_padding: int = OVERLAY_PADDING,
) -> FilterGraph:
    """Full graph: camera chains, grid, optional map overlay, pixel format."""
    chains = build_grid_chains(
        active_cameras,
        camera_inputs,
        black_index,
        profile=profile,
        fps=fps,
        mirror_cameras=mirror_cameras,
    )

    current = GRID_LABEL
    if overlay_index is not None:
        chains.append(
            FilterChain(
                inputs=(current, f"{overlay_index}:v"),
                filters=(f"overlay={overlay_position(overlay_corner, overlay_padding)}:format=auto:shortest=1",),
                output="mapped",
            )
        )
        current = "mapped"

    chains.append(FilterChain(inputs=(current,), filters=(f"format={OUTPUT_PIXEL_FORMAT}",), output=OUTPUT_LABEL))
    return FilterGraph(chains=tuple(chains))


__all__ = [
    "FilterChain",
    "FilterGraph",
    "FilterGraphError",
    "GRID_LABEL",
    "OUTPUT_LABEL",
    "black_source",
    "build_export_graph",
    "build_grid_chains",
    "camera_chain",
    "grid_positions",
    "grid_shape",
    "output_size",
    "overlay_position",
]
