"""Turn overlapping segments into encoder inputs, one per camera."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from dashcam_export.errors import NoValidCameraFiles
from dashcam_export.models import CAMERA_ORDER, RelevantSegment, ResolvedCameraInput


def _existing_files(
    relevant: Sequence[RelevantSegment],
    camera: str,
) -> List[Tuple[Path, RelevantSegment]]:
    files: List[Tuple[Path, RelevantSegment]] = []
    for segment in relevant:
        raw_path = segment.file_for(camera)
        if not raw_path:
            continue
        path = Path(raw_path)
        if path.exists():
            files.append((path, segment))
    return files


def write_concat_manifest(paths: Sequence[Path], manifest_path: Path) -> Path:
    """Write a concat list file with forward-slash paths."""
    lines = []
    for path in paths:
        normalized = str(path).replace("\\", "/")
        lines.append(f"file '{normalized}'")
    manifest_path.write_text("\n".join(lines), encoding="utf-8")
    return manifest_path


def resolve_camera_inputs(
    relevant: Sequence[RelevantSegment],
    cameras: Sequence[str],
    start_time_ms: float,
    temp_dir: Path,
    temp_files: List[Path],
    *,
    logger: Optional[logging.Logger] = None,
) -> List[ResolvedCameraInput]:
    """Resolve the selected cameras into direct or concatenated inputs.

    Cameras without any file on disk are left out; the filter graph fills
    their grid cell with a black source. Every manifest written here is
    appended to ``temp_files`` before it is created.
    """
    log = logger or logging.getLogger("dashcam_export")
    selected = set(cameras)
    inputs: List[ResolvedCameraInput] = []

    for camera in CAMERA_ORDER:
        if camera not in selected:
            continue

        files = _existing_files(relevant, camera)
        if not files:
            log.debug("No footage for camera %s; using black placeholder", camera)
            continue

        first_path, first_segment = files[0]
        offset_sec = max(0.0, start_time_ms - first_segment.seg_start_ms) / 1000.0

        if len(files) == 1:
            inputs.append(
                ResolvedCameraInput(
                    camera=camera,
                    path=first_path,
                    offset_sec=offset_sec,
                    is_concat=False,
                )
            )
            continue

        manifest_path = temp_dir / f"export_{camera}_{uuid.uuid4().hex}.txt"
        temp_files.append(manifest_path)
        write_concat_manifest([path for path, _ in files], manifest_path)
        log.debug("Wrote concat manifest for %s with %s files: %s", camera, len(files), manifest_path)
        inputs.append(
            ResolvedCameraInput(
                camera=camera,
                path=manifest_path,
                offset_sec=offset_sec,
                is_concat=True,
            )
        )

    if not inputs:
        raise NoValidCameraFiles()
    return inputs


__all__ = ["resolve_camera_inputs", "write_concat_manifest"]
