"""Configuration dataclasses and loading helpers for the dashcam exporter."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from dashcam_export.errors import EncodeProcessSpawnError
from dashcam_export.tiles import DEFAULT_TILE_URL, DEFAULT_USER_AGENT


def _parse_bool(value: Any, default: bool) -> bool:
    """Parse truthy/falsy values from multiple input types."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return value != 0
    return default


def _parse_positive_int(value: Any, default: int) -> int:
    """Parse a positive integer with fallback to default."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _parse_positive_float(value: Any, default: float) -> float:
    """Parse a non-negative float with fallback to default."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class TileSettings:
    """Basemap tile provider settings."""

    base_url: str = DEFAULT_TILE_URL
    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = 10.0
    request_delay: float = 0.1
    tile_size: int = 256


@dataclass(frozen=True)
class MinimapSettings:
    load_timeout: float = 15.0
    frame_timeout: float = 3.0
    progress_interval: int = 36
    padding: int = 20


@dataclass(frozen=True)
class ExportSettings:
    """Top-level settings shared by every export job."""

    ffmpeg_path: Optional[str] = None
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    fps: int = 36
    mirror_cameras: bool = True
    hardware_max_dimension: int = 4096
    tiles: TileSettings = field(default_factory=TileSettings)
    minimap: MinimapSettings = field(default_factory=MinimapSettings)
    log_file: Optional[Path] = None
    log_level: str = "INFO"


def _parse_tile_settings(raw: Mapping[str, Any]) -> TileSettings:
    default = TileSettings()
    if not isinstance(raw, Mapping):
        return default
    return TileSettings(
        base_url=str(raw.get("base_url") or default.base_url),
        user_agent=str(raw.get("user_agent") or default.user_agent),
        timeout=_parse_positive_float(raw.get("timeout"), default.timeout),
        request_delay=_parse_positive_float(raw.get("request_delay"), default.request_delay),
        tile_size=_parse_positive_int(raw.get("tile_size"), default.tile_size),
    )


def _parse_minimap_settings(raw: Mapping[str, Any]) -> MinimapSettings:
    default = MinimapSettings()
    if not isinstance(raw, Mapping):
        return default
    return MinimapSettings(
        load_timeout=_parse_positive_float(raw.get("load_timeout"), default.load_timeout),
        frame_timeout=_parse_positive_float(raw.get("frame_timeout"), default.frame_timeout),
        progress_interval=_parse_positive_int(raw.get("progress_interval"), default.progress_interval),
        padding=_parse_positive_int(raw.get("padding"), default.padding),
    )


def _parse_export_settings(data: Mapping[str, Any]) -> ExportSettings:
    default = ExportSettings()
    temp_dir = _optional_str(data.get("temp_dir"))
    log_file = _optional_str(data.get("log_file"))
    return ExportSettings(
        ffmpeg_path=_optional_str(data.get("ffmpeg_path")),
        temp_dir=Path(temp_dir) if temp_dir else default.temp_dir,
        fps=_parse_positive_int(data.get("fps"), default.fps),
        mirror_cameras=_parse_bool(data.get("mirror_cameras"), default.mirror_cameras),
        hardware_max_dimension=_parse_positive_int(
            data.get("hardware_max_dimension"),
            default.hardware_max_dimension,
        ),
        tiles=_parse_tile_settings(data.get("tiles", {})),
        minimap=_parse_minimap_settings(data.get("minimap", {})),
        log_file=Path(log_file) if log_file else None,
        log_level=str(data.get("log_level") or default.log_level).upper(),
    )


def _load_env_config(env: Mapping[str, str]) -> ExportSettings:
    """Settings derived from environment variables."""
    return _parse_export_settings({
        "ffmpeg_path": env.get("FFMPEG_PATH"),
        "temp_dir": env.get("EXPORT_TEMP_DIR"),
        "fps": env.get("EXPORT_FPS"),
        "mirror_cameras": env.get("MIRROR_CAMERAS"),
        "tiles": {
            "base_url": env.get("TILE_BASE_URL"),
            "user_agent": env.get("TILE_USER_AGENT"),
            "timeout": env.get("TILE_TIMEOUT"),
            "request_delay": env.get("TILE_REQUEST_DELAY"),
        },
        "minimap": {
            "frame_timeout": env.get("MINIMAP_FRAME_TIMEOUT"),
            "load_timeout": env.get("MINIMAP_LOAD_TIMEOUT"),
        },
        "log_file": env.get("LOG_FILE"),
        "log_level": env.get("LOG_LEVEL"),
    })


def load_config(config_path: Path | str | None, env: Mapping[str, str] | None = None) -> ExportSettings:
    """Load settings from a JSON file or, when it is missing, the environment."""
    source_env = os.environ if env is None else env

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            return _parse_export_settings(data if isinstance(data, Mapping) else {})

    return _load_env_config(source_env)


def log_level_value(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


# ---------------------------------------------------------------------------
# Encoder binary discovery
# ---------------------------------------------------------------------------


def _candidate_binaries(configured: Optional[str], cwd: Path) -> List[str]:
    candidates: List[str] = []
    if configured:
        candidates.append(configured)

    bundled_name = "ffmpeg.exe" if sys.platform.startswith("win") else "ffmpeg"
    bundled = cwd / "ffmpeg_bin" / bundled_name
    if bundled.exists():
        candidates.append(str(bundled))

    on_path = shutil.which("ffmpeg")
    if on_path:
        candidates.append(on_path)
    return candidates


def find_ffmpeg(
    configured: Optional[str] = None,
    *,
    cwd: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
    run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> str:
    """Return the first encoder binary that answers ``-version``."""
    log = logger or logging.getLogger("dashcam_export")
    for candidate in _candidate_binaries(configured, cwd or Path.cwd()):
        try:
            result = run([candidate, "-version"], capture_output=True, timeout=5)
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("Encoder candidate %s unusable: %s", candidate, exc)
            continue
        if result.returncode == 0:
            log.info("Using encoder binary: %s", candidate)
            return candidate
        log.debug("Encoder candidate %s exited with %s", candidate, result.returncode)

    raise EncodeProcessSpawnError(
        "FFmpeg not found. Install it, place it in ffmpeg_bin/ or set FFMPEG_PATH."
    )


__all__ = [
    "ExportSettings",
    "MinimapSettings",
    "TileSettings",
    "find_ffmpeg",
    "load_config",
    "log_level_value",
]
