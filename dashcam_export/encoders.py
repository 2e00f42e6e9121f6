"""Hardware encoder detection and per-encoder quality arguments."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
from typing import Callable, Dict, List, Optional, Tuple

from dashcam_export.models import EncoderChoice, QualityProfile

# (front-only, multi-camera) per tier. Multi-camera targets stay at or below
# the side cameras' native 1448x938 so nothing is upscaled.
QUALITY_TABLE: Dict[str, Tuple[QualityProfile, QualityProfile]] = {
    "mobile": (QualityProfile(724, 469, 28), QualityProfile(484, 314, 28)),
    "medium": (QualityProfile(1448, 938, 26), QualityProfile(724, 469, 26)),
    "high": (QualityProfile(2172, 1407, 23), QualityProfile(1086, 704, 23)),
    "max": (QualityProfile(2896, 1876, 20), QualityProfile(1448, 938, 20)),
}

# Tiers outside the table, including "low", use this pair.
FALLBACK_PROFILES: Tuple[QualityProfile, QualityProfile] = (
    QualityProfile(1448, 938, 23),
    QualityProfile(1086, 704, 23),
)

# Tiers that always encode in software.
LOW_QUALITY_TIERS = frozenset({"mobile", "low"})

SOFTWARE_CODEC = "libx264"
SOFTWARE_NAME = "libx264 (CPU)"

HARDWARE_CANDIDATES: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "darwin": (("h264_videotoolbox", "Apple VideoToolbox"),),
    "win32": (
        ("h264_nvenc", "NVIDIA NVENC"),
        ("h264_amf", "AMD AMF"),
        ("h264_qsv", "Intel QuickSync"),
    ),
    "linux": (
        ("h264_nvenc", "NVIDIA NVENC"),
        ("h264_qsv", "Intel QuickSync"),
    ),
}

FATAL_PROBE_MARKERS = (
    "no such device",
    "could not open encoder",
    "failed to create encoder",
    "cannot load",
    "device creation failed",
    "no capable devices found",
    "no device available",
    "no hardware device found",
    "task finished with error",
    "invalid argument",
)

DEFAULT_MAX_HARDWARE_DIMENSION = 4096

RunFn = Callable[..., subprocess.CompletedProcess]


def quality_profile(tier: str, *, front_only: bool) -> QualityProfile:
    """Look up the per-camera target for a quality tier."""
    front, multi = QUALITY_TABLE.get(tier, FALLBACK_PROFILES)
    return front if front_only else multi


def videotoolbox_quality(quality: int) -> int:
    """VideoToolbox counts quality upwards; map the crf-like value onto it."""
    return max(40, 100 - quality * 2)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _software_threads() -> int:
    return max(1, min(4, (os.cpu_count() or 1) // 2))


def encoder_params(codec: str, quality: int, *, fps: int, mobile: bool = False) -> Tuple[str, ...]:
    """Encoder-specific flags for ``codec`` at crf-like ``quality``."""
    gop = str(fps * 2)

    if codec.endswith("_nvenc"):
        qp = _clamp(quality, 0, 51)
        return ("-preset", "p4", "-rc", "constqp", "-qp", str(qp), "-g", gop, "-forced-idr", "1")

    if codec.endswith("_amf"):
        if quality >= 28:
            preset = "speed"
        elif quality >= 24:
            preset = "balanced"
        else:
            preset = "quality"
        return (
            "-quality", preset,
            "-rc", "cqp",
            "-qp_i", str(_clamp(quality, 18, 46)),
            "-qp_p", str(_clamp(quality + 2, 18, 46)),
            "-qp_b", str(_clamp(quality + 4, 18, 46)),
            "-g", gop,
        )

    if codec.endswith("_videotoolbox"):
        return (
            "-q:v", str(videotoolbox_quality(quality)),
            "-allow_sw", "1",
            "-realtime", "0",
            "-g", gop,
        )

    if codec.endswith("_qsv"):
        return ("-preset", "medium", "-global_quality", str(_clamp(quality, 18, 46)), "-g", gop)

    threads = _software_threads()
    return (
        "-preset", "faster" if mobile else "fast",
        "-crf", str(quality),
        "-threads", str(threads),
        "-x264-params", f"threads={threads}:thread-input=1:thread-lookahead=2",
    )


def _platform_key(platform: str) -> str:
    if platform.startswith("win"):
        return "win32"
    if platform == "darwin":
        return "darwin"
    return "linux"


class EncoderSelector:
    """Probe hardware encoders once and pick an encoder per export.

    The probe result is written at most once per instance and then only read;
    ``shared_selector`` keeps one instance per encoder binary for the life of
    the process.
    """

    _UNPROBED = object()

    def __init__(
        self,
        ffmpeg_path: str,
        *,
        logger: Optional[logging.Logger] = None,
        platform: Optional[str] = None,
        max_hardware_dimension: int = DEFAULT_MAX_HARDWARE_DIMENSION,
        fps: int = 36,
        run: Optional[RunFn] = None,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.logger = logger or logging.getLogger("dashcam_export")
        self.platform = _platform_key(platform or sys.platform)
        self.max_hardware_dimension = max_hardware_dimension
        self.fps = fps
        self._run = run or subprocess.run
        self._lock = threading.Lock()
        self._hardware: object = self._UNPROBED

    # ------------------------------------------------------------------
    # Capability probe
    # ------------------------------------------------------------------

    def _list_encoders(self) -> str:
        try:
            result = self._run(
                [self.ffmpeg_path, "-hide_banner", "-encoders"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            self.logger.warning("Unable to list encoders: %s", exc)
            return ""
        return result.stdout or ""

    def test_encoder(self, codec: str) -> bool:
        """Run a one-frame trial encode; only a clean exit counts as usable."""
        try:
            help_result = self._run(
                [self.ffmpeg_path, "-hide_banner", "-h", f"encoder={codec}"],
                capture_output=True,
                text=True,
                timeout=2,
            )
            help_output = f"{help_result.stdout or ''}{help_result.stderr or ''}"
            if any(marker in help_output for marker in ("Unknown encoder", "No such encoder", "not found")):
                return False

            args: List[str] = [
                self.ffmpeg_path,
                "-hide_banner",
                "-f",
                "lavfi",
                "-i",
                "testsrc2=duration=1:size=320x240:rate=1",
            ]
            if "videotoolbox" in codec:
                args.extend(["-b:v", "2M"])
            args.extend(["-c:v", codec, "-frames:v", "1", "-f", "null", "-"])

            result = self._run(args, capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.SubprocessError) as exc:
            self.logger.debug("Trial encode with %s raised: %s", codec, exc)
            return False

        output = f"{result.stdout or ''}{result.stderr or ''}".lower()
        for marker in FATAL_PROBE_MARKERS:
            if marker in output:
                self.logger.debug("%s rejected: %s", codec, marker)
                return False
        return result.returncode == 0

    def _probe(self) -> Optional[Tuple[str, str]]:
        listing = self._list_encoders()
        for codec, name in HARDWARE_CANDIDATES[self.platform]:
            if codec not in listing:
                continue
            self.logger.info("Testing %s (%s)...", name, codec)
            if self.test_encoder(codec):
                self.logger.info("Hardware encoder available: %s", name)
                return codec, name
            self.logger.warning("%s is listed but not usable", codec)
        self.logger.info("No usable hardware encoder found, will use CPU encoding")
        return None

    def hardware_encoder(self) -> Optional[Tuple[str, str]]:
        """Return ``(codec, name)`` of the preferred usable hardware encoder."""
        with self._lock:
            if self._hardware is self._UNPROBED:
                self._hardware = self._probe()
            return self._hardware  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def choose(
        self,
        profile: QualityProfile,
        output_width: int,
        output_height: int,
        *,
        low_quality: bool = False,
    ) -> EncoderChoice:
        """Pick hardware when allowed, otherwise fall back to software."""
        hardware = None if low_quality else self.hardware_encoder()
        if hardware is not None:
            if max(output_width, output_height) <= self.max_hardware_dimension:
                codec, name = hardware
                return EncoderChoice(
                    codec=codec,
                    name=name,
                    params=encoder_params(codec, profile.quality, fps=self.fps),
                    hardware=True,
                )
            self.logger.warning(
                "Resolution %sx%s exceeds hardware limit of %spx, using CPU encoder",
                output_width,
                output_height,
                self.max_hardware_dimension,
            )

        return EncoderChoice(
            codec=SOFTWARE_CODEC,
            name=SOFTWARE_NAME,
            params=encoder_params(SOFTWARE_CODEC, profile.quality, fps=self.fps, mobile=low_quality),
            hardware=False,
        )


_shared_selectors: Dict[str, EncoderSelector] = {}
_shared_lock = threading.Lock()


def shared_selector(ffmpeg_path: str, **kwargs) -> EncoderSelector:
    """Process-wide selector for ``ffmpeg_path``, created on first use."""
    with _shared_lock:
        selector = _shared_selectors.get(ffmpeg_path)
        if selector is None:
            selector = EncoderSelector(ffmpeg_path, **kwargs)
            _shared_selectors[ffmpeg_path] = selector
        return selector


__all__ = [
    "EncoderSelector",
    "FALLBACK_PROFILES",
    "LOW_QUALITY_TIERS",
    "QUALITY_TABLE",
    "encoder_params",
    "quality_profile",
    "shared_selector",
    "videotoolbox_quality",
]
