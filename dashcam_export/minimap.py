"""Render the minimap overlay track frame by frame through an encoder pipe."""

from __future__ import annotations

import collections
import logging
import math
import subprocess
import threading
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Deque, Optional

from dashcam_export.commands import EncodeCommand, InputSpec
from dashcam_export.errors import Cancelled, EncodeProcessFailed, EncodeProcessSpawnError, FrameRenderTimeout
from dashcam_export.models import EncoderChoice, MapBackground, MinimapOptions
from dashcam_export.surface import RasterMinimapSurface

SIZE_MULTIPLIERS = {
    "small": 0.25,
    "medium": 0.35,
    "large": 0.45,
    "xlarge": 0.55,
}

# Lossless codec with an alpha channel so the overlay composites cleanly.
OVERLAY_ENCODER = EncoderChoice(codec="qtrle", name="QuickTime Animation", params=(), hardware=False)
OVERLAY_PIXEL_FORMAT = "argb"

DIAGNOSTIC_TAIL_CHARS = 500

ProgressCallback = Callable[[int, str], None]
SurfaceFactory = Callable[..., RasterMinimapSurface]


def minimap_size(output_width: int, output_height: int, size: str) -> int:
    """Square overlay edge for ``size``, rounded up to an even pixel count."""
    multiplier = SIZE_MULTIPLIERS.get(size, SIZE_MULTIPLIERS["small"])
    edge = math.ceil(min(output_width, output_height) * multiplier)
    return edge + (edge % 2)


def frame_count(duration_sec: float, fps: int) -> int:
    return max(1, math.ceil(duration_sec * fps))


def overlay_command(ffmpeg_path: str, output_path: Path, fps: int) -> EncodeCommand:
    """PNG frames on stdin to a lossless alpha video."""
    command = EncodeCommand(
        binary=ffmpeg_path,
        encoder=OVERLAY_ENCODER,
        frame_rate=fps,
        pixel_format=OVERLAY_PIXEL_FORMAT,
        faststart=False,
        output_path=output_path,
    )
    command.add_input(
        InputSpec(source="pipe:0", format="image2pipe", options=("-framerate", str(fps)))
    )
    return command


class MinimapFrameRenderer:
    """Drive a render surface and stream its snapshots into an encoder."""

    def __init__(
        self,
        ffmpeg_path: str,
        *,
        fps: int = 36,
        frame_timeout: float = 3.0,
        load_timeout: float = 15.0,
        progress_interval: int = 36,
        logger: Optional[logging.Logger] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        surface_factory: SurfaceFactory = RasterMinimapSurface,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.fps = fps
        self.frame_timeout = frame_timeout
        self.load_timeout = load_timeout
        self.progress_interval = max(1, progress_interval)
        self.logger = logger or logging.getLogger("dashcam_export")
        self._popen = popen
        self._surface_factory = surface_factory

    def _spawn(self, output_path: Path) -> subprocess.Popen:
        argv = overlay_command(self.ffmpeg_path, output_path, self.fps).to_argv()
        self.logger.debug("Minimap encoder command: %s", " ".join(argv))
        try:
            return self._popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise EncodeProcessSpawnError(f"Failed to start minimap encoder: {exc}") from exc

    @staticmethod
    def _drain(stream, tail: Deque[bytes]) -> None:
        for chunk in iter(lambda: stream.read(4096), b""):
            tail.append(chunk)

    def render(
        self,
        options: MinimapOptions,
        background: Optional[MapBackground],
        *,
        start_time_ms: float,
        duration_sec: float,
        size: int,
        output_path: Path,
        cancel_event: threading.Event,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Render ``duration_sec`` of overlay frames to ``output_path``.

        Frames are requested strictly in order; the next timestamp is only
        sent once the previous snapshot has been written to the encoder.
        Cancellation is polled before every frame.
        """
        total_frames = frame_count(duration_sec, self.fps)
        report = on_progress or (lambda percent, message: None)

        surface = self._surface_factory(size, size, background, logger=self.logger)
        surface.load(self.load_timeout)

        process: Optional[subprocess.Popen] = None
        finished = False
        try:
            surface.init_path(options.path)
            surface.set_gps_data(options.samples)

            process = self._spawn(output_path)
            stdin = process.stdin
            if stdin is None:
                raise EncodeProcessSpawnError("Minimap encoder was started without a stdin pipe")
            tail: Deque[bytes] = collections.deque(maxlen=16)
            drainer = None
            if process.stderr is not None:
                drainer = threading.Thread(
                    target=self._drain, args=(process.stderr, tail), name="minimap-stderr", daemon=True
                )
                drainer.start()

            self.logger.info("Rendering %s minimap frames at %sx%s", total_frames, size, size)
            for frame in range(total_frames):
                if cancel_event.is_set():
                    raise Cancelled("Minimap rendering cancelled")

                timestamp_ms = start_time_ms + frame / self.fps * 1000.0
                future = surface.request_frame(timestamp_ms)
                try:
                    future.result(timeout=self.frame_timeout)
                except FutureTimeout:
                    raise FrameRenderTimeout(timestamp_ms, self.frame_timeout) from None

                frame_png = surface.capture()
                try:
                    stdin.write(frame_png)
                except OSError as exc:
                    raise self._pipe_failure(process, drainer, tail, exc) from exc

                done = frame + 1
                if done % self.progress_interval == 0:
                    percent = 100 * done // total_frames
                    report(percent, f"Rendering minimap... {percent}%")

            try:
                stdin.close()
            except OSError as exc:
                raise self._pipe_failure(process, drainer, tail, exc) from exc
            return_code = process.wait()
            if drainer is not None:
                drainer.join(timeout=5)
            if return_code != 0:
                diagnostic = b"".join(tail).decode("utf-8", errors="ignore")
                raise EncodeProcessFailed(return_code, diagnostic[-DIAGNOSTIC_TAIL_CHARS:])

            finished = True
            report(100, "Minimap rendered")
            self.logger.info("Minimap overlay written to %s", output_path)
            return output_path
        finally:
            surface.close()
            if not finished:
                self._abort(process, output_path)

    def _pipe_failure(
        self,
        process: subprocess.Popen,
        drainer: Optional[threading.Thread],
        tail: Deque[bytes],
        exc: OSError,
    ) -> EncodeProcessFailed:
        """The encoder stopped reading frames; report its exit status and stderr."""
        try:
            return_code = process.wait(timeout=self.frame_timeout)
        except subprocess.TimeoutExpired:
            return_code = None
        if drainer is not None:
            drainer.join(timeout=1)
        diagnostic = b"".join(tail).decode("utf-8", errors="ignore") or str(exc)
        exit_code = return_code if return_code is not None else -1
        self.logger.error("Minimap encoder stopped accepting frames (exit %s): %s", exit_code, diagnostic)
        return EncodeProcessFailed(exit_code, diagnostic[-DIAGNOSTIC_TAIL_CHARS:])

    def _abort(self, process: Optional[subprocess.Popen], output_path: Path) -> None:
        if process is not None:
            if process.stdin is not None and not process.stdin.closed:
                try:
                    process.stdin.close()
                except OSError:
                    pass
            if process.poll() is None:
                process.terminate()
        try:
            output_path.unlink()
        except FileNotFoundError:
            pass


__all__ = [
    "MinimapFrameRenderer",
    "SIZE_MULTIPLIERS",
    "frame_count",
    "minimap_size",
    "overlay_command",
]
