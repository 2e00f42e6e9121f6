"""Offscreen raster surface that draws the minimap one timestamp at a time.

The surface owns a worker thread and is driven only through messages: seed
the route, seed the GPS table, render at a timestamp. Each render request is
answered through a single-slot future owned by the surface instance.
"""

from __future__ import annotations

import bisect
import logging
import math
import queue
import threading
from concurrent.futures import Future
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from dashcam_export.errors import RenderSurfaceLoadFailed, RenderSurfaceLoadTimeout
from dashcam_export.map_background import compute_bounds
from dashcam_export.models import GpsSample, MapBackground, MapBounds
from dashcam_export.tiles import project_to_pixel

PANEL_COLOR = (38, 32, 28, 235)
ROUTE_COLOR = (255, 170, 40, 255)
MARKER_COLOR = (70, 70, 235, 255)
MARKER_OUTLINE = (255, 255, 255, 255)


def interpolate_position(samples: Sequence[GpsSample], timestamp_ms: float) -> Tuple[float, float, float]:
    """Linear lat/lon and shortest-arc heading at ``timestamp_ms``.

    Timestamps outside the table clamp to the first or last sample.
    """
    if not samples:
        raise ValueError("GPS table is empty")

    times = [sample.timestamp_ms for sample in samples]
    index = bisect.bisect_right(times, timestamp_ms)
    if index == 0:
        first = samples[0]
        return first.lat, first.lon, first.heading % 360.0
    if index >= len(samples):
        last = samples[-1]
        return last.lat, last.lon, last.heading % 360.0

    before, after = samples[index - 1], samples[index]
    span = after.timestamp_ms - before.timestamp_ms
    fraction = (timestamp_ms - before.timestamp_ms) / span if span > 0 else 0.0

    lat = before.lat + (after.lat - before.lat) * fraction
    lon = before.lon + (after.lon - before.lon) * fraction
    turn = (after.heading - before.heading + 540.0) % 360.0 - 180.0
    heading = (before.heading + turn * fraction) % 360.0
    return lat, lon, heading


def marker_polygon(center: Tuple[float, float], heading: float, radius: float) -> np.ndarray:
    """Arrowhead pointing at ``heading`` degrees clockwise from north."""
    cx, cy = center
    points = []
    for offset, scale in ((0.0, 1.0), (140.0, 0.7), (180.0, 0.3), (220.0, 0.7)):
        angle = math.radians(heading + offset)
        points.append((cx + math.sin(angle) * radius * scale, cy - math.cos(angle) * radius * scale))
    return np.array(points, dtype=np.int32)


class RasterMinimapSurface:
    """Headless minimap canvas rendered with OpenCV on a private thread."""

    _STOP = object()

    def __init__(
        self,
        width: int,
        height: int,
        background: Optional[MapBackground] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.width = width
        self.height = height
        self.background = background
        self.logger = logger or logging.getLogger("dashcam_export")

        self._messages: "queue.Queue[object]" = queue.Queue()
        self._loaded = threading.Event()
        self._load_error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

        self._static: Optional[np.ndarray] = None
        self._bounds: Optional[MapBounds] = background.bounds if background else None
        self._samples: Tuple[GpsSample, ...] = ()

        self._frame_lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None
        self._slot_lock = threading.Lock()
        self._pending: Optional[Tuple[float, Future]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self, timeout: float) -> None:
        """Start the worker and wait for the background to be ready."""
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="minimap-surface", daemon=True)
            self._thread.start()

        if not self._loaded.wait(timeout):
            self.close()
            raise RenderSurfaceLoadTimeout(f"Minimap surface did not load within {timeout:.0f}s")
        if self._load_error is not None:
            self.close()
            raise RenderSurfaceLoadFailed(f"Minimap surface failed to load: {self._load_error}")

    def close(self) -> None:
        if self._thread is None:
            return
        self._messages.put(self._STOP)
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        with self._slot_lock:
            pending, self._pending = self._pending, None
        if pending is not None:
            pending[1].cancel()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def init_path(self, path: Sequence[Tuple[float, float]]) -> None:
        """Draw the static route and fix the map view."""
        self._messages.put(("path", tuple(path)))

    def set_gps_data(self, samples: Sequence[GpsSample]) -> None:
        ordered = tuple(sorted(samples, key=lambda sample: sample.timestamp_ms))
        self._messages.put(("gps", ordered))

    def request_frame(self, timestamp_ms: float) -> Future:
        """Ask for a render at ``timestamp_ms``; the future resolves when drawn.

        Only one request may be outstanding at a time.
        """
        future: Future = Future()
        with self._slot_lock:
            if self._pending is not None and not self._pending[1].done():
                raise RuntimeError("A minimap frame is already pending")
            self._pending = (timestamp_ms, future)
        self._messages.put(("render", timestamp_ms))
        return future

    def capture(self) -> bytes:
        """PNG snapshot (BGRA) of the last rendered frame."""
        with self._frame_lock:
            if self._frame is None:
                raise RuntimeError("No minimap frame has been rendered")
            ok, encoded = cv2.imencode(".png", self._frame)
        if not ok:
            raise RuntimeError("Failed to encode minimap frame")
        return encoded.tobytes()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _load_background(self) -> np.ndarray:
        if self.background is None:
            return np.full((self.height, self.width, 4), PANEL_COLOR, dtype=np.uint8)

        image = cv2.imread(str(self.background.image_path), cv2.IMREAD_COLOR)
        if image is None:
            raise RuntimeError(f"cannot read {self.background.image_path}")
        image = cv2.resize(image, (self.width, self.height), interpolation=cv2.INTER_AREA)
        return cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)

    def _run(self) -> None:
        try:
            base = self._load_background()
        except Exception as exc:  # reported to load() and re-raised there
            self._load_error = exc
            self._loaded.set()
            return
        self._static = base.copy()
        self._loaded.set()

        while True:
            message = self._messages.get()
            if message is self._STOP:
                return
            kind, payload = message  # type: ignore[misc]
            if kind == "path":
                self._draw_route(base, payload)
            elif kind == "gps":
                self._samples = payload
            elif kind == "render":
                self._render(payload)

    def _view_bounds(self, points: Sequence[Tuple[float, float]]) -> MapBounds:
        if self._bounds is None:
            self._bounds = compute_bounds(points)
        return self._bounds

    def _draw_route(self, base: np.ndarray, path: Tuple[Tuple[float, float], ...]) -> None:
        static = base.copy()
        if len(path) >= 2:
            bounds = self._view_bounds(path)
            points = np.array(
                [project_to_pixel(lat, lon, bounds, self.width, self.height) for lat, lon in path],
                dtype=np.int32,
            )
            thickness = max(2, self.width // 100)
            cv2.polylines(static, [points], False, ROUTE_COLOR, thickness, lineType=cv2.LINE_AA)
        self._static = static
        self.logger.debug("Minimap route drawn with %s points", len(path))

    def _render(self, timestamp_ms: float) -> None:
        with self._slot_lock:
            pending = self._pending
        if pending is None or pending[0] != timestamp_ms:
            return
        future = pending[1]
        if not future.set_running_or_notify_cancel():
            return

        try:
            static = self._static
            if static is None:
                raise RuntimeError("Minimap surface is not loaded")
            frame = static.copy()
            if self._samples:
                bounds = self._view_bounds([(s.lat, s.lon) for s in self._samples])
                lat, lon, heading = interpolate_position(self._samples, timestamp_ms)
                center = project_to_pixel(lat, lon, bounds, self.width, self.height)
                radius = max(6.0, self.width / 18.0)
                polygon = marker_polygon(center, heading, radius)
                cv2.fillPoly(frame, [polygon], MARKER_COLOR, lineType=cv2.LINE_AA)
                cv2.polylines(frame, [polygon], True, MARKER_OUTLINE, 1, lineType=cv2.LINE_AA)
            with self._frame_lock:
                self._frame = frame
        except Exception as exc:  # delivered to the waiting caller
            future.set_exception(exc)
            return
        future.set_result(timestamp_ms)


__all__ = ["RasterMinimapSurface", "interpolate_position", "marker_polygon"]
