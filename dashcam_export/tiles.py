"""Web Mercator tile math and basemap tile downloads."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Optional, Tuple

import requests

from dashcam_export.errors import TileDownloadFailed
from dashcam_export.models import MapBounds, TileGrid

MAX_ZOOM = 18
MIN_ZOOM = 10
FALLBACK_ZOOM = 14
MAX_TILES_PER_AXIS = 4
SNAP_EPSILON = 1e-9
MAX_LATITUDE = 85.0511287798

DEFAULT_TILE_URL = "https://tile.openstreetmap.org"
DEFAULT_USER_AGENT = "dashcam-export/1.0 (dashcam footage viewer)"


def _floor(value: float) -> int:
    # Tile corners come back from tile_to_lat_lon a hair below the integer.
    return math.floor(value + SNAP_EPSILON)


def _mercator_y(lat: float, n: int) -> float:
    # Latitudes beyond the square Web Mercator world have no finite projection.
    lat_rad = math.radians(max(-MAX_LATITUDE, min(MAX_LATITUDE, lat)))
    return (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n


def lat_lon_to_tile(lat: float, lon: float, zoom: int) -> Tuple[int, int]:
    """Tile containing ``(lat, lon)`` at ``zoom``, clamped to the world."""
    n = 2 ** zoom
    x = _floor((lon + 180.0) / 360.0 * n)
    y = _floor(_mercator_y(lat, n))
    return max(0, min(n - 1, x)), max(0, min(n - 1, y))


def tile_to_lat_lon(x: float, y: float, zoom: int) -> Tuple[float, float]:
    """Latitude/longitude of the top-left corner of tile ``(x, y)``."""
    n = 2 ** zoom
    lon = x / n * 360.0 - 180.0
    lat_rad = math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n)))
    return math.degrees(lat_rad), lon


def fractional_tile(lat: float, lon: float, zoom: int) -> Tuple[float, float]:
    """Unfloored tile coordinates, for pixel placement."""
    n = 2 ** zoom
    x = (lon + 180.0) / 360.0 * n
    y = _mercator_y(lat, n)
    return x, y


def tile_span(bounds: MapBounds, zoom: int) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    """Top-left and bottom-right tiles covering ``bounds``."""
    top_left = lat_lon_to_tile(bounds.max_lat, bounds.min_lon, zoom)
    bottom_right = lat_lon_to_tile(bounds.min_lat, bounds.max_lon, zoom)
    return top_left, bottom_right


def select_zoom(bounds: MapBounds) -> int:
    """Highest zoom in [10, 18] whose tile rectangle is 1-4 tiles per axis."""
    for zoom in range(MAX_ZOOM, MIN_ZOOM - 1, -1):
        top_left, bottom_right = tile_span(bounds, zoom)
        tiles_x = bottom_right[0] - top_left[0] + 1
        tiles_y = bottom_right[1] - top_left[1] + 1
        if 1 <= tiles_x <= MAX_TILES_PER_AXIS and 1 <= tiles_y <= MAX_TILES_PER_AXIS:
            return zoom
    return FALLBACK_ZOOM


def tile_grid_for_bounds(bounds: MapBounds, zoom: Optional[int] = None) -> TileGrid:
    resolved_zoom = select_zoom(bounds) if zoom is None else zoom
    top_left, bottom_right = tile_span(bounds, resolved_zoom)
    return TileGrid(zoom=resolved_zoom, top_left=top_left, bottom_right=bottom_right)


def grid_bounds(grid: TileGrid) -> MapBounds:
    """Geographic bounds of the tile edges of ``grid``."""
    max_lat, min_lon = tile_to_lat_lon(grid.top_left[0], grid.top_left[1], grid.zoom)
    min_lat, max_lon = tile_to_lat_lon(grid.bottom_right[0] + 1, grid.bottom_right[1] + 1, grid.zoom)
    return MapBounds(min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon)


def project_to_pixel(
    lat: float,
    lon: float,
    bounds: MapBounds,
    width: int,
    height: int,
) -> Tuple[float, float]:
    """Place ``(lat, lon)`` on a ``width`` x ``height`` raster spanning ``bounds``.

    Uses Mercator y so points line up with the stitched tiles.
    """
    zoom = 0
    left, top = fractional_tile(bounds.max_lat, bounds.min_lon, zoom)
    right, bottom = fractional_tile(bounds.min_lat, bounds.max_lon, zoom)
    x, y = fractional_tile(lat, lon, zoom)
    span_x = (right - left) or 1e-12
    span_y = (bottom - top) or 1e-12
    return (x - left) / span_x * width, (y - top) / span_y * height


class TileDownloader:
    """Fetch basemap tiles one at a time from a slippy-map server."""

    def __init__(
        self,
        base_url: str = DEFAULT_TILE_URL,
        logger: Optional[logging.Logger] = None,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        http_timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = logger or logging.getLogger("dashcam_export")
        self.user_agent = user_agent
        self.http_timeout = http_timeout
        self.session = session

    def tile_url(self, zoom: int, x: int, y: int) -> str:
        return f"{self.base_url}/{zoom}/{x}/{y}.png"

    def download_tile(self, zoom: int, x: int, y: int, target: Path) -> Path:
        """Download one tile to ``target``; any failure is fatal for the caller."""
        url = self.tile_url(zoom, x, y)
        getter = self.session.get if self.session is not None else requests.get

        try:
            response = getter(
                url,
                headers={"User-Agent": self.user_agent},
                timeout=self.http_timeout,
            )
        except requests.Timeout as exc:
            raise TileDownloadFailed(url, timed_out=True) from exc
        except requests.RequestException as exc:
            raise TileDownloadFailed(url, reason=str(exc)) from exc

        if response.status_code != 200:
            raise TileDownloadFailed(url, http_status=response.status_code)

        with target.open("wb") as handle:
            handle.write(response.content)

        self.logger.debug("Downloaded tile %s/%s/%s to %s", zoom, x, y, target)
        return target


__all__ = [
    "TileDownloader",
    "fractional_tile",
    "grid_bounds",
    "lat_lon_to_tile",
    "project_to_pixel",
    "select_zoom",
    "tile_grid_for_bounds",
    "tile_span",
    "tile_to_lat_lon",
]
