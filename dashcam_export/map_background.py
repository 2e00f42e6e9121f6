"""Download and stitch basemap tiles into a themed minimap background."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
import uuid
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

import cv2
import numpy as np

from dashcam_export.errors import ExportError
from dashcam_export.models import MapBackground, MapBounds, TileGrid
from dashcam_export.tiles import TileDownloader, grid_bounds, tile_grid_for_bounds

PADDING_FACTOR = 0.15
# Used instead of a zero range when the vehicle did not move.
MIN_RANGE_DEG = 0.001
TILE_SIZE = 256

SATURATION = 0.7
CONTRAST = 1.1
BRIGHTNESS = -0.15


def compute_bounds(
    path: Sequence[Tuple[float, float]],
    *,
    padding: float = PADDING_FACTOR,
    min_range: float = MIN_RANGE_DEG,
) -> MapBounds:
    """Bounding box of ``path`` padded by ``padding`` of its range per axis."""
    if not path:
        raise ValueError("No GPS data for map background")

    lats = [lat for lat, _ in path]
    lons = [lon for _, lon in path]
    min_lat, max_lat = min(lats), max(lats)
    min_lon, max_lon = min(lons), max(lons)

    lat_pad = ((max_lat - min_lat) or min_range) * padding
    lon_pad = ((max_lon - min_lon) or min_range) * padding
    return MapBounds(
        min_lat=min_lat - lat_pad,
        max_lat=max_lat + lat_pad,
        min_lon=min_lon - lon_pad,
        max_lon=max_lon + lon_pad,
    )


def apply_dark_theme(image: np.ndarray) -> np.ndarray:
    """Desaturate and darken a BGR basemap so the route stands out."""
    hsv = cv2.cvtColor(image, cv2.COLOR_BGR2HSV).astype(np.float32)
    hsv[..., 1] *= SATURATION
    desaturated = cv2.cvtColor(np.clip(hsv, 0, 255).astype(np.uint8), cv2.COLOR_HSV2BGR)

    normalized = desaturated.astype(np.float32) / 255.0
    adjusted = (normalized - 0.5) * CONTRAST + 0.5 + BRIGHTNESS
    return np.clip(adjusted * 255.0, 0, 255).astype(np.uint8)


def _read_tile(path: Path, tile_size: int) -> np.ndarray:
    tile = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if tile is None:
        raise ExportError(f"Downloaded tile is not a readable image: {path.name}")
    if tile.shape[0] != tile_size or tile.shape[1] != tile_size:
        tile = cv2.resize(tile, (tile_size, tile_size), interpolation=cv2.INTER_AREA)
    return tile


def stitch_tiles(grid: TileGrid, target_size: int, *, tile_size: int = TILE_SIZE) -> np.ndarray:
    """Compose ``grid.tile_paths`` into one themed ``target_size`` square raster."""
    if grid.tiles_x * grid.tiles_y == 1:
        (only_path,) = grid.tile_paths.values()
        stitched = _read_tile(only_path, tile_size)
    else:
        stitched = np.zeros((grid.tiles_y * tile_size, grid.tiles_x * tile_size, 3), dtype=np.uint8)
        for (x, y), tile_path in grid.tile_paths.items():
            offset_x = (x - grid.top_left[0]) * tile_size
            offset_y = (y - grid.top_left[1]) * tile_size
            stitched[offset_y:offset_y + tile_size, offset_x:offset_x + tile_size] = _read_tile(
                tile_path, tile_size
            )

    themed = apply_dark_theme(stitched)
    return cv2.resize(themed, (target_size, target_size), interpolation=cv2.INTER_AREA)


class MapBackgroundBuilder:
    """Build the static basemap behind the minimap route."""

    def __init__(
        self,
        downloader: TileDownloader,
        *,
        temp_dir: Path,
        logger: Optional[logging.Logger] = None,
        request_delay: float = 0.1,
        tile_size: int = TILE_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.downloader = downloader
        self.temp_dir = Path(temp_dir)
        self.logger = logger or logging.getLogger("dashcam_export")
        self.request_delay = request_delay
        self.tile_size = tile_size
        self._sleep = sleep

    def download_grid(self, grid: TileGrid, tile_dir: Path) -> TileGrid:
        """Fetch every tile of ``grid`` sequentially into ``tile_dir``."""
        coordinates = grid.iter_tiles()
        self.logger.info(
            "Downloading %sx%s map tiles (%s total) at zoom %s",
            grid.tiles_x,
            grid.tiles_y,
            len(coordinates),
            grid.zoom,
        )

        tile_paths = {}
        for index, (x, y) in enumerate(coordinates):
            target = tile_dir / f"tile_{x}_{y}.png"
            tile_paths[(x, y)] = self.downloader.download_tile(grid.zoom, x, y, target)
            if index < len(coordinates) - 1:
                self._sleep(self.request_delay)

        return TileGrid(
            zoom=grid.zoom,
            top_left=grid.top_left,
            bottom_right=grid.bottom_right,
            tile_paths=tile_paths,
        )

    def build(
        self,
        path: Sequence[Tuple[float, float]],
        target_size: int,
        *,
        label: str = "export",
    ) -> MapBackground:
        """Download, stitch and theme the tiles under ``path``.

        The returned bounds are those of the outer tile edges, which is what
        the stitched image actually shows. Tile files are removed whether or
        not stitching succeeds.
        """
        requested = compute_bounds(path)
        grid = tile_grid_for_bounds(requested)
        self.logger.info("Map zoom %s selected for %s GPS points", grid.zoom, len(path))

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        tile_dir = Path(tempfile.mkdtemp(prefix=f"map_tiles_{label}_", dir=self.temp_dir))
        try:
            downloaded = self.download_grid(grid, tile_dir)
            raster = stitch_tiles(downloaded, target_size, tile_size=self.tile_size)
            output_path = self.temp_dir / f"map_bg_{label}_{uuid.uuid4().hex}.png"
            if not cv2.imwrite(str(output_path), raster):
                raise ExportError(f"Failed to write map background to {output_path}")
        finally:
            shutil.rmtree(tile_dir, ignore_errors=True)

        self.logger.info("Created map background: %s", output_path)
        return MapBackground(image_path=output_path, bounds=grid_bounds(grid), zoom=grid.zoom)


__all__ = [
    "MapBackgroundBuilder",
    "apply_dark_theme",
    "compute_bounds",
    "stitch_tiles",
]
