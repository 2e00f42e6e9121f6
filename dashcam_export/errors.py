"""Error taxonomy for the export and minimap pipelines."""

from __future__ import annotations

from typing import Optional


class ExportError(Exception):
    """Base class for every failure raised by the export pipeline."""


class NoSegmentsInRange(ExportError):
    def __init__(self, start_ms: float, end_ms: float) -> None:
        super().__init__(f"No segments found in export range {start_ms:.0f}-{end_ms:.0f} ms")
        self.start_ms = start_ms
        self.end_ms = end_ms


class NoValidCameraFiles(ExportError):
    def __init__(self) -> None:
        super().__init__("No valid camera files found for export")


class EncodeProcessFailed(ExportError):
    def __init__(self, exit_code: int, diagnostic_tail: str) -> None:
        super().__init__(f"Encoder exited with code {exit_code}")
        self.exit_code = exit_code
        self.diagnostic_tail = diagnostic_tail


class EncodeProcessSpawnError(ExportError):
    pass


class TileDownloadFailed(ExportError):
    def __init__(
        self,
        url: str,
        *,
        http_status: Optional[int] = None,
        timed_out: bool = False,
        reason: str = "",
    ) -> None:
        if timed_out:
            detail = "timeout"
        elif http_status is not None:
            detail = f"HTTP {http_status}"
        else:
            detail = reason or "transport error"
        super().__init__(f"Failed to download tile {url}: {detail}")
        self.url = url
        self.http_status = http_status
        self.timed_out = timed_out


class RenderSurfaceLoadTimeout(ExportError):
    pass


class RenderSurfaceLoadFailed(ExportError):
    pass


class FrameRenderTimeout(ExportError):
    def __init__(self, timestamp_ms: float, timeout: float) -> None:
        super().__init__(f"Minimap frame at {timestamp_ms:.0f} ms not ready after {timeout:.1f}s")
        self.timestamp_ms = timestamp_ms


class Cancelled(ExportError):
    def __init__(self, message: str = "Export cancelled") -> None:
        super().__init__(message)


__all__ = [
    "Cancelled",
    "EncodeProcessFailed",
    "EncodeProcessSpawnError",
    "ExportError",
    "FrameRenderTimeout",
    "NoSegmentsInRange",
    "NoValidCameraFiles",
    "RenderSurfaceLoadFailed",
    "RenderSurfaceLoadTimeout",
    "TileDownloadFailed",
]
