"""
Multi-camera dashcam export: grid composition, encoder selection and an
optional GPS minimap overlay.
"""

from .config import ExportSettings, load_config
from .errors import Cancelled, ExportError
from .jobs import ActiveJobRegistry, ExportJob, ExportJobManager
from .models import CompletionEvent, ExportRequest, MinimapOptions, ProgressEvent, Segment

__all__ = [
    "ActiveJobRegistry",
    "Cancelled",
    "CompletionEvent",
    "ExportError",
    "ExportJob",
    "ExportJobManager",
    "ExportRequest",
    "ExportSettings",
    "MinimapOptions",
    "ProgressEvent",
    "Segment",
    "load_config",
]
