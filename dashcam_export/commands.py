"""Typed encoder command builder.

Arguments are collected as typed pieces and only flattened into an argv list
after validation, so a malformed filter graph or a dangling stream reference
is caught before a process is spawned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dashcam_export.filters import FilterGraph, FilterGraphError
from dashcam_export.models import EncoderChoice, ResolvedCameraInput
from dashcam_export.progress import format_seconds


# Applied before any input to keep demuxer buffering small with six inputs.
MEMORY_FLAGS: Tuple[str, ...] = (
    "-thread_queue_size", "512",
    "-probesize", "32M",
    "-analyzeduration", "10M",
    "-fflags", "+genpts+discardcorrupt",
    "-flags", "+low_delay",
)


class CommandValidationError(ValueError):
    """Raised when an encode command is incomplete or inconsistent."""


@dataclass(frozen=True)
class InputSpec:
    """One ``-i`` declaration and the options that must precede it."""

    source: str
    format: Optional[str] = None
    seek_sec: float = 0.0
    options: Tuple[str, ...] = ()

    def tokens(self) -> List[str]:
        tokens: List[str] = list(self.options)
        if self.format:
            tokens.extend(["-f", self.format])
        if self.format == "concat":
            tokens.extend(["-safe", "0"])
        if self.seek_sec > 0:
            tokens.extend(["-ss", format_seconds(self.seek_sec)])
        tokens.extend(["-i", self.source])
        return tokens

    @classmethod
    def for_camera(cls, resolved: ResolvedCameraInput) -> "InputSpec":
        return cls(
            source=str(resolved.path),
            format="concat" if resolved.is_concat else None,
            seek_sec=resolved.offset_sec,
            options=("-thread_queue_size", "16"),
        )

    @classmethod
    def lavfi(cls, expression: str) -> "InputSpec":
        return cls(source=expression, format="lavfi")


@dataclass
class EncodeCommand:
    """Ordered encoder invocation.

    Output side order: filter graph, stream map, encoder flags, duration,
    container flags, pixel format, frame rate, extra output flags, then the
    destination as the final positional argument.
    """

    binary: str
    global_options: List[str] = field(default_factory=lambda: ["-y"])
    inputs: List[InputSpec] = field(default_factory=list)
    filter_graph: Optional[FilterGraph] = None
    output_map: Optional[str] = None
    encoder: Optional[EncoderChoice] = None
    duration_sec: Optional[float] = None
    frame_rate: Optional[int] = None
    pixel_format: Optional[str] = "yuv420p"
    faststart: bool = True
    extra_output_options: List[str] = field(default_factory=list)
    output_path: Optional[Path] = None

    def add_global_options(self, *tokens: str) -> "EncodeCommand":
        self.global_options.extend(tokens)
        return self

    def add_input(self, spec: InputSpec) -> int:
        """Append an input and return its stream index."""
        self.inputs.append(spec)
        return len(self.inputs) - 1

    def validate(self) -> None:
        if not self.binary:
            raise CommandValidationError("Encoder binary is not set")
        if not self.inputs:
            raise CommandValidationError("Command has no inputs")
        if self.output_path is None:
            raise CommandValidationError("Command has no output path")
        if self.encoder is None:
            raise CommandValidationError("Command has no encoder")
        if self.duration_sec is not None and self.duration_sec <= 0:
            raise CommandValidationError(f"Duration must be positive, got {self.duration_sec}")
        if self.frame_rate is not None and self.frame_rate <= 0:
            raise CommandValidationError(f"Frame rate must be positive, got {self.frame_rate}")

        if self.filter_graph is not None:
            try:
                self.filter_graph.validate(len(self.inputs))
            except FilterGraphError as exc:
                raise CommandValidationError(str(exc)) from exc
            if self.output_map is None:
                raise CommandValidationError("Filter graph output is not mapped")
            if self.output_map not in self.filter_graph.outputs():
                raise CommandValidationError(
                    f"Mapped label [{self.output_map}] is not produced by the filter graph"
                )
        elif self.output_map is not None:
            raise CommandValidationError("Output map given without a filter graph")

    def to_argv(self) -> List[str]:
        self.validate()

        argv: List[str] = [self.binary, *self.global_options]
        for spec in self.inputs:
            argv.extend(spec.tokens())

        if self.filter_graph is not None:
            argv.extend(["-filter_complex", self.filter_graph.render()])
            argv.extend(["-map", f"[{self.output_map}]"])

        argv.extend(["-c:v", self.encoder.codec, *self.encoder.params])
        if self.duration_sec is not None:
            argv.extend(["-t", format_seconds(self.duration_sec)])
        if self.faststart:
            argv.extend(["-movflags", "+faststart"])
        if self.pixel_format:
            argv.extend(["-pix_fmt", self.pixel_format])
        if self.frame_rate is not None:
            argv.extend(["-r", str(self.frame_rate)])
        argv.extend(self.extra_output_options)
        argv.append(str(self.output_path))
        return argv


__all__ = [
    "CommandValidationError",
    "EncodeCommand",
    "InputSpec",
    "MEMORY_FLAGS",
]
