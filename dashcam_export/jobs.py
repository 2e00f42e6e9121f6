"""Export job lifecycle: build the encode, run it, report, clean up."""

from __future__ import annotations

import collections
import logging
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from dashcam_export.commands import MEMORY_FLAGS, EncodeCommand, InputSpec
from dashcam_export.config import ExportSettings, find_ffmpeg
from dashcam_export.encoders import LOW_QUALITY_TIERS, EncoderSelector, quality_profile, shared_selector
from dashcam_export.errors import (
    Cancelled,
    EncodeProcessFailed,
    EncodeProcessSpawnError,
    ExportError,
)
from dashcam_export.filters import OUTPUT_LABEL, black_source, build_export_graph, output_size
from dashcam_export.inputs import resolve_camera_inputs
from dashcam_export.map_background import MapBackgroundBuilder
from dashcam_export.minimap import MinimapFrameRenderer, minimap_size
from dashcam_export.models import (
    CompletionEvent,
    EncoderChoice,
    ExportRequest,
    MapBackground,
    MinimapOptions,
    ProgressEvent,
    QualityProfile,
    ResolvedCameraInput,
)
from dashcam_export.progress import encode_percent, format_duration, format_size, parse_encoder_time
from dashcam_export.segments import intersect_segments
from dashcam_export.tiles import TileDownloader

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TERMINAL_STATES = frozenset({COMPLETED, FAILED, CANCELLED})

DIAGNOSTIC_TAIL_CHARS = 500
MUXING_QUEUE_FLAGS = ("-max_muxing_queue_size", "1024")

ProgressCallback = Callable[[ProgressEvent], None]
CompletionCallback = Callable[[CompletionEvent], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ExportJob:
    job_id: str
    request: ExportRequest
    status: str = PENDING
    progress: int = 0
    minimap_progress: int = 0
    message: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    output_size: Optional[int] = None
    temp_files: List[Path] = field(default_factory=list)
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: Optional[threading.Thread] = field(default=None, repr=False)
    on_progress: Optional[ProgressCallback] = field(default=None, repr=False)
    on_complete: Optional[CompletionCallback] = field(default=None, repr=False)
    completion: Optional[CompletionEvent] = None
    encoder_spawned: bool = False
    cleaned_up: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class ActiveJobRegistry:
    """Jobs that can still be cancelled, keyed by job id."""

    def __init__(self) -> None:
        self._jobs: Dict[str, ExportJob] = {}
        self._lock = threading.Lock()

    def insert(self, job: ExportJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job

    def remove(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def get(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def items(self) -> List[Tuple[str, ExportJob]]:
        with self._lock:
            return list(self._jobs.items())

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class ExportJobManager:
    """Run exports on background threads and expose submit/cancel/progress."""

    def __init__(
        self,
        settings: ExportSettings,
        *,
        registry: Optional[ActiveJobRegistry] = None,
        encoder_selector: Optional[EncoderSelector] = None,
        logger: Optional[logging.Logger] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        ffmpeg_path: Optional[str] = None,
        tile_downloader: Optional[TileDownloader] = None,
        minimap_renderer: Optional[MinimapFrameRenderer] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry if registry is not None else ActiveJobRegistry()
        self.logger = logger or logging.getLogger("dashcam_export")
        self._popen = popen
        self._ffmpeg_path = ffmpeg_path
        self._encoder_selector = encoder_selector
        self._tile_downloader = tile_downloader
        self._minimap_renderer = minimap_renderer

        self._jobs: Dict[str, ExportJob] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def ffmpeg_path(self) -> str:
        with self._lock:
            if self._ffmpeg_path is not None:
                return self._ffmpeg_path
        # Discovery runs trial processes; keep the job lock free for cancel().
        found = find_ffmpeg(self.settings.ffmpeg_path, logger=self.logger)
        with self._lock:
            if self._ffmpeg_path is None:
                self._ffmpeg_path = found
            return self._ffmpeg_path

    def encoder_selector(self) -> EncoderSelector:
        if self._encoder_selector is None:
            self._encoder_selector = shared_selector(
                self.ffmpeg_path(),
                logger=self.logger,
                max_hardware_dimension=self.settings.hardware_max_dimension,
                fps=self.settings.fps,
            )
        return self._encoder_selector

    def _map_builder(self) -> MapBackgroundBuilder:
        tiles = self.settings.tiles
        downloader = self._tile_downloader or TileDownloader(
            tiles.base_url,
            self.logger,
            user_agent=tiles.user_agent,
            http_timeout=tiles.timeout,
        )
        return MapBackgroundBuilder(
            downloader,
            temp_dir=self.settings.temp_dir,
            logger=self.logger,
            request_delay=tiles.request_delay,
            tile_size=tiles.tile_size,
        )

    def _renderer(self) -> MinimapFrameRenderer:
        if self._minimap_renderer is None:
            minimap = self.settings.minimap
            self._minimap_renderer = MinimapFrameRenderer(
                self.ffmpeg_path(),
                fps=self.settings.fps,
                frame_timeout=minimap.frame_timeout,
                load_timeout=minimap.load_timeout,
                progress_interval=minimap.progress_interval,
                logger=self.logger,
                popen=self._popen,
            )
        return self._minimap_renderer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_job(
        self,
        request: ExportRequest,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> ExportJob:
        """Register a pending job without starting it."""
        job = ExportJob(
            job_id=uuid.uuid4().hex,
            request=request,
            on_progress=on_progress,
            on_complete=on_complete,
        )
        with self._lock:
            self._jobs[job.job_id] = job
        self.registry.insert(job)
        return job

    def submit(
        self,
        request: ExportRequest,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> str:
        job = self.create_job(request, on_progress, on_complete)
        thread = threading.Thread(
            target=self.run,
            args=(job,),
            name=f"export-job-{job.job_id[:8]}",
            daemon=True,
        )
        job.thread = thread
        thread.start()
        self.logger.info("Export job %s submitted", job.job_id)
        return job.job_id

    def get(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def progress(self, job_id: str) -> int:
        job = self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job.progress

    def cancel(self, job_id: str) -> bool:
        """Cancel an active job; False if it is unknown or already finished."""
        job = self.registry.remove(job_id)
        if job is None:
            return False

        job.cancel_event.set()
        with self._lock:
            process = job.process
        if process is not None and process.poll() is None:
            process.terminate()
        self.logger.info("Export job %s cancelled", job_id)
        return True

    def shutdown(self) -> int:
        """Cancel every active job and return how many were cancelled."""
        cancelled = 0
        for job_id, _ in self.registry.items():
            if self.cancel(job_id):
                cancelled += 1
        if cancelled:
            self.logger.info("Cancelled %s active export(s) on shutdown", cancelled)
        return cancelled

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[CompletionEvent]:
        job = self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.thread is not None:
            job.thread.join(timeout)
        return job.completion

    # ------------------------------------------------------------------
    # Job body
    # ------------------------------------------------------------------

    def run(self, job: ExportJob) -> CompletionEvent:
        """Run ``job`` to a terminal state; always emits one completion."""
        started = time.monotonic()
        state = FAILED
        message = ""
        try:
            if job.cancel_event.is_set():
                raise Cancelled()
            with self._lock:
                job.status = RUNNING
                job.started_at = _utcnow()

            self._execute(job)

            size = job.output_size or 0
            state = COMPLETED
            message = (
                f"Export complete: {format_size(size)} ({size} bytes) "
                f"in {format_duration(time.monotonic() - started)}"
            )
        except Cancelled:
            state = CANCELLED
            message = "Export cancelled"
        except EncodeProcessFailed as exc:
            job.error = exc.diagnostic_tail
            message = f"Export failed: {exc}"
            if exc.diagnostic_tail:
                message = f"{message}\n{exc.diagnostic_tail}"
        except ExportError as exc:
            job.error = str(exc)
            message = f"Export failed: {exc}"
        except Exception as exc:
            self.logger.exception("Export job %s crashed", job.job_id)
            job.error = str(exc)
            message = f"Export failed: {exc}"
        finally:
            self._cleanup(job, succeeded=state == COMPLETED)
            self.registry.remove(job.job_id)

        return self._complete(job, state, message, time.monotonic() - started)

    def _execute(self, job: ExportJob) -> None:
        request = job.request
        relevant = intersect_segments(request.segments, request.start_time_ms, request.end_time_ms)
        self.logger.info(
            "Export %s: %s segment(s) overlap %.0f-%.0f ms",
            job.job_id,
            len(relevant),
            request.start_time_ms,
            request.end_time_ms,
        )

        ffmpeg = self.ffmpeg_path()
        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        resolved = resolve_camera_inputs(
            relevant,
            request.cameras,
            request.start_time_ms,
            self.settings.temp_dir,
            job.temp_files,
            logger=self.logger,
        )

        active = request.active_cameras()
        tier = request.quality_tier
        profile = quality_profile(tier, front_only=request.is_front_only)
        width, height = output_size(len(active), profile)
        encoder = self.encoder_selector().choose(
            profile,
            width,
            height,
            low_quality=request.mobile_export or tier in LOW_QUALITY_TIERS,
        )
        self.logger.info(
            "Export %s: %s camera(s), %s quality, %sx%s output, encoder %s",
            job.job_id,
            len(active),
            tier,
            width,
            height,
            encoder.name,
        )

        overlay_path = None
        if request.minimap is not None:
            overlay_path = self._prepare_minimap(job, request.minimap, width, height)

        if job.cancel_event.is_set():
            raise Cancelled()

        command = self.build_command(request, resolved, profile, encoder, ffmpeg, overlay_path=overlay_path)
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._encode(job, command.to_argv())

        try:
            job.output_size = request.output_path.stat().st_size
        except FileNotFoundError:
            raise ExportError(f"Encoder finished but {request.output_path} was not written") from None

    def build_command(
        self,
        request: ExportRequest,
        resolved: Sequence[ResolvedCameraInput],
        profile: QualityProfile,
        encoder: EncoderChoice,
        ffmpeg: str,
        *,
        overlay_path: Optional[Path] = None,
    ) -> EncodeCommand:
        fps = self.settings.fps
        command = EncodeCommand(
            binary=ffmpeg,
            encoder=encoder,
            duration_sec=request.duration_sec,
            frame_rate=fps,
            extra_output_options=list(MUXING_QUEUE_FLAGS),
            output_path=request.output_path,
        )
        command.add_global_options(*MEMORY_FLAGS)

        camera_indexes: Dict[str, int] = {}
        for item in resolved:
            camera_indexes[item.camera] = command.add_input(InputSpec.for_camera(item))
        black_index = command.add_input(InputSpec.lavfi(black_source(profile, fps, request.duration_sec)))

        overlay_index = None
        overlay_corner = "top-right"
        if overlay_path is not None:
            overlay_index = command.add_input(
                InputSpec(source=str(overlay_path), options=("-stream_loop", "-1"))
            )
            if request.minimap is not None:
                overlay_corner = request.minimap.position

        command.filter_graph = build_export_graph(
            request.active_cameras(),
            camera_indexes,
            black_index,
            profile=profile,
            fps=fps,
            mirror_cameras=self.settings.mirror_cameras,
            overlay_index=overlay_index,
            overlay_corner=overlay_corner,
            overlay_padding=self.settings.minimap.padding,
        )
        command.output_map = OUTPUT_LABEL
        return command

    def _encode(self, job: ExportJob, argv: List[str]) -> None:
        total_sec = job.request.duration_sec
        self.logger.info("Encoder command: %s ...", " ".join(argv[:16]))
        self.logger.debug("Full encoder command: %s", argv)

        with self._lock:
            if job.cancel_event.is_set():
                raise Cancelled()
            try:
                process = self._popen(
                    argv,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as exc:
                raise EncodeProcessSpawnError(f"Failed to start encoder: {exc}") from exc
            job.process = process
            job.encoder_spawned = True

        # A cancel that raced the spawn could not see the process.
        if job.cancel_event.is_set() and process.poll() is None:
            process.terminate()

        tail: Deque[str] = collections.deque(maxlen=64)
        if process.stderr is not None:
            for line in process.stderr:
                tail.append(line)
                elapsed = parse_encoder_time(line)
                if elapsed is not None:
                    percent = encode_percent(elapsed, total_sec)
                    self._report(job, "export", percent, f"Exporting... {percent}%")
            process.stderr.close()

        return_code = process.wait()
        if job.cancel_event.is_set():
            raise Cancelled()
        if return_code != 0:
            diagnostic = "".join(tail)[-DIAGNOSTIC_TAIL_CHARS:]
            self.logger.error("Encoder exited with code %s: %s", return_code, diagnostic)
            raise EncodeProcessFailed(return_code, diagnostic)

    def _prepare_minimap(self, job: ExportJob, options: MinimapOptions, width: int, height: int) -> Optional[Path]:
        """Render the overlay track; any failure other than cancel drops the overlay."""
        if not options.path and not options.samples:
            self.logger.info("Minimap requested without GPS data; skipping overlay")
            return None

        size = minimap_size(width, height, options.size)
        background: Optional[MapBackground] = None
        if options.path:
            self._report(job, "minimap", 0, "Downloading map tiles...")
            try:
                background = self._map_builder().build(options.path, size, label=job.job_id[:8])
            except Cancelled:
                raise
            except Exception as exc:
                self.logger.warning("Map background unavailable, using plain background: %s", exc)
                self._report(job, "minimap", 0, "Map tiles unavailable, using plain background")
            else:
                job.temp_files.append(background.image_path)

        if job.cancel_event.is_set():
            raise Cancelled()

        overlay_path = self.settings.temp_dir / f"minimap_{job.job_id[:8]}_{uuid.uuid4().hex}.mov"
        job.temp_files.append(overlay_path)
        try:
            self._renderer().render(
                options,
                background,
                start_time_ms=job.request.start_time_ms,
                duration_sec=job.request.duration_sec,
                size=size,
                output_path=overlay_path,
                cancel_event=job.cancel_event,
                on_progress=lambda percent, message: self._report(job, "minimap", percent, message),
            )
        except Cancelled:
            raise
        except Exception as exc:
            if job.cancel_event.is_set():
                raise Cancelled() from exc
            self.logger.warning("Minimap rendering failed, exporting without overlay: %s", exc)
            self._report(job, "minimap", 0, f"Minimap skipped: {exc}")
            return None
        return overlay_path

    # ------------------------------------------------------------------
    # Reporting and cleanup
    # ------------------------------------------------------------------

    def _report(self, job: ExportJob, kind: str, percent: int, message: str) -> None:
        if kind == "export":
            with self._lock:
                if percent <= job.progress:
                    return
                job.progress = percent
                job.message = message
        else:
            # Status messages after a failure keep the last minimap percentage.
            with self._lock:
                percent = max(percent, job.minimap_progress)
                job.minimap_progress = percent
        event = ProgressEvent(job_id=job.job_id, kind=kind, percentage=percent, message=message)
        self.logger.debug("Job %s %s progress %s%%", job.job_id, kind, percent)
        if job.on_progress is not None:
            job.on_progress(event)

    def _cleanup(self, job: ExportJob, *, succeeded: bool) -> None:
        with self._lock:
            if job.cleaned_up:
                return
            job.cleaned_up = True
            job.process = None

        paths = list(job.temp_files)
        # Partial output is only ours to remove once the encoder has written to it.
        if not succeeded and job.encoder_spawned:
            paths.append(job.request.output_path)
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                self.logger.warning("Failed to remove temp file %s: %s", path, exc)

    def _complete(self, job: ExportJob, state: str, message: str, elapsed: float) -> CompletionEvent:
        if state == COMPLETED:
            self._report(job, "export", 100, "Export complete")

        event = CompletionEvent(
            job_id=job.job_id,
            state=state,
            success=state == COMPLETED,
            message=message,
            output_path=job.request.output_path,
        )
        with self._lock:
            job.status = state
            job.message = message
            job.finished_at = _utcnow()
            job.completion = event

        log = self.logger.info if state != FAILED else self.logger.error
        log("Export job %s %s after %s: %s", job.job_id, state, format_duration(elapsed), message)
        if job.on_complete is not None:
            job.on_complete(event)
        return event


__all__ = [
    "ActiveJobRegistry",
    "CANCELLED",
    "COMPLETED",
    "ExportJob",
    "ExportJobManager",
    "FAILED",
    "PENDING",
    "RUNNING",
]
