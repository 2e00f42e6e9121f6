import io
import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dashcam_export.config import ExportSettings  # noqa: E402
from dashcam_export.errors import EncodeProcessFailed, FrameRenderTimeout  # noqa: E402
from dashcam_export.jobs import ExportJobManager  # noqa: E402
from dashcam_export.minimap import MinimapFrameRenderer  # noqa: E402
from dashcam_export.models import (  # noqa: E402
    EncoderChoice,
    ExportRequest,
    GpsSample,
    MinimapOptions,
    Segment,
)

PAYLOAD = b"\x00" * 4096


class FakeProcess:
    def __init__(self, argv, lines, returncode, on_line=None):
        self.argv = argv
        self._lines = list(lines)
        self._final = returncode
        self._on_line = on_line
        self.returncode = None
        self.terminated = False
        self.stderr = self

    def __iter__(self):
        for line in self._lines:
            if self.terminated:
                return
            yield line
            if self._on_line is not None:
                self._on_line(line)

    def close(self):
        pass

    def poll(self):
        return self.returncode

    def wait(self):
        if self.returncode is None:
            self.returncode = -15 if self.terminated else self._final
            if self.returncode == 0:
                Path(self.argv[-1]).write_bytes(PAYLOAD)
        return self.returncode

    def terminate(self):
        self.terminated = True


class FakePopen:
    def __init__(self, lines=(), returncode=0, on_line=None):
        self.lines = lines
        self.returncode = returncode
        self.on_line = on_line
        self.calls = []
        self.processes = []

    def __call__(self, argv, **kwargs):
        self.calls.append((list(argv), kwargs))
        process = FakeProcess(argv, self.lines, self.returncode, self.on_line)
        self.processes.append(process)
        return process


class FakeSelector:
    def __init__(self):
        self.calls = []

    def choose(self, profile, output_width, output_height, *, low_quality=False):
        self.calls.append((output_width, output_height, low_quality))
        return EncoderChoice(
            codec="libx264",
            name="libx264 (CPU)",
            params=("-preset", "fast", "-crf", str(profile.quality)),
            hardware=False,
        )


class FakeRenderer:
    def __init__(self, error=None, reported=()):
        self.error = error
        self.reported = reported
        self.calls = []

    def render(self, options, background, *, start_time_ms, duration_sec, size, output_path, cancel_event,
               on_progress=None):
        self.calls.append({"size": size, "background": background, "output_path": output_path})
        for percent in self.reported:
            on_progress(percent, f"Rendering minimap... {percent}%")
        if self.error is not None:
            raise self.error
        on_progress(100, "Minimap rendered")
        output_path.write_bytes(b"mov")
        return output_path


LINES = [
    "Input #0, concat, from 'list.txt':\n",
    "frame=  360 fps=90 q=23.0 size=1024kB time=00:00:10.00 bitrate=838.9kbits/s\n",
    "frame= 1080 fps=90 q=23.0 size=4096kB time=00:00:30.00 bitrate=1118.5kbits/s\n",
    "frame=  720 fps=90 q=23.0 size=2048kB time=00:00:20.00 bitrate=838.9kbits/s\n",
    "frame= 2304 fps=90 q=23.0 size=8192kB time=00:01:04.00 bitrate=1048.6kbits/s\n",
    "frame= 2340 fps=90 q=23.0 size=8200kB time=00:01:05.00 bitrate=1033.4kbits/s\n",
]


def _clips(tmp_path, count=2):
    clips = []
    for index in range(count):
        clip = tmp_path / "clips" / f"{index}-front.mp4"
        clip.parent.mkdir(parents=True, exist_ok=True)
        clip.write_bytes(b"\x00")
        clips.append(clip)
    return clips


def _request(tmp_path, *, start=0, end=65_000, minimap=None):
    segments = tuple(Segment(files={"front": str(clip)}, duration_sec=60.0) for clip in _clips(tmp_path))
    return ExportRequest(
        start_time_ms=start,
        end_time_ms=end,
        segments=segments,
        output_path=tmp_path / "exports" / "trip.mp4",
        cameras=("front",),
        quality="high",
        minimap=minimap,
    )


def _manager(tmp_path, popen, *, selector=None, renderer=None):
    settings = ExportSettings(temp_dir=tmp_path / "tmp")
    return ExportJobManager(
        settings,
        encoder_selector=selector or FakeSelector(),
        logger=logging.getLogger("export-jobs-test"),
        popen=popen,
        ffmpeg_path="ffmpeg",
        minimap_renderer=renderer,
    )


def test_front_only_high_export_scenario(tmp_path):
    popen = FakePopen(lines=LINES)
    selector = FakeSelector()
    manager = _manager(tmp_path, popen, selector=selector)
    events, completions = [], []
    job = manager.create_job(_request(tmp_path), on_progress=events.append, on_complete=completions.append)

    completion = manager.run(job)

    assert completion.success
    assert completion.state == "completed"
    assert "4096 bytes" in completion.message
    assert completions == [completion]
    assert selector.calls == [(2172, 1407, False)]

    argv, kwargs = popen.calls[0]
    assert kwargs["text"] is True
    concat_at = argv.index("concat")
    assert argv[concat_at + 1:concat_at + 4] == ["-safe", "0", "-i"]
    assert "-ss" not in argv
    assert argv[argv.index("-t") + 1] == "65"
    assert argv[-1] == str(tmp_path / "exports" / "trip.mp4")

    assert job.temp_files
    assert all(not path.exists() for path in job.temp_files)
    assert job.job_id not in manager.registry


def test_progress_is_monotonic_and_capped_until_exit(tmp_path):
    popen = FakePopen(lines=LINES)
    manager = _manager(tmp_path, popen)
    events = []
    job = manager.create_job(_request(tmp_path), on_progress=events.append)

    manager.run(job)

    percentages = [event.percentage for event in events if event.kind == "export"]
    assert percentages == [15, 46, 95, 100]
    assert all(value <= 95 for value in percentages[:-1])
    assert percentages == sorted(percentages)
    assert manager.progress(job.job_id) == 100


def test_encoder_failure_reports_diagnostic_tail(tmp_path):
    popen = FakePopen(lines=["time=00:00:05.00\n", "front.mp4: Invalid data found when processing input\n"],
                      returncode=1)
    manager = _manager(tmp_path, popen)
    completions = []
    job = manager.create_job(_request(tmp_path), on_complete=completions.append)

    completion = manager.run(job)

    assert completion.state == "failed"
    assert not completion.success
    assert "Invalid data found" in completion.message
    assert len(completions) == 1
    assert all(not path.exists() for path in job.temp_files)
    assert job.job_id not in manager.registry


def test_spawn_error_fails_job(tmp_path):
    def broken_popen(argv, **kwargs):
        raise FileNotFoundError("ffmpeg")

    manager = _manager(tmp_path, broken_popen)
    job = manager.create_job(_request(tmp_path))

    completion = manager.run(job)

    assert completion.state == "failed"
    assert "Failed to start encoder" in completion.message
    assert all(not path.exists() for path in job.temp_files)


def test_window_outside_segments_fails_before_spawning(tmp_path):
    popen = FakePopen()
    manager = _manager(tmp_path, popen)
    job = manager.create_job(_request(tmp_path, start=500_000, end=510_000))

    completion = manager.run(job)

    assert completion.state == "failed"
    assert "No segments" in completion.message
    assert popen.calls == []


def test_cancel_before_start_never_spawns(tmp_path):
    popen = FakePopen(lines=LINES)
    manager = _manager(tmp_path, popen)
    completions = []
    job = manager.create_job(_request(tmp_path), on_complete=completions.append)

    assert manager.cancel(job.job_id) is True
    assert job.job_id not in manager.registry
    assert manager.cancel(job.job_id) is False

    completion = manager.run(job)

    assert completion.state == "cancelled"
    assert not completion.success
    assert popen.calls == []
    assert completions == [completion]


def test_cancel_while_encoding_is_not_a_failure(tmp_path):
    holder = {}

    def cancel_after_first_line(line):
        if "time=" in line:
            holder["result"] = holder["manager"].cancel(holder["job"].job_id)

    popen = FakePopen(lines=LINES, on_line=cancel_after_first_line)
    manager = _manager(tmp_path, popen)
    completions = []
    job = manager.create_job(_request(tmp_path), on_complete=completions.append)
    holder.update(manager=manager, job=job)

    completion = manager.run(job)

    assert holder["result"] is True
    assert popen.processes[0].terminated
    assert completion.state == "cancelled"
    assert len(completions) == 1
    assert not (tmp_path / "exports" / "trip.mp4").exists()
    assert all(not path.exists() for path in job.temp_files)
    assert manager.cancel(job.job_id) is False


def test_submit_runs_job_in_background(tmp_path):
    manager = _manager(tmp_path, FakePopen(lines=LINES))

    job_id = manager.submit(_request(tmp_path))
    completion = manager.wait(job_id, timeout=10)

    assert completion is not None and completion.success
    assert manager.get(job_id).status == "completed"
    assert len(manager.registry) == 0


def test_shutdown_cancels_every_active_job(tmp_path):
    manager = _manager(tmp_path, FakePopen())
    first = manager.create_job(_request(tmp_path))
    second = manager.create_job(_request(tmp_path))

    assert manager.shutdown() == 2
    assert len(manager.registry) == 0
    assert first.cancel_event.is_set() and second.cancel_event.is_set()


def _minimap_options():
    samples = tuple(
        GpsSample(timestamp_ms=t, lat=37.77 + t / 1e7, lon=-122.42, heading=0.0) for t in range(0, 70_000, 10_000)
    )
    return MinimapOptions(path=(), samples=samples, position="bottom-right", size="small")


def test_minimap_overlay_is_looped_and_composited(tmp_path):
    popen = FakePopen(lines=LINES)
    renderer = FakeRenderer()
    manager = _manager(tmp_path, popen, renderer=renderer)
    events = []
    job = manager.create_job(_request(tmp_path, minimap=_minimap_options()), on_progress=events.append)

    completion = manager.run(job)

    assert completion.success
    assert renderer.calls[0]["size"] == 352
    assert renderer.calls[0]["background"] is None
    argv, _ = popen.calls[0]
    loop_at = argv.index("-stream_loop")
    assert argv[loop_at + 1:loop_at + 4] == ["-1", "-i", str(renderer.calls[0]["output_path"])]
    graph = argv[argv.index("-filter_complex") + 1]
    assert "[grid][2:v]overlay=W-w-20:H-h-20:format=auto:shortest=1[mapped]" in graph
    assert any(event.kind == "minimap" for event in events)
    assert not renderer.calls[0]["output_path"].exists()


def test_minimap_failure_exports_without_overlay(tmp_path):
    popen = FakePopen(lines=LINES)
    renderer = FakeRenderer(error=FrameRenderTimeout(1000.0, 3.0))
    manager = _manager(tmp_path, popen, renderer=renderer)
    events = []
    job = manager.create_job(_request(tmp_path, minimap=_minimap_options()), on_progress=events.append)

    completion = manager.run(job)

    assert completion.success
    argv, _ = popen.calls[0]
    assert "-stream_loop" not in argv
    assert "overlay" not in argv[argv.index("-filter_complex") + 1]
    assert any(event.kind == "minimap" and "skipped" in event.message for event in events)


class ClosedPipe:
    closed = False

    def write(self, data):
        raise BrokenPipeError(32, "Broken pipe")

    def close(self):
        self.closed = True


class DeadOverlayEncoder:
    """Overlay encoder that exits as soon as the first frame arrives."""

    def __init__(self, argv):
        self.argv = argv
        self.stdin = ClosedPipe()
        self.stderr = io.BytesIO(b"Conversion failed!\n")
        self.returncode = None

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self.returncode = 1
        return self.returncode

    def terminate(self):
        self.returncode = -15


def test_overlay_encoder_exiting_mid_stream_exports_without_overlay(tmp_path):
    popen = FakePopen(lines=LINES)
    renderer = MinimapFrameRenderer(
        "ffmpeg",
        logger=logging.getLogger("export-jobs-test"),
        popen=lambda argv, **kwargs: DeadOverlayEncoder(argv),
    )
    manager = _manager(tmp_path, popen, renderer=renderer)
    events = []
    job = manager.create_job(_request(tmp_path, minimap=_minimap_options()), on_progress=events.append)

    completion = manager.run(job)

    assert completion.state == "completed"
    argv, _ = popen.calls[0]
    assert "-stream_loop" not in argv
    skipped = [event for event in events if event.kind == "minimap" and "skipped" in event.message]
    assert skipped and "exited with code 1" in skipped[0].message


def test_unexpected_minimap_error_does_not_fail_export(tmp_path):
    popen = FakePopen(lines=LINES)
    manager = _manager(tmp_path, popen, renderer=FakeRenderer(error=RuntimeError("surface crashed")))
    job = manager.create_job(_request(tmp_path, minimap=_minimap_options()))

    completion = manager.run(job)

    assert completion.success
    assert "-stream_loop" not in popen.calls[0][0]


def test_minimap_progress_does_not_regress_after_failure(tmp_path):
    renderer = FakeRenderer(error=EncodeProcessFailed(1, "Conversion failed!"), reported=(50,))
    manager = _manager(tmp_path, FakePopen(lines=LINES), renderer=renderer)
    events = []
    job = manager.create_job(_request(tmp_path, minimap=_minimap_options()), on_progress=events.append)

    manager.run(job)

    minimap = [event for event in events if event.kind == "minimap"]
    assert [event.percentage for event in minimap] == [50, 50]
    assert "skipped" in minimap[-1].message


def test_low_quality_uses_fallback_profile_and_software(tmp_path):
    popen = FakePopen(lines=LINES)
    selector = FakeSelector()
    manager = _manager(tmp_path, popen, selector=selector)
    job = manager.create_job(replace(_request(tmp_path), quality="low"))

    completion = manager.run(job)

    assert completion.success
    assert selector.calls == [(1448, 938, True)]
    argv, _ = popen.calls[0]
    assert "scale=1448:938" in argv[argv.index("-filter_complex") + 1]


def test_cancel_is_not_blocked_by_encoder_discovery(tmp_path, monkeypatch):
    entered = threading.Event()
    release = threading.Event()

    def slow_find(configured, **kwargs):
        entered.set()
        release.wait(5)
        return "/usr/bin/ffmpeg"

    monkeypatch.setattr("dashcam_export.jobs.find_ffmpeg", slow_find)
    manager = ExportJobManager(
        ExportSettings(temp_dir=tmp_path / "tmp"),
        encoder_selector=FakeSelector(),
        logger=logging.getLogger("export-jobs-test"),
        popen=FakePopen(),
    )
    job = manager.create_job(_request(tmp_path))

    discovery = threading.Thread(target=manager.ffmpeg_path, daemon=True)
    discovery.start()
    assert entered.wait(5)

    results = []
    canceller = threading.Thread(target=lambda: results.append(manager.cancel(job.job_id)), daemon=True)
    canceller.start()
    canceller.join(timeout=2)
    finished_during_discovery = not canceller.is_alive()
    release.set()
    discovery.join(timeout=5)

    assert finished_during_discovery
    assert results == [True]
    assert manager.ffmpeg_path() == "/usr/bin/ffmpeg"
