import json
import sys
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import main as cli  # noqa: E402
from dashcam_export.models import CompletionEvent, EncoderChoice  # noqa: E402


class FakeManager:
    instances = []
    state = "completed"

    def __init__(self, settings, logger=None):
        self.settings = settings
        self.requests = []
        FakeManager.instances.append(self)

    def submit(self, request, on_progress=None, on_complete=None):
        self.requests.append(request)
        return "job-1"

    def wait(self, job_id, timeout=None):
        return CompletionEvent(
            job_id=job_id,
            state=self.state,
            success=self.state == "completed",
            message="done",
            output_path=Path("out.mp4"),
        )

    def cancel(self, job_id):
        return True


def _write_request(tmp_path):
    request_path = tmp_path / "request.json"
    request_path.write_text(
        json.dumps({
            "start_time_ms": 0,
            "end_time_ms": 65000,
            "segments": [{"files": {"front": "a.mp4"}, "duration_sec": 60}],
            "output_path": str(tmp_path / "out.mp4"),
            "cameras": ["front"],
            "quality": "high",
        }),
        encoding="utf-8",
    )
    return request_path


def test_export_command_exit_codes(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    request_path = _write_request(tmp_path)
    FakeManager.instances = []

    with patch.object(cli, "ExportJobManager", FakeManager), patch.object(cli, "load_dotenv"):
        FakeManager.state = "completed"
        assert cli.main(["export", str(request_path)]) == 0
        FakeManager.state = "failed"
        assert cli.main(["export", str(request_path)]) == 1
        FakeManager.state = "cancelled"
        assert cli.main(["export", str(request_path)]) == 130

    submitted = FakeManager.instances[0].requests[0]
    assert submitted.cameras == ("front",)
    assert submitted.quality_tier == "high"


def test_export_command_rejects_unreadable_request(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    with patch.object(cli, "load_dotenv"):
        assert cli.main(["export", str(tmp_path / "missing.json")]) == 1


def test_probe_prints_every_tier(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)

    class FakeSelector:
        def __init__(self, ffmpeg, **kwargs):
            pass

        def choose(self, profile, width, height, *, low_quality=False):
            return EncoderChoice("libx264", "libx264 (CPU)", (), False)

    with patch.object(cli, "find_ffmpeg", return_value="ffmpeg"), \
            patch.object(cli, "EncoderSelector", FakeSelector), \
            patch.object(cli, "load_dotenv"):
        assert cli.main(["probe"]) == 0

    output = capsys.readouterr().out.splitlines()
    assert len(output) == 8
    assert any("2172x1407" in line for line in output)
    assert any("4344x1876" in line for line in output)
