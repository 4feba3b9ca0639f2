from unittest.mock import MagicMock, patch
import yaml
from typer.testing import CliRunner

from restreamer import main as restreamer_main
from restreamer.domain.models import AvailableEncoders, ConnectionTestResult


def test_run_missing_config_exits(tmp_path):
    runner = CliRunner()
    result = runner.invoke(restreamer_main.app, ["run", "--config", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_run_without_enabled_destinations_exits(tmp_path):
    config_file = tmp_path / "restreamer.yaml"
    config_file.write_text(yaml.dump({"destinations": [{"id": "tw", "platform": "twitch", "enabled": False}]}))
    runner = CliRunner()

    result = runner.invoke(
        restreamer_main.app,
        ["run", "--config", str(config_file), "--log-dir", str(tmp_path / "logs")],
    )

    assert result.exit_code == 1
    assert "No enabled destinations" in result.output
    assert (tmp_path / "logs" / "restreamer.log").exists()


def test_run_without_ffmpeg_exits(config_yaml_path, tmp_path, monkeypatch):
    monkeypatch.setattr(restreamer_main.ProcessSupervisor, "initialize", lambda self: None)
    runner = CliRunner()

    result = runner.invoke(
        restreamer_main.app,
        ["run", "--config", str(config_yaml_path), "--log-dir", str(tmp_path / "logs")],
    )

    assert result.exit_code == 1
    assert "FFmpeg not found" in result.output


class StubIngest:
    """IngestSource stand-in whose connection state the test controls."""

    def __init__(self, bus, port=1935, connected=True):
        self.event_bus = bus
        self.port = port
        self.connected = connected
        self.polling = None

    def get_ingest_url(self):
        return f"rtmp://localhost:{self.port}/live/obs"

    def get_ingest_server_url(self):
        return f"rtmp://localhost:{self.port}/live"

    def get_network_ingest_url(self):
        return f"rtmp://192.168.1.20:{self.port}/live"

    def get_ingest_stream_key(self):
        return "stream"

    def start_polling(self, interval_ms=2000):
        self.polling = True

    def stop_polling(self):
        self.polling = False


def _dummy_supervisor_class(created, interrupt_after=1):
    class DummySupervisor:
        def __init__(self, bus, settings_provider, credentials):
            created["settings"] = settings_provider()
            created["credentials"] = credentials
            self.event_bus = bus
            self.ingest_url = ""
            self.calls = []
            self.ticks = 0
            created["supervisor"] = self

        def initialize(self):
            return "/usr/bin/ffmpeg"

        def set_ingest_url(self, url):
            self.ingest_url = url

        def start_all(self, destinations):
            self.calls.append(("start_all", [d.id for d in destinations]))

        def stop_all(self):
            self.calls.append(("stop_all",))

        def poll_cpu_usage(self):
            self.ticks += 1
            if self.ticks >= interrupt_after:
                raise KeyboardInterrupt

        def get_all_statuses(self):
            return []

    return DummySupervisor


def _patch_run(monkeypatch, created, connected=True, interrupt_after=1):
    def make_ingest(bus, port=1935):
        created["ingest"] = StubIngest(bus, port=port, connected=connected)
        return created["ingest"]

    monkeypatch.setattr(restreamer_main, "ProcessSupervisor", _dummy_supervisor_class(created, interrupt_after))
    monkeypatch.setattr(restreamer_main, "IngestSource", make_ingest)
    monkeypatch.setattr(restreamer_main, "Dashboard", MagicMock())
    monkeypatch.setattr(restreamer_main.time, "sleep", lambda s: None)


def test_run_applies_overrides_and_stops_on_interrupt(config_yaml_path, tmp_path, monkeypatch):
    created = {}
    _patch_run(monkeypatch, created)

    runner = CliRunner()
    result = runner.invoke(
        restreamer_main.app,
        [
            "run", "--config", str(config_yaml_path),
            "--log-dir", str(tmp_path / "logs"),
            "--max-retries", "7",
            "--no-reconnect",
            "--buffer", "2",
            "--ffmpeg", "/opt/ffmpeg",
        ],
    )

    assert result.exit_code == 0, result.output
    settings = created["settings"]
    assert settings.max_retries == 7
    assert settings.auto_reconnect is False
    assert settings.buffer_duration == 2
    assert settings.ffmpeg_path == "/opt/ffmpeg"

    sup = created["supervisor"]
    assert sup.ingest_url == "rtmp://localhost:1936/live/obs"
    assert sup.calls == [("start_all", ["yt", "tw"]), ("stop_all",)]
    assert created["credentials"].get_stream_key("yt") == "yt-key"
    assert created["ingest"].polling is False
    assert "rtmp://192.168.1.20:1936/live" in result.output


def test_run_rejects_invalid_overrides(config_yaml_path, tmp_path):
    runner = CliRunner()
    for option, value in (("--max-retries", "-1"), ("--buffer", "-0.5")):
        result = runner.invoke(
            restreamer_main.app,
            ["run", "--config", str(config_yaml_path), "--log-dir", str(tmp_path / "logs"), option, value],
        )
        assert result.exit_code == 1
        assert "invalid option" in result.output


def test_run_waits_for_ingest_before_going_live(config_yaml_path, tmp_path, monkeypatch):
    created = {}
    _patch_run(monkeypatch, created, connected=False, interrupt_after=3)

    result = CliRunner().invoke(
        restreamer_main.app,
        ["run", "--config", str(config_yaml_path), "--log-dir", str(tmp_path / "logs")],
    )

    assert result.exit_code == 0, result.output
    assert created["supervisor"].calls == [("stop_all",)]
    assert created["supervisor"].ingest_url == ""


def test_run_with_external_ingest_url_does_not_wait(config_yaml_path, tmp_path, monkeypatch):
    created = {}
    _patch_run(monkeypatch, created, connected=False)

    result = CliRunner().invoke(
        restreamer_main.app,
        [
            "run", "--config", str(config_yaml_path),
            "--log-dir", str(tmp_path / "logs"),
            "--ingest-url", "rtmp://10.0.0.2/live/cam",
        ],
    )

    assert result.exit_code == 0, result.output
    sup = created["supervisor"]
    assert sup.ingest_url == "rtmp://10.0.0.2/live/cam"
    assert sup.calls[0] == ("start_all", ["yt", "tw"])


def test_test_connection_reports_result(monkeypatch):
    tester = MagicMock()
    tester.test.return_value = ConnectionTestResult(success=False, error="Authentication failed")
    monkeypatch.setattr(restreamer_main, "locate_ffmpeg", lambda path: "/usr/bin/ffmpeg")
    monkeypatch.setattr(restreamer_main, "ConnectionTester", lambda path: tester)

    runner = CliRunner()
    result = runner.invoke(restreamer_main.app, ["test-connection", "rtmp://x/app", "key"])

    assert result.exit_code == 1
    assert "Authentication failed" in result.output
    tester.test.assert_called_once_with("rtmp://x/app", "key")

    tester.test.return_value = ConnectionTestResult(success=True)
    result = runner.invoke(restreamer_main.app, ["test-connection", "rtmp://x/app", "key"])
    assert result.exit_code == 0
    assert "Connection OK" in result.output


def test_detect_lists_encoders():
    runner = CliRunner()
    with patch("restreamer.main.locate_ffmpeg", return_value="/usr/bin/ffmpeg"), \
         patch("restreamer.main.detect_encoders", return_value=AvailableEncoders(hardware=["h264_nvenc"])):
        result = runner.invoke(restreamer_main.app, ["detect"])

    assert result.exit_code == 0
    assert "/usr/bin/ffmpeg" in result.output
    assert "h264_nvenc" in result.output
    assert "libx264" in result.output


def test_detect_without_ffmpeg():
    runner = CliRunner()
    with patch("restreamer.main.locate_ffmpeg", return_value=None):
        result = runner.invoke(restreamer_main.app, ["detect"])
    assert result.exit_code == 1


def test_presets_lists_platforms():
    runner = CliRunner()
    result = runner.invoke(restreamer_main.app, ["presets"])

    assert result.exit_code == 0
    assert "youtube" in result.output
    assert "rtmp://a.rtmp.youtube.com/live2/" in result.output
    assert "(RTMPS)" in result.output
    assert "6000k 1080p60" in result.output
