"""Tests for the plume command line."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from plume.cli import build_server_config, cli
from plume.config import Settings, StorageConfig, UploadConfig, clear_settings_cache
from plume.lib.exceptions import Internal
from plume.services import MediaServices


@pytest.fixture
def services(upload_root, memory_backend):
    settings = Settings(
        upload=UploadConfig(root_path=str(upload_root)),
        storage=StorageConfig(local_path=str(upload_root / "remote")),
    )
    return MediaServices.from_settings(settings, backend=memory_backend)


@pytest.fixture
def invoke(services):
    runner = CliRunner()

    def _invoke(*args):
        with patch("plume.cli._services", return_value=services):
            return runner.invoke(cli, list(args))

    return _invoke


class TestValidate:
    """Test the validate command."""

    def test_ok(self, invoke, write_temp):
        result = invoke("validate", write_temp("a.png"), write_temp("b.png"))
        assert result.exit_code == 0
        assert "2 file(s) OK" in result.output

    def test_missing_reports_json(self, invoke):
        result = invoke("validate", "/uploads/temp/missing.png")
        assert result.exit_code == 1
        error = json.loads(result.stderr)
        assert error["code"] == "NOT_FOUND"
        assert error["data"]["missingPaths"] == ["/uploads/temp/missing.png"]


class TestPromote:
    """Test the promote command."""

    def test_promote_and_delete_temp(self, invoke, write_temp, upload_root):
        temp = write_temp("cover.png")
        result = invoke("promote", "album_cover", temp, "--delete-temp")

        assert result.exit_code == 0, result.output
        assert result.output.startswith("/uploads/albums/covers/main/")
        assert "(thumbnail /uploads/albums/covers/thumb/" in result.output
        assert not (upload_root / "temp" / "cover.png").exists()

    def test_cleanup_failure_only_warns(self, invoke, services, write_temp, upload_root):
        temp = write_temp("a.png")
        cleanup = AsyncMock(side_effect=Internal("Cannot delete temp/a.png"))
        with patch.object(services.promotion, "delete_assets", cleanup):
            result = invoke("promote", "article_image", temp, "--delete-temp")

        assert result.exit_code == 0, result.output
        assert "Warning: temp files kept" in result.stderr
        assert (upload_root / "temp" / "a.png").exists()

    def test_unknown_scene(self, invoke, write_temp):
        result = invoke("promote", "banner", write_temp("a.png"))
        assert result.exit_code == 1
        assert json.loads(result.stderr)["code"] == "BAD_REQUEST"


class TestThumbnail:
    """Test the thumbnail command."""

    def test_custom_size(self, invoke, write_temp, upload_root):
        from PIL import Image

        result = invoke("thumbnail", write_temp("pic.png"), "--width", "32", "--height", "24")

        assert result.exit_code == 0, result.output
        web_path = result.output.strip()
        assert web_path == "/uploads/temp/pic_thumb.webp"
        with Image.open(upload_root / "temp" / "pic_thumb.webp") as img:
            assert img.size == (32, 24)

    def test_missing_primary_is_an_error(self, invoke):
        result = invoke("thumbnail", "/uploads/temp/missing.png")
        assert result.exit_code == 1
        assert json.loads(result.stderr)["code"] == "NOT_FOUND"


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


class TestServe:
    """Test the serve command and its hypercorn configuration."""

    def test_server_config(self):
        config = build_server_config("0.0.0.0", 9000, workers=4, log_level="debug", graceful_timeout=12.5)
        assert config.application_path == "plume.asgi:app"
        assert config.bind == ["0.0.0.0:9000"]
        assert config.workers == 4
        assert config.loglevel == "DEBUG"
        assert config.graceful_timeout == 12.5
        assert config.include_server_header is False

    def test_reload_forces_single_worker(self):
        config = build_server_config("127.0.0.1", 8080, workers=4, reload=True)
        assert config.workers == 1
        assert config.use_reloader is True

    def test_serve_runs_hypercorn(self):
        with patch("plume.cli._serve_until_signalled", new=MagicMock(return_value=None)) as serve_mock:
            with patch("plume.cli.asyncio.run") as run:
                result = CliRunner().invoke(cli, ["serve", "--port", "9001", "--log-level", "warning"])

        assert result.exit_code == 0, result.output
        assert "http://127.0.0.1:9001" in result.output
        [config] = serve_mock.call_args.args
        assert config.bind == ["127.0.0.1:9001"]
        run.assert_called_once_with(serve_mock.return_value)


class TestConfigFile:
    """Test the --config-file option."""

    def test_points_settings_at_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PLUME_CONFIG", "unused.yaml")
        config_path = tmp_path / "custom.yaml"
        config_path.write_text(yaml.safe_dump({"log_level": "debug"}))
        seen = {}

        def _services():
            from plume.config import get_settings

            seen["log_level"] = get_settings().log_level
            raise SystemExit(0)

        with patch("plume.cli._services", side_effect=_services):
            result = CliRunner().invoke(cli, ["-f", str(config_path), "validate", "x.png"])

        assert result.exit_code == 0, result.output
        assert seen["log_level"] == "debug"
        clear_settings_cache()

    def test_missing_file_rejected(self, tmp_path):
        result = CliRunner().invoke(cli, ["-f", str(tmp_path / "nope.yaml"), "validate", "x.png"])
        assert result.exit_code == 2
