"""Tests for the application root and command line."""
import json
from unittest.mock import patch

import pytest

from levelup import __main__ as cli
from levelup.app import LevelUpApp
from levelup.config import (
    AutoSaveSettings,
    DatabaseSettings,
    MonitoringSettings,
    PathSettings,
    RemoteSettings,
    Settings,
)

from conftest import make_progress


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    """Create settings pointing at a temporary database."""
    return Settings(
        paths=PathSettings(languages_dir=tmp_path / "languages"),
        database=DatabaseSettings(url=f"sqlite:///{tmp_path / 'app.db'}"),
        remote=RemoteSettings(enabled=False),
        auto_save=AutoSaveSettings(enabled=False),
        monitoring=MonitoringSettings(enabled=False),
    )


@pytest.mark.asyncio
async def test_app_wires_services(app_settings):
    """Test the application builds its services and runs without a remote backend."""
    app = LevelUpApp(app_settings)

    assert app.remote is None
    assert app.tiered.remote is None
    assert app.data_transfer.storage is app.storage
    assert app.language_data.cache is app.cache

    await app.start()
    assert app.running
    saved = await app.storage.save_word_progress("de", make_progress(2))
    loaded = await app.storage.load_word_progress("de")
    await app.stop()

    assert saved.success
    assert len(loaded.data) == 2
    assert not app.running


@pytest.mark.asyncio
async def test_app_with_remote_enabled(app_settings):
    """Test the remote backend is built and closed when enabled."""
    app_settings.remote = RemoteSettings(enabled=True, base_url="http://storage.test")

    app = LevelUpApp(app_settings)

    assert app.remote is not None
    assert app.tiered.remote is app.remote
    await app.stop()


def test_parser_commands():
    """Test the command line parser."""
    parser = cli.build_parser()

    export = parser.parse_args(["export", "backup.json"])
    import_ = parser.parse_args(["import", "backup.json", "--merge", "--language", "de"])

    assert export.command == "export"
    assert str(export.path) == "backup.json"
    assert import_.merge
    assert import_.languages == ["de"]
    with pytest.raises(SystemExit):
        parser.parse_args([])


@pytest.mark.asyncio
async def test_export_and_import_commands(app_settings, tmp_path, capsys):
    """Test export and import commands run against the application."""
    path = tmp_path / "backup.json"

    with patch.object(cli, "LevelUpApp", side_effect=lambda: LevelUpApp(app_settings)):
        first = LevelUpApp(app_settings)
        await first.start()
        await first.storage.save_word_progress("es", make_progress(3))
        await first.stop()

        export_code = await cli.run(cli.build_parser().parse_args(["export", str(path)]))
        import_code = await cli.run(cli.build_parser().parse_args(["import", str(path)]))

    assert export_code == 0
    assert import_code == 0
    assert list(json.loads(path.read_text(encoding="utf-8"))["wordProgress"]) == ["es"]
    assert "Successfully imported 1 language(s): es" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_health_command(app_settings, capsys):
    """Test the health command prints the storage verdict."""
    with patch.object(cli, "LevelUpApp", side_effect=lambda: LevelUpApp(app_settings)):
        code = await cli.run(cli.build_parser().parse_args(["health"]))

    assert code == 0
    assert json.loads(capsys.readouterr().out)["status"] == "healthy"
