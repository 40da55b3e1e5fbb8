# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

import pytest
import yaml

from utils import config as config_module
from utils.config import DEFAULT_SETTINGS, ConfigManager, validate_configuration

ENV_KEYS = (
    "COMMAND_PREFIX", "DEFAULT_VOLUME", "CONNECT_TIMEOUT", "QUEUE_DISPLAY_SIZE",
    "CACHE_DIR", "AUDIO_BITRATE", "CACHE_CLEANUP_ON_STARTUP", "FFMPEG_PATH",
    "YOUTUBE_COOKIES_FILE", "SEARCH_TIMEOUT", "EXTRACT_TIMEOUT", "LOG_LEVEL",
    "SUPPRESS_LIBRARY_LOGS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def write_yaml(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


async def test_first_load_generates_default_files(tmp_path):
    manager = ConfigManager(tmp_path)
    await manager.load()

    assert (tmp_path / "settings.yaml").exists()
    assert (tmp_path / "messages.yaml").exists()
    assert manager.settings == DEFAULT_SETTINGS

    reloaded = yaml.safe_load((tmp_path / "settings.yaml").read_text(encoding="utf-8"))
    assert reloaded == DEFAULT_SETTINGS


async def test_yaml_values_are_merged_and_clamped(tmp_path):
    write_yaml(tmp_path / "settings.yaml", {
        "default_volume": 250,
        "queue_display_size": 0,
        "connect_timeout": "soon",
        "cache": {"bitrate": "96k"},
        "logging": {"level": "LOUD"},
        "mystery": True,
    })
    manager = ConfigManager(tmp_path)
    await manager.load()

    assert manager.get("default_volume") == 100
    assert manager.get("queue_display_size") == 1
    assert manager.get("connect_timeout") == 30
    assert manager.get_path("cache.bitrate") == "96k"
    assert manager.get_path("cache.dir") == "./cache"
    assert manager.get_path("logging.level") == "verbose"
    assert manager.get("mystery") is None


async def test_empty_values_fall_back_to_defaults(tmp_path):
    (tmp_path / "settings.yaml").write_text("command_prefix:\nyoutube:\n  search_timeout:\n", encoding="utf-8")
    manager = ConfigManager(tmp_path)
    await manager.load()

    assert manager.get("command_prefix") == "-"
    assert manager.get_path("youtube.search_timeout") == 15
    assert manager.get_path("youtube.cookies_file") is None


async def test_broken_yaml_uses_defaults(tmp_path):
    (tmp_path / "settings.yaml").write_text("cache: [unclosed", encoding="utf-8")
    manager = ConfigManager(tmp_path)
    await manager.load()
    assert manager.settings == DEFAULT_SETTINGS


async def test_environment_overrides_yaml(tmp_path, monkeypatch):
    write_yaml(tmp_path / "settings.yaml", {"default_volume": 80})
    monkeypatch.setenv("DEFAULT_VOLUME", "40")
    monkeypatch.setenv("CACHE_DIR", "/srv/encore/cache")
    monkeypatch.setenv("SUPPRESS_LIBRARY_LOGS", "false")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("SEARCH_TIMEOUT", "not-a-number")

    manager = ConfigManager(tmp_path)
    await manager.load()

    assert manager.get("default_volume") == 40
    assert manager.get_path("cache.dir") == "/srv/encore/cache"
    assert manager.get_path("logging.suppress_library_logs") is False
    assert manager.get_path("logging.level") == "debug"
    assert manager.get_path("youtube.search_timeout") == 15


async def test_custom_messages(tmp_path):
    write_yaml(tmp_path / "messages.yaml", {
        "skipped": "Next!",
        "volume_set": {"text": "Volume now {level}"},
    })
    manager = ConfigManager(tmp_path)
    await manager.load()

    assert manager.msg("skipped") == "Next!"
    assert manager.msg("volume_set", level=55) == "Volume now 55"
    assert manager.msg("left") == "Left the voice channel."


def test_msg_formatting_edge_cases(tmp_path):
    manager = ConfigManager(tmp_path)
    assert manager.msg("added_to_queue", title="Song") == "Added to queue: **Song**"
    assert manager.msg("added_to_queue") == "Added to queue: **{title}**"
    assert manager.msg("no_such_key") == "no_such_key"


def test_get_path_handles_missing_branches(tmp_path):
    manager = ConfigManager(tmp_path)
    assert manager.get_path("ffmpeg.executable") == "ffmpeg"
    assert manager.get_path("ffmpeg.missing", "fallback") == "fallback"
    assert manager.get_path("command_prefix.deeper", 1) == 1


def test_validate_configuration_exits_without_token(tmp_path, monkeypatch):
    monkeypatch.delenv("DISCORD_TOKEN", raising=False)
    monkeypatch.setattr(config_module.shutil, "which", lambda name: "/usr/bin/ffmpeg")
    with pytest.raises(SystemExit):
        validate_configuration(tmp_path / "config", tmp_path / "cache")


def test_validate_configuration_exits_without_ffmpeg(tmp_path, monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "aaa.bbb.ccc")
    monkeypatch.setattr(config_module.shutil, "which", lambda name: None)
    with pytest.raises(SystemExit):
        validate_configuration(tmp_path / "config", tmp_path / "cache")


def test_validate_configuration_creates_missing_dirs(tmp_path, monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "aaa.bbb.ccc")
    monkeypatch.setattr(config_module.shutil, "which", lambda name: "/usr/bin/ffmpeg")
    validate_configuration(tmp_path / "config", tmp_path / "cache")
    assert (tmp_path / "config").is_dir()
    assert (tmp_path / "cache").is_dir()
