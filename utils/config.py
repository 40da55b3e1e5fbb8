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

"""Configuration management for Encore."""

import asyncio
import copy
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Playback Settings:
#   command_prefix         - Prefix for text commands (e.g. "-play")
#   default_volume         - Initial volume for new guild sessions (0-100)
#   connect_timeout        - Seconds to wait for a voice connection to be ready
#   queue_display_size     - Tracks shown by the queue command (1-25)
#
# Cache Settings (cache.*):
#   dir                    - Directory holding transcoded tracks
#   bitrate                - Opus bitrate for transcoding (e.g. "128k")
#   cleanup_on_startup     - Delete leftover partial writes at startup
#
# FFmpeg Settings (ffmpeg.*):
#   executable             - ffmpeg binary name or path
#
# YouTube Settings (youtube.*):
#   cookies_file           - Netscape cookies file passed to yt-dlp (None = off)
#   search_timeout         - Seconds before a search gives up
#   extract_timeout        - Seconds before a video/playlist/stream lookup gives up
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
#   suppress_library_logs  - Only show discord.py warnings and above
# =============================================================================

DEFAULT_SETTINGS = {
    "command_prefix": "-",
    "default_volume": 100,
    "connect_timeout": 30,
    "queue_display_size": 10,
    "cache": {
        "dir": "./cache",
        "bitrate": "128k",
        "cleanup_on_startup": True,
    },
    "ffmpeg": {
        "executable": "ffmpeg",
    },
    "youtube": {
        "cookies_file": None,
        "search_timeout": 15,
        "extract_timeout": 25,
    },
    # Logging (LOG_LEVEL env var overrides this)
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
        "suppress_library_logs": True,
    },
}

# =============================================================================
# DEFAULT MESSAGES SCHEMA
# =============================================================================
# Bot replies, one template per key. Templates support {variables}.
#
# Categories:
#   Voice, Playback, Search, Queue, Settings, Errors
# =============================================================================

DEFAULT_MESSAGES = {
    # Voice
    "not_in_vc": "You need to be in a voice channel to play music!",
    "wrong_vc": "You need to be in the same voice channel as the bot to use this command.",
    "failed_join_vc": "Failed to join the voice channel.",
    "not_in_vc_bot": "I am not in a voice channel.",
    "left": "Left the voice channel.",

    # Playback
    "play_usage": "Please provide a URL or search terms to play!",
    "nothing_playing": "No song is currently playing.",
    "nothing_paused": "No song is currently paused.",
    "skipped": "Skipped the current song.",
    "paused": "Paused the current song.",
    "resumed": "Resumed the current song.",
    "track_failed": "Couldn't play **{title}**, skipping.",

    # Search
    "song_not_found": "No results found on YouTube for your query.",
    "playlist_empty": "No videos found in the playlist.",
    "lookup_failed": "Couldn't reach YouTube, try again in a moment.",

    # Queue
    "added_to_queue": "Added to queue: **{title}**",
    "playlist_added": "Added {count} songs from the playlist to the queue.",
    "queue_empty": "The queue is empty.",
    "queue_more": "...and {count} more",

    # Settings
    "volume_usage": "Please provide a volume level between 0 and 100.",
    "volume_invalid": "Volume must be a number between 0 and 100.",
    "volume_set": "Volume set to {level}%.",
    "loop_usage": "Please specify a loop mode: off, song, or queue.",
    "loop_set": "Loop mode set to {mode}.",

    # Errors
    "error_generic": "Something went wrong, try again.",
}

LOG_LEVELS = ("minimal", "verbose", "debug")

# Bounded integer settings: dotted key -> (min, max); None means no upper bound
BOUNDS: dict[str, tuple[int, int | None]] = {
    "default_volume": (0, 100),
    "queue_display_size": (1, 25),
    "connect_timeout": (1, None),
    "youtube.search_timeout": (1, None),
    "youtube.extract_timeout": (1, None),
}


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


# ENV_VAR -> (dotted setting key, converter)
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "COMMAND_PREFIX": ("command_prefix", str),
    "DEFAULT_VOLUME": ("default_volume", int),
    "CONNECT_TIMEOUT": ("connect_timeout", int),
    "QUEUE_DISPLAY_SIZE": ("queue_display_size", int),
    "CACHE_DIR": ("cache.dir", str),
    "AUDIO_BITRATE": ("cache.bitrate", str),
    "CACHE_CLEANUP_ON_STARTUP": ("cache.cleanup_on_startup", _to_bool),
    "FFMPEG_PATH": ("ffmpeg.executable", str),
    "YOUTUBE_COOKIES_FILE": ("youtube.cookies_file", str),
    "SEARCH_TIMEOUT": ("youtube.search_timeout", int),
    "EXTRACT_TIMEOUT": ("youtube.extract_timeout", int),
    "LOG_LEVEL": ("logging.level", str),
    "SUPPRESS_LIBRARY_LOGS": ("logging.suppress_library_logs", _to_bool),
}


def merge_defaults(defaults: dict, overrides: dict, prefix: str = "") -> dict:
    """Return a copy of defaults with overrides applied section by section.

    Keys that have no default are dropped with a warning, so a typo in
    settings.yaml is reported instead of silently ignored.
    """
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if key not in defaults:
            logger.warning(f"ignoring unknown config key: {prefix}{key}")
            continue
        if isinstance(defaults[key], dict) and isinstance(value, dict):
            merged[key] = merge_defaults(defaults[key], value, f"{prefix}{key}.")
        else:
            merged[key] = value
    return merged


def read_yaml(path: Path, defaults: dict) -> dict:
    """Read a YAML mapping on top of defaults. Missing or broken files give defaults."""
    if not path.exists():
        return copy.deepcopy(defaults)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError:
        logger.opt(exception=True).error(f"{path.name} is not valid YAML, using defaults")
        return copy.deepcopy(defaults)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        logger.warning(f"{path.name} should be a mapping, using defaults")
        return copy.deepcopy(defaults)
    return merge_defaults(defaults, data)


def write_yaml(path: Path, data: dict, header: str = "") -> None:
    """Write data next to path under a temp name, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp", delete=False
    ) as f:
        temp_path = Path(f.name)
        try:
            f.write(header)
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        except BaseException:
            f.close()
            temp_path.unlink(missing_ok=True)
            raise
    try:
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def _clamp(key: str, value: Any, default: int, low: int, high: int | None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning(f"{key}={value!r} is not a number, using {default}")
        return default
    clamped = max(low, number if high is None else min(high, number))
    if clamped != number:
        bound = f"{low}-{high}" if high is not None else f">= {low}"
        logger.warning(f"{key}={number} out of range ({bound}), using {clamped}")
    return clamped


SETTINGS_HEADER = "# Encore settings\n# Environment variables override these values (see ENV_OVERRIDES)\n\n"
MESSAGES_HEADER = "# Encore replies\n# Templates use {placeholders}; remove a key to restore its default\n\n"


class ConfigManager:
    """Settings and reply templates for one bot process.

    Sources, lowest to highest precedence: built-in defaults, the YAML files
    under config_path, environment variables. Missing YAML files are created
    with the defaults so operators have something to edit.

        config.get("default_volume")
        config.get_path("youtube.cookies_file")
        config.msg("volume_set", level=40)
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = Path(config_path)
        self.settings: dict = copy.deepcopy(DEFAULT_SETTINGS)
        self.messages: dict = dict(DEFAULT_MESSAGES)

    async def load(self) -> None:
        for name, defaults, header, attr in (
            ("settings.yaml", DEFAULT_SETTINGS, SETTINGS_HEADER, "settings"),
            ("messages.yaml", DEFAULT_MESSAGES, MESSAGES_HEADER, "messages"),
        ):
            path = self.config_path / name
            setattr(self, attr, await asyncio.to_thread(read_yaml, path, defaults))
            if not path.exists():
                await asyncio.to_thread(write_yaml, path, defaults, header)
                logger.info(f"wrote default {name} to {self.config_path}")

        self._apply_env_overrides()
        self._validate_settings()
        logger.debug(f"config loaded from {self.config_path}")

    def _validate_settings(self) -> None:
        """Restore blanked keys, clamp numbers, and check level and prefix."""
        # "key:" with no value in YAML loads as None
        for key, default in DEFAULT_SETTINGS.items():
            value = self.settings.get(key)
            if isinstance(default, dict):
                if not isinstance(value, dict):
                    if value is not None:
                        logger.warning(f"{key} should be a section, using defaults")
                    self.settings[key] = copy.deepcopy(default)
                    continue
                for sub_key, sub_default in default.items():
                    if value.get(sub_key) is None and sub_default is not None:
                        value[sub_key] = sub_default
            elif value is None:
                self.settings[key] = copy.deepcopy(default)

        for dotted, (low, high) in BOUNDS.items():
            self._set_path(dotted, _clamp(dotted, self.get_path(dotted), self._default_for(dotted), low, high))

        level = str(self.get_path("logging.level", "")).strip().lower()
        if level not in LOG_LEVELS:
            logger.warning(f"logging.level must be one of {', '.join(LOG_LEVELS)}, using verbose")
            level = "verbose"
        self.settings["logging"]["level"] = level

        prefix = self.settings.get("command_prefix")
        if not isinstance(prefix, str) or not prefix.strip():
            logger.warning(f"command_prefix={prefix!r} is empty, using {DEFAULT_SETTINGS['command_prefix']!r}")
            self.settings["command_prefix"] = DEFAULT_SETTINGS["command_prefix"]

    @staticmethod
    def _default_for(dotted: str) -> Any:
        value: Any = DEFAULT_SETTINGS
        for part in dotted.split("."):
            value = value[part]
        return value

    def _set_path(self, dotted: str, value: Any) -> bool:
        *parents, leaf = dotted.split(".")
        target = self.settings
        for part in parents:
            target = target.setdefault(part, {})
            if not isinstance(target, dict):
                return False
        target[leaf] = value
        return True

    def _apply_env_overrides(self) -> None:
        for env_key, (dotted, convert) in ENV_OVERRIDES.items():
            raw = os.getenv(env_key)
            if not raw:
                continue
            try:
                value = convert(raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"ignoring {env_key}={raw!r}: {e}")
                continue
            if self._set_path(dotted, value):
                logger.debug(f"{dotted} set from {env_key}")
            else:
                logger.warning(f"cannot apply {env_key}: {dotted} is not a section in settings.yaml")

    def get(self, key: str, default=None) -> Any:
        return self.settings.get(key, default)

    def get_path(self, dotted: str, default=None) -> Any:
        """Nested setting by dotted key, e.g. "cache.dir"."""
        target: Any = self.settings
        for part in dotted.split("."):
            if not isinstance(target, dict) or part not in target:
                return default
            target = target[part]
        return target

    def msg(self, key: str, **kwargs) -> str:
        """Reply text for key, formatted with kwargs.

        Unknown keys come back as the key itself; a template whose
        placeholders aren't all supplied comes back unformatted.
        """
        template = self.messages.get(key) or DEFAULT_MESSAGES.get(key, key)
        if isinstance(template, dict):
            template = template.get("text", key)
        try:
            return str(template).format(**kwargs)
        except (KeyError, IndexError, ValueError):
            return str(template)


def _token_problem(token: str | None) -> str | None:
    if not token:
        return "DISCORD_TOKEN is not set; put it in .env or the environment"
    sections = token.strip().split(".")
    if len(sections) != 3 or not all(sections):
        return (
            "DISCORD_TOKEN doesn't look like a bot token (expected three non-empty, dot-separated parts).\n"
            "Copy it again from https://discord.com/developers/applications"
        )
    return None


def validate_configuration(config_path: Path, cache_dir: Path, ffmpeg_executable: str = "ffmpeg") -> None:
    """Preflight before connecting to Discord. Logs every problem, then exits with status 1."""
    problems = []

    if problem := _token_problem(os.getenv("DISCORD_TOKEN")):
        problems.append(problem)

    for label, path in (("config", config_path), ("cache", cache_dir)):
        if path.is_dir():
            continue
        try:
            path.mkdir(parents=True, exist_ok=True)
            logger.warning(f"created {label} directory {path}")
        except OSError as e:
            problems.append(f"cannot create {label} directory {path}: {e}")

    if shutil.which(ffmpeg_executable) is None:
        problems.append(f"ffmpeg not found ({ffmpeg_executable!r}); install it or set FFMPEG_PATH")

    if problems:
        for problem in problems:
            logger.error(problem)
        sys.exit(1)
