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

"""
Encore Music Bot
========================================================
VERSION: 1.0.0
========================================================

Queue-based YouTube music for Discord voice channels, with an on-disk
cache of transcoded tracks.
"""

import asyncio
import os
from pathlib import Path

import discord
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

from core.pipeline import FFmpegTranscoder, PlaybackPipeline
from core.playback import PlaybackScheduler
from core.service import MusicService
from core.session import SessionRegistry
from systems.cache import CacheStore
from systems.voice_manager import VoiceManager
from systems.youtube import YouTubeResolver
from utils.config import ConfigManager, validate_configuration
from utils.log_setup import setup_logging

__version__ = "1.0.0"

EXTENSIONS = ("cogs.music",)


class EncoreBot(commands.Bot):
    """Bot with the playback stack wired up from configuration."""

    def __init__(self, config_manager: ConfigManager) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.voice_states = True

        super().__init__(
            command_prefix=config_manager.get("command_prefix", "-"),
            intents=intents,
            help_command=None,
        )
        self.config_manager = config_manager

        cfg = config_manager
        ffmpeg = cfg.get_path("ffmpeg.executable", "ffmpeg")
        self.cache = CacheStore(Path(cfg.get_path("cache.dir", "./cache")))
        self.resolver = YouTubeResolver(
            cookies_file=cfg.get_path("youtube.cookies_file"),
            search_timeout=cfg.get_path("youtube.search_timeout", 15),
            extract_timeout=cfg.get_path("youtube.extract_timeout", 25),
        )
        self.pipeline = PlaybackPipeline(
            self.cache,
            self.resolver,
            FFmpegTranscoder(executable=ffmpeg, bitrate=cfg.get_path("cache.bitrate", "128k")),
        )
        self.registry = SessionRegistry(default_volume=cfg.get("default_volume", 100) / 100)
        self.voice_manager = VoiceManager(self.registry, connect_timeout=cfg.get("connect_timeout", 30))
        self.scheduler = PlaybackScheduler(self.pipeline)
        self.music_service = MusicService(
            self.registry,
            self.voice_manager,
            self.resolver,
            self.scheduler,
            cfg.msg,
            queue_display_size=cfg.get("queue_display_size", 10),
        )
        self.scheduler.notify_failure = self.music_service.notify_failure

    async def setup_hook(self) -> None:
        if self.config_manager.get_path("cache.cleanup_on_startup", True):
            await asyncio.to_thread(self.cache.cleanup_stale)
        for extension in EXTENSIONS:
            await self.load_extension(extension)
            logger.debug(f"loaded {extension}")

    async def on_ready(self) -> None:
        logger.log("NOTICE", f"Encore v{__version__} - Copyright (C) 2026 grodz")
        logger.log("NOTICE", "Licensed under GPL 3.0 - See LICENSE.md for details")
        logger.log("NOTICE", f"connected as {self.user} (prefix {self.command_prefix!r})")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        logger.info(f"removed from guild {guild.name}")
        await self.voice_manager.disconnect(guild.id, guild)

    async def on_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        """Log command errors; typos and DM attempts are ignored."""
        if isinstance(error, commands.CommandNotFound):
            logger.debug(f"unknown command from {ctx.author}: {ctx.message.content}")
            return
        if isinstance(error, (commands.CheckFailure, commands.BadArgument, commands.UserInputError)):
            logger.debug(f"rejected {ctx.command} from {ctx.author}: {error}")
            return

        original = getattr(error, "original", error)
        logger.opt(exception=original).error(f"command error in {ctx.command}")

    async def close(self) -> None:
        logger.info("shutting down...")
        try:
            await self.music_service.shutdown()
            await self.resolver.shutdown()
        except Exception:
            logger.opt(exception=True).error("error during shutdown")
        await super().close()


async def main() -> None:
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "verbose"))

    _default_config = Path(__file__).parent / "config"
    config_path = Path(os.getenv("CONFIG_PATH") or str(_default_config))
    config_manager = ConfigManager(config_path)
    await config_manager.load()

    logging_cfg = config_manager.get("logging", {})
    setup_logging(logging_cfg.get("level", "verbose"), logging_cfg.get("suppress_library_logs", True))

    validate_configuration(
        config_path,
        Path(config_manager.get_path("cache.dir", "./cache")),
        config_manager.get_path("ffmpeg.executable", "ffmpeg"),
    )

    bot = EncoreBot(config_manager)
    async with bot:
        await bot.start(os.environ["DISCORD_TOKEN"].strip())


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("stopped by user (Ctrl+C)")


if __name__ == "__main__":
    run()
