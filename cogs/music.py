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

"""Music commands: play, skip, pause, resume, volume, loop, queue, leave.

Thin layer over MusicService. Commands that change playback are only
accepted from the bot's voice channel (or from anywhere while it isn't
connected).
"""

import discord
from discord.ext import commands
from loguru import logger

from core.service import MusicService
from core.track import Requester
from utils.response import ResponseMixin


class Music(ResponseMixin, commands.Cog):
    """Queue-based YouTube playback."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @property
    def service(self) -> MusicService:
        return self.bot.music_service

    async def cog_check(self, ctx: commands.Context) -> bool:
        # Guild-only; DMs have no voice to play into
        return ctx.guild is not None

    async def _check_same_vc(self, ctx: commands.Context) -> bool:
        """Check user is in the bot's voice channel. Replies wrong_vc on denial."""
        voice_state = getattr(ctx.author, "voice", None)
        if self.service.check_same_channel(ctx.guild.id, voice_state):
            return True
        logger.debug(f"{ctx.author.display_name} tried {ctx.command} from outside the bot's channel")
        await self.reply(ctx, self.msg("wrong_vc"))
        return False

    @commands.command(name="play", aliases=["p"])
    async def play(self, ctx: commands.Context, *, query: str = "") -> None:
        """Queue a YouTube URL, playlist, or the first search result."""
        if not await self._check_same_vc(ctx):
            return
        voice_state = getattr(ctx.author, "voice", None)
        channel = voice_state.channel if voice_state else None
        requester = Requester(id=ctx.author.id, name=ctx.author.display_name)
        text = await self.service.enqueue_from_query(ctx.guild.id, requester, channel, query, ctx.channel)
        await self.reply(ctx, text)

    @commands.command(name="skip", aliases=["s"])
    async def skip(self, ctx: commands.Context) -> None:
        """Skip to the next track."""
        if not await self._check_same_vc(ctx):
            return
        await self.reply(ctx, await self.service.skip(ctx.guild.id))

    @commands.command(name="pause")
    async def pause(self, ctx: commands.Context) -> None:
        if not await self._check_same_vc(ctx):
            return
        await self.reply(ctx, await self.service.pause(ctx.guild.id))

    @commands.command(name="resume")
    async def resume(self, ctx: commands.Context) -> None:
        if not await self._check_same_vc(ctx):
            return
        await self.reply(ctx, await self.service.resume(ctx.guild.id))

    @commands.command(name="volume", aliases=["vol"])
    async def volume(self, ctx: commands.Context, level: str | None = None) -> None:
        """Set playback volume (0-100)."""
        if not await self._check_same_vc(ctx):
            return
        await self.reply(ctx, await self.service.set_volume_percent(ctx.guild.id, level))

    @commands.command(name="loop")
    async def loop(self, ctx: commands.Context, mode: str | None = None) -> None:
        """Set loop mode: off, song or queue."""
        if not await self._check_same_vc(ctx):
            return
        await self.reply(ctx, await self.service.set_loop_mode(ctx.guild.id, mode))

    @commands.command(name="queue", aliases=["q"])
    async def queue(self, ctx: commands.Context) -> None:
        """Show what's playing and what's next."""
        await self.reply(ctx, await self.service.describe_queue(ctx.guild.id))

    @commands.command(name="leave", aliases=["stop", "disconnect"])
    async def leave(self, ctx: commands.Context) -> None:
        """Stop playback, clear the queue and leave voice."""
        if not await self._check_same_vc(ctx):
            return
        logger.info(f"leave requested by {ctx.author.display_name}")
        await self.reply(ctx, await self.service.leave(ctx.guild.id, ctx.guild))

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ) -> None:
        """Tear the session down when the bot is kicked or disconnected externally."""
        if self.bot.user is None or member.id != self.bot.user.id:
            return
        if before.channel and not after.channel:
            logger.info(f"disconnected from #{before.channel.name}")
            await self.service.handle_voice_lost(member.guild.id)
        elif after.channel and before.channel != after.channel:
            logger.info(f"moved to #{after.channel.name}")


async def setup(bot: commands.Bot) -> None:
    """Load the Music cog."""
    await bot.add_cog(Music(bot))
