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

"""Per-guild music operations behind the chat commands.

Every public coroutine returns exactly one reply string and never raises:
expected failures map to a message key, anything else is logged with a
traceback and answered with error_generic.
"""

import asyncio
from typing import Any, Awaitable, Callable, Protocol

import discord
from loguru import logger

from core.errors import ConnectTimeout, FetchFailed, InvalidCommandArgument, NotFound
from core.playback import PlaybackScheduler
from core.player import PlayerState
from core.session import GuildSession, SessionRegistry
from core.track import LoopMode, Requester, Track
from systems.voice_manager import VoiceManager
from systems.youtube import is_playlist_url
from utils.response import QUEUE_TITLE_MAX, escape_markdown, truncate_for_display

MessageFormatter = Callable[..., str]


class TrackResolver(Protocol):
    async def resolve(self, query: str, requester: Requester) -> Track | list[Track]: ...


def format_track(track: Track) -> str:
    title = escape_markdown(truncate_for_display(track.title, QUEUE_TITLE_MAX))
    return f"**{title}** (requested by {escape_markdown(track.requested_by.name)})"


class MusicService:
    """Command facade over the registry, voice manager, resolver and scheduler."""

    def __init__(
        self,
        registry: SessionRegistry,
        voice: VoiceManager,
        resolver: TrackResolver,
        scheduler: PlaybackScheduler,
        msg: MessageFormatter,
        queue_display_size: int = 10,
    ) -> None:
        self.registry = registry
        self.voice = voice
        self.resolver = resolver
        self.scheduler = scheduler
        self.msg = msg
        self.queue_display_size = queue_display_size

    async def _safely(self, guild_id: int, command: str, operation: Awaitable[str]) -> str:
        try:
            return await operation
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.opt(exception=True).error(f"{command} failed in guild {guild_id}")
            return self.msg("error_generic")

    # =========================================================================
    # Gating
    # =========================================================================

    def check_same_channel(self, guild_id: int, voice_state: discord.VoiceState | None) -> bool:
        session = self.registry.get(guild_id)
        voice_client = session.voice_client if session else None
        return self.voice.is_same_channel(voice_client, voice_state)

    # =========================================================================
    # Commands
    # =========================================================================

    async def enqueue_from_query(
        self,
        guild_id: int,
        requester: Requester,
        voice_channel: discord.VoiceChannel | None,
        query: str | None,
        text_channel: Any = None,
    ) -> str:
        return await self._safely(
            guild_id, "play", self._enqueue(guild_id, requester, voice_channel, query, text_channel)
        )

    async def _enqueue(self, guild_id, requester, voice_channel, query, text_channel) -> str:
        query = (query or "").strip()
        if not query:
            return self.msg("play_usage")
        if voice_channel is None:
            return self.msg("not_in_vc")

        session = self.registry.get_or_create(guild_id)
        async with session.command_lock:
            try:
                await self.voice.connect(session, voice_channel)
            except (ConnectTimeout, discord.DiscordException, asyncio.TimeoutError) as e:
                logger.warning(f"failed to join #{voice_channel.name}: {e}")
                if not session.is_connected() and not session.queue:
                    self.registry.remove(guild_id)
                return self.msg("failed_join_vc")

            if text_channel is not None:
                session.text_channel = text_channel

            try:
                result = await self.resolver.resolve(query, requester)
            except NotFound:
                return self.msg("playlist_empty" if is_playlist_url(query) else "song_not_found")
            except FetchFailed as e:
                logger.warning(f"lookup failed for {query!r}: {e}")
                return self.msg("lookup_failed")

            if session.closed:
                # leave() ran while we were resolving
                return self.msg("not_in_vc_bot")

            if isinstance(result, list):
                count = session.queue.enqueue_many(result)
                reply = self.msg("playlist_added", count=count)
                logger.info(f"{requester.name} queued {count} tracks from a playlist")
            else:
                session.queue.enqueue(result)
                reply = self.msg("added_to_queue", title=escape_markdown(result.title))
                logger.info(f"{requester.name} queued {result.title!r}")

            self.scheduler.attach(session)
            if session.player.state is PlayerState.IDLE:
                self.scheduler.schedule_next(session)
            return reply

    async def skip(self, guild_id: int) -> str:
        return await self._safely(guild_id, "skip", self._skip(guild_id))

    async def _skip(self, guild_id: int) -> str:
        session = self.registry.get(guild_id)
        if session is None or session.player is None or not session.player.is_active:
            return self.msg("nothing_playing")
        async with session.command_lock:
            if not session.player.stop():
                return self.msg("nothing_playing")
            return self.msg("skipped")

    async def pause(self, guild_id: int) -> str:
        return await self._safely(guild_id, "pause", self._pause(guild_id))

    async def _pause(self, guild_id: int) -> str:
        session = self.registry.get(guild_id)
        if session is None or session.player is None:
            return self.msg("nothing_playing")
        async with session.command_lock:
            return self.msg("paused" if session.player.pause() else "nothing_playing")

    async def resume(self, guild_id: int) -> str:
        return await self._safely(guild_id, "resume", self._resume(guild_id))

    async def _resume(self, guild_id: int) -> str:
        session = self.registry.get(guild_id)
        if session is None or session.player is None:
            return self.msg("nothing_paused")
        async with session.command_lock:
            return self.msg("resumed" if session.player.resume() else "nothing_paused")

    async def set_volume_percent(self, guild_id: int, value: Any) -> str:
        return await self._safely(guild_id, "volume", self._set_volume(guild_id, value))

    async def _set_volume(self, guild_id: int, value: Any) -> str:
        if value is None or str(value).strip() == "":
            return self.msg("volume_usage")
        try:
            level = int(str(value).strip())
        except ValueError:
            return self.msg("volume_invalid")
        if not 0 <= level <= 100:
            return self.msg("volume_invalid")

        session = self.registry.get_or_create(guild_id)
        async with session.command_lock:
            session.set_volume(level / 100)
        logger.debug(f"volume set to {level}% in guild {guild_id}")
        return self.msg("volume_set", level=level)

    async def set_loop_mode(self, guild_id: int, value: str | None) -> str:
        return await self._safely(guild_id, "loop", self._set_loop(guild_id, value))

    async def _set_loop(self, guild_id: int, value: str | None) -> str:
        try:
            mode = LoopMode.parse(value)
        except InvalidCommandArgument:
            return self.msg("loop_usage")
        session = self.registry.get_or_create(guild_id)
        async with session.command_lock:
            session.loop_mode = mode
        return self.msg("loop_set", mode=mode.value)

    def list_queue(self, guild_id: int) -> list[tuple[Track, int]]:
        """Pending tracks with their 1-based positions."""
        session = self.registry.get(guild_id)
        if session is None:
            return []
        return [(track, position) for position, track in enumerate(session.queue.peek_all(), start=1)]

    async def describe_queue(self, guild_id: int) -> str:
        return await self._safely(guild_id, "queue", self._describe_queue(guild_id))

    async def _describe_queue(self, guild_id: int) -> str:
        session = self.registry.get(guild_id)
        entries = self.list_queue(guild_id)
        current = session.queue.current if session else None
        if current is None and not entries:
            return self.msg("queue_empty")

        lines = ["__Now Playing__", ""]
        lines.append(format_track(current) if current else self.msg("nothing_playing"))
        lines += ["", "__Queue:__", ""]
        shown = entries[:self.queue_display_size]
        lines += [f"{position}. {format_track(track)}" for track, position in shown]
        if len(entries) > len(shown):
            lines.append(self.msg("queue_more", count=len(entries) - len(shown)))
        lines += ["", f"__Loop Mode:__ {session.loop_mode.value}"]
        return "\n".join(lines)

    async def leave(self, guild_id: int, guild: discord.Guild | None = None) -> str:
        return await self._safely(guild_id, "leave", self._leave(guild_id, guild))

    async def _leave(self, guild_id: int, guild: discord.Guild | None) -> str:
        session = self.registry.get(guild_id)
        connected = (session is not None and session.is_connected()) or (
            guild is not None and guild.voice_client is not None
        )
        if not connected:
            self.registry.remove(guild_id)
            return self.msg("not_in_vc_bot")
        if session is not None:
            async with session.command_lock:
                await self.voice.disconnect(guild_id, guild)
        else:
            await self.voice.disconnect(guild_id, guild)
        return self.msg("left")

    async def handle_voice_lost(self, guild_id: int) -> None:
        """Bot was disconnected or kicked from voice outside of leave()."""
        session = self.registry.get(guild_id)
        if session is None:
            return
        logger.info(f"voice connection lost in guild {guild_id}, tearing down session")
        await self.voice.disconnect(guild_id)

    async def notify_failure(self, session: GuildSession, track: Track, error: Exception) -> None:
        """Post a skip notice to the guild's last command channel."""
        channel = session.text_channel
        if channel is None:
            return
        await channel.send(
            self.msg("track_failed", title=escape_markdown(track.title)),
            allowed_mentions=discord.AllowedMentions.none(),
        )

    async def shutdown(self) -> None:
        await self.voice.disconnect_all()
