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

"""Per-guild session aggregate and the process-wide registry."""

import asyncio
from dataclasses import dataclass, field
from typing import Iterator

import discord
from loguru import logger

from core.player import AudioPlayerSession
from core.queue import TrackQueue
from core.track import LoopMode


@dataclass
class GuildSession:
    """Everything Encore knows about one guild.

    Created lazily on the first command and dropped on leave. Commands are
    serialized by command_lock; advance/resolve/play by playback_lock.
    """
    guild_id: int
    volume: float = 1.0
    loop_mode: LoopMode = LoopMode.OFF
    queue: TrackQueue = field(default_factory=TrackQueue)
    player: AudioPlayerSession | None = None
    voice_client: discord.VoiceClient | None = None
    text_channel: discord.abc.Messageable | None = None
    command_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    playback_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    def ensure_player(self) -> AudioPlayerSession:
        """Get or create the audio player (created on first playback)."""
        if self.player is None:
            self.player = AudioPlayerSession(self.guild_id, volume=self.volume)
        if self.voice_client is not None and self.player.voice_client is not self.voice_client:
            self.player.attach(self.voice_client)
        return self.player

    def is_connected(self) -> bool:
        return self.voice_client is not None and self.voice_client.is_connected()

    def set_volume(self, level: float) -> None:
        self.volume = level
        if self.player is not None:
            self.player.set_volume(level)

    def close(self) -> None:
        """Release the player and queue. The voice connection is the caller's."""
        self.closed = True
        if self.player is not None:
            self.player.on_idle = None
            self.player.teardown()
        self.queue.clear()


class SessionRegistry:
    """Guild id -> GuildSession. The only state shared across guilds."""

    def __init__(self, default_volume: float = 1.0) -> None:
        self.default_volume = default_volume
        self._sessions: dict[int, GuildSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[GuildSession]:
        return iter(list(self._sessions.values()))

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def get(self, guild_id: int) -> GuildSession | None:
        return self._sessions.get(guild_id)

    def get_or_create(self, guild_id: int) -> GuildSession:
        # Synchronous on purpose: no await between lookup and insert
        session = self._sessions.get(guild_id)
        if session is None:
            session = GuildSession(guild_id, volume=self.default_volume)
            self._sessions[guild_id] = session
            logger.debug(f"created session for guild {guild_id}")
        return session

    def remove(self, guild_id: int) -> GuildSession | None:
        """Detach and close a guild's session. Returns it (or None)."""
        session = self._sessions.pop(guild_id, None)
        if session is not None:
            session.close()
            logger.debug(f"removed session for guild {guild_id}")
        return session

    def close_all(self) -> list[GuildSession]:
        sessions = list(self._sessions.values())
        for session in sessions:
            self.remove(session.guild_id)
        return sessions
