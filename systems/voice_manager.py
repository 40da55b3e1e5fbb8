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
Voice Connection Management

Connects, verifies and tears down each guild's voice connection.
"""

import asyncio
from typing import Optional

import discord
from loguru import logger

from core.errors import ConnectTimeout
from core.session import GuildSession, SessionRegistry

DEFAULT_CONNECT_TIMEOUT = 30.0


async def safe_disconnect(voice_client: Optional[discord.VoiceClient], force: bool = True) -> bool:
    """
    Disconnect from voice, swallowing non-critical errors.

    Returns:
        bool: True if disconnected (or nothing to disconnect), False on error
    """
    if not voice_client:
        return True  # No-op success for idempotency
    try:
        await voice_client.disconnect(force=force)
        return True
    except (discord.ClientException, discord.HTTPException) as e:
        logger.debug(f"disconnect failed (non-critical): {e}")
        return False
    except Exception as e:
        # Transport errors during shutdown (aiohttp connection resets etc.)
        logger.debug(f"disconnect failed with transport error (non-critical): {e}")
        return False


class VoiceManager:
    """
    Owns connect/disconnect for every guild session.

    Handles:
    - Idempotent connect with a bounded wait for the connection to be ready
    - Same-channel checks for command gating
    - Terminal teardown (session, player, queue and connection)
    """

    def __init__(self, registry: SessionRegistry, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        self.registry = registry
        self.connect_timeout = connect_timeout

    async def connect(self, session: GuildSession, channel: discord.VoiceChannel) -> discord.VoiceClient:
        """
        Join channel (or reuse the live connection) and attach it to the session.

        Raises:
            ConnectTimeout: connection was not ready within connect_timeout;
                the half-open connection has been torn down
        """
        vc = session.voice_client
        if vc is not None and vc.is_connected():
            return vc

        guild = channel.guild
        existing = guild.voice_client
        if existing is not None and existing.is_connected():
            # Connected outside our bookkeeping (e.g. after a cog reload)
            vc = existing
        else:
            try:
                vc = await asyncio.wait_for(
                    channel.connect(timeout=self.connect_timeout, reconnect=True, self_deaf=True),
                    timeout=self.connect_timeout,
                )
            except asyncio.TimeoutError:
                logger.error(f"voice connect to #{channel.name} timed out after {self.connect_timeout:g}s")
                await safe_disconnect(guild.voice_client, force=True)
                raise ConnectTimeout(channel.name, self.connect_timeout) from None
            except discord.ClientException:
                # "Already connected" race: adopt the guild's client
                if guild.voice_client is None:
                    raise
                vc = guild.voice_client
            logger.info(f"joined #{channel.name}")

        session.voice_client = vc
        if session.player is not None:
            session.player.attach(vc)
        return vc

    @staticmethod
    def is_same_channel(
        voice_client: Optional[discord.VoiceClient],
        voice_state: Optional[discord.VoiceState],
    ) -> bool:
        """
        True when the user may control playback.

        No live connection means no restriction. With one, the user must be in
        the bot's channel.
        """
        if voice_client is None or not voice_client.is_connected():
            return True
        if voice_state is None or voice_state.channel is None:
            return False
        return voice_state.channel.id == voice_client.channel.id

    async def disconnect(self, guild_id: int, guild: Optional[discord.Guild] = None) -> bool:
        """
        Tear down the guild's session and leave voice.

        Removing the session stops the player (abandoning any unfinished cache
        write) and clears the queue. Returns whether a live connection existed.
        """
        session = self.registry.remove(guild_id)
        vc = session.voice_client if session else None
        if vc is None and guild is not None:
            vc = guild.voice_client

        was_connected = vc is not None and vc.is_connected()
        await safe_disconnect(vc, force=True)
        if was_connected:
            logger.info(f"left voice in guild {guild_id}")
        return was_connected

    async def disconnect_all(self) -> None:
        for session in list(self.registry):
            await self.disconnect(session.guild_id)
