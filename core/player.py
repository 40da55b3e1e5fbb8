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
Audio Player Session - Per-Guild Playback State Machine

    IDLE --begin_buffering--> BUFFERING --play--> PLAYING <--pause/resume--> PAUSED
      ^                           |                  |                         |
      +------cancel_buffering-----+                  +----- finished/stop -----+
      +---------------------------- stop (notifies) -+

Every transition back to IDLE, except cancel_buffering() and teardown(),
calls the owner's on_idle(error) listener so it can advance the queue.
"""

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from time import monotonic as _now
from typing import Callable, Optional

import discord
from loguru import logger

from core.pipeline import TrackAudio


_SESSION_IDS = count(1)


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes finish callbacks to a specific play attempt.

    Each playback session receives a unique ``id`` so callbacks arriving from
    the audio thread can verify they still belong to the current source. The
    ``cancelled`` flag is set when a newer session supersedes this one or the
    player is torn down.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    track_id: Optional[str] = None
    started_at: float = field(default_factory=_now)
    cancelled: bool = False

    def cancel(self) -> None:
        """Mark the session as cancelled so callbacks know to exit early."""
        self.cancelled = True


class PlayerState(Enum):
    """
    Current state of a guild's audio output.

    IDLE: nothing attached (may or may not be connected to voice)
    BUFFERING: a source is being resolved for playback
    PLAYING: a source is attached and audio is flowing
    PAUSED: a source is attached but output is paused
    """
    IDLE = "idle"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"


IdleListener = Callable[[Optional[BaseException]], None]


class AudioPlayerSession:
    """
    Per-guild wrapper around a discord.py VoiceClient's audio output.

    Owns the state machine, the attached TrackAudio and the current volume.
    Completion callbacks from discord.py's audio thread are marshalled back
    onto the event loop before any state is touched.
    """

    def __init__(self, guild_id: int, volume: float = 1.0) -> None:
        self.guild_id = guild_id
        self.state = PlayerState.IDLE
        self.volume = volume
        self.voice_client: Optional[discord.VoiceClient] = None
        self.source: Optional[TrackAudio] = None
        self.on_idle: Optional[IdleListener] = None
        # Set by the scheduler while a track is being resolved for this player
        self.resolve_task: Optional[asyncio.Future] = None

        self._playback_session: Optional[PlaybackSession] = None
        self._suppress_callback = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.log = logger.bind(guild=guild_id)

    @property
    def is_active(self) -> bool:
        return self.state is not PlayerState.IDLE

    @property
    def now_playing(self):
        return self.source.track if self.source else None

    def attach(self, voice_client: Optional[discord.VoiceClient]) -> None:
        """Subscribe this player to a voice connection's audio output."""
        self.voice_client = voice_client

    def cancel_active_session(self) -> None:
        if self._playback_session is not None:
            self._playback_session.cancel()
            self._playback_session = None

    @contextmanager
    def _silenced(self):
        """Invalidate the running session and hold back idle notifications.

        A finish callback that arrives after the block is stale and ignored.
        """
        self.cancel_active_session()
        prev, self._suppress_callback = self._suppress_callback, True
        try:
            yield
        finally:
            self._suppress_callback = prev

    # =========================================================================
    # Transitions
    # =========================================================================

    def begin_buffering(self) -> bool:
        if self.state is not PlayerState.IDLE:
            return False
        self.state = PlayerState.BUFFERING
        return True

    def interrupt_resolve(self) -> bool:
        """Cancel the in-flight resolve, if any. Its owner sees resolve_task cleared."""
        task, self.resolve_task = self.resolve_task, None
        if task is None or task.done():
            return False
        task.cancel()
        self.log.debug("interrupted in-flight resolve")
        return True

    def cancel_buffering(self) -> bool:
        """Return to IDLE without notifying (resolve failed, caller handles it)."""
        if self.state is not PlayerState.BUFFERING:
            return False
        self.state = PlayerState.IDLE
        return True

    def play(self, source: TrackAudio) -> None:
        """Start playing source. Valid from IDLE or BUFFERING.

        On failure the source is cleaned up, the player is IDLE and the
        exception propagates (no idle notification).
        """
        if self.state not in (PlayerState.IDLE, PlayerState.BUFFERING):
            source.cleanup()
            raise discord.ClientException(f"cannot play while {self.state.value}")

        vc = self.voice_client
        if vc is None or not vc.is_connected():
            self.state = PlayerState.IDLE
            source.cleanup()
            raise discord.ClientException("not connected to voice")

        self._loop = asyncio.get_running_loop()
        self.cancel_active_session()
        session = PlaybackSession(track_id=source.track.cache_id)
        self._playback_session = session
        source.volume = self.volume

        loop = self._loop

        def after_track(error: Optional[Exception]) -> None:
            # Runs on discord.py's audio thread
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(self._handle_end, session, error)

        try:
            vc.play(source, after=after_track)
        except Exception:
            self.cancel_active_session()
            self.state = PlayerState.IDLE
            source.cleanup()
            raise

        self.source = source
        self.state = PlayerState.PLAYING
        origin = "cache" if source.from_cache else "stream"
        self.log.debug(f"playing {source.track.title!r} from {origin}")

    def _handle_end(self, session: PlaybackSession, error: Optional[Exception]) -> None:
        if session.cancelled or self._playback_session is not session:
            self.log.debug("ignoring callback from superseded playback session")
            return
        session.cancel()
        self._playback_session = None

        source, self.source = self.source, None
        if error:
            self.log.error(f"playback error: {error}")
        job_error = source.error if source else None
        if source is not None:
            source.cleanup()

        self.state = PlayerState.IDLE
        if self._suppress_callback:
            self.log.debug("skipping idle notification (suppressed)")
            return
        self._notify_idle(error or job_error)

    def _notify_idle(self, error: Optional[BaseException]) -> None:
        if self.on_idle is None:
            return
        try:
            self.on_idle(error)
        except Exception:
            self.log.opt(exception=True).error("idle listener raised")

    def pause(self) -> bool:
        if self.state is not PlayerState.PLAYING or self.voice_client is None:
            return False
        self.voice_client.pause()
        self.state = PlayerState.PAUSED
        return True

    def resume(self) -> bool:
        if self.state is not PlayerState.PAUSED or self.voice_client is None:
            return False
        self.voice_client.resume()
        self.state = PlayerState.PLAYING
        return True

    def stop(self) -> bool:
        """Stop the current source; the finish callback moves us to IDLE.

        While BUFFERING there is no source yet: the in-flight resolve is
        cancelled (killing its ffmpeg) and the player goes straight to IDLE
        and notifies.
        """
        if self.state is PlayerState.BUFFERING:
            self.state = PlayerState.IDLE
            self.interrupt_resolve()
            self._notify_idle(None)
            return True
        if self.state not in (PlayerState.PLAYING, PlayerState.PAUSED):
            return False
        if self.voice_client is not None:
            self.voice_client.stop()
        return True

    def set_volume(self, level: float) -> None:
        """Set volume (0.0-1.0) for the current source and every later one."""
        self.volume = max(0.0, min(1.0, float(level)))
        if self.source is not None:
            self.source.volume = self.volume

    def teardown(self) -> None:
        """Stop output without notifying and release the attached source."""
        with self._silenced():
            self.interrupt_resolve()
            vc = self.voice_client
            if vc is not None:
                try:
                    if vc.is_playing() or vc.is_paused():
                        vc.stop()
                except (AttributeError, RuntimeError) as e:
                    self.log.debug(f"voice stop during teardown failed: {e}")
            source, self.source = self.source, None
            if source is not None:
                source.cleanup()
            self.state = PlayerState.IDLE
        self.voice_client = None
