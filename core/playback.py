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
Playback Scheduling

Drives a guild session: advance the queue, resolve the track, hand it to the
player. Runs again whenever the player goes idle.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from core.errors import PipelineError
from core.pipeline import PlaybackPipeline
from core.player import PlayerState
from core.session import GuildSession
from core.track import Track

# Track fire-and-forget advance tasks to prevent GC mid-flight
_advance_tasks: set[asyncio.Task] = set()

# (session, track, error) -> notify the guild that a track was skipped
FailureNotifier = Callable[[GuildSession, Track, Exception], Awaitable[None]]


class PlaybackScheduler:
    """Turns idle events into advance -> resolve -> play."""

    def __init__(self, pipeline: PlaybackPipeline, notify_failure: Optional[FailureNotifier] = None) -> None:
        self.pipeline = pipeline
        self.notify_failure = notify_failure

    def attach(self, session: GuildSession) -> None:
        """Create the session's player if needed and wire auto-advance."""
        player = session.ensure_player()

        def on_idle(error: Optional[BaseException]) -> None:
            if error:
                logger.bind(guild=session.guild_id).warning(f"track ended with error: {error}")
            if isinstance(error, PipelineError):
                # Broken mid-stream: keep loop modes from fetching it again
                track = session.queue.drop_current()
                if track is not None:
                    self._spawn(self._notify(session, track, error), f"notify-{session.guild_id}")
            self.schedule_next(session)

        player.on_idle = on_idle

    def schedule_next(self, session: GuildSession) -> asyncio.Task:
        return self._spawn(self.play_next(session), f"advance-{session.guild_id}")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        _advance_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        _advance_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("playback advance crashed")

    async def play_next(self, session: GuildSession) -> Optional[Track]:
        """Advance and start the next playable track.

        No-op unless the player is IDLE. Tracks that fail to fetch or
        transcode are dropped from rotation and the next one is tried.
        Returns the track that started, or None.
        """
        async with session.playback_lock:
            if session.closed or not session.is_connected():
                return None
            self.attach(session)
            player = session.player
            if player.state is not PlayerState.IDLE:
                return None

            log = logger.bind(guild=session.guild_id)
            while True:
                track = session.queue.advance(session.loop_mode)
                if track is None:
                    log.info("queue finished")
                    return None

                player.begin_buffering()
                resolving = asyncio.ensure_future(self.pipeline.resolve(track))
                player.resolve_task = resolving
                try:
                    source = await resolving
                except PipelineError as e:
                    player.cancel_buffering()
                    session.queue.drop_current()
                    log.warning(f"couldn't play {track.title!r}: {e}")
                    await self._notify(session, track, e)
                    if session.closed:
                        return None
                    continue
                except asyncio.CancelledError:
                    if player.resolve_task is resolving:
                        # play_next itself was cancelled
                        player.resolve_task = None
                        player.cancel_buffering()
                        raise
                    log.debug(f"resolve of {track.title!r} interrupted")
                    return None
                except BaseException:
                    player.cancel_buffering()
                    raise
                finally:
                    if player.resolve_task is resolving:
                        player.resolve_task = None

                # stop()/leave() during resolve: discard quietly
                if session.closed or player.state is not PlayerState.BUFFERING:
                    source.cleanup()
                    return None

                try:
                    player.play(source)
                except Exception as e:
                    session.queue.drop_current()
                    log.error(f"couldn't start {track.title!r}: {e}")
                    await self._notify(session, track, e)
                    return None

                log.info(f"now playing {track.title!r} (requested by {track.requested_by.name})")
                return track

    async def _notify(self, session: GuildSession, track: Track, error: Exception) -> None:
        if self.notify_failure is None:
            return
        try:
            await self.notify_failure(session, track, error)
        except Exception:
            logger.opt(exception=True).debug("failure notice could not be sent")
