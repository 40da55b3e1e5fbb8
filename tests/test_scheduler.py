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

import asyncio

import pytest

from conftest import FakeVoiceClient, make_track, wait_until
from core.errors import FetchFailed, TranscodeFailed
from core.playback import PlaybackScheduler
from core.player import PlayerState
from core.session import GuildSession, SessionRegistry
from core.track import LoopMode
from systems.cache import TEMP_SUFFIX

A = make_track("aaaaaaaaaa1")
B = make_track("bbbbbbbbbb2")


@pytest.fixture
def failures():
    return []


@pytest.fixture
def scheduler(pipeline, failures):
    async def record(session, track, error):
        failures.append((track, error))

    return PlaybackScheduler(pipeline, notify_failure=record)


@pytest.fixture
def session():
    session = GuildSession(guild_id=42)
    session.voice_client = FakeVoiceClient()
    return session


def playing(session, track):
    player = session.player
    return player is not None and player.state is PlayerState.PLAYING and player.now_playing == track


async def test_play_next_starts_head_of_queue(scheduler, session):
    session.queue.enqueue_many([A, B])
    assert await scheduler.play_next(session) == A
    assert session.player.state is PlayerState.PLAYING
    assert session.queue.current == A
    assert session.queue.peek_all() == [B]


async def test_finished_track_auto_advances_until_queue_is_empty(scheduler, session):
    session.queue.enqueue_many([A, B])
    await scheduler.play_next(session)
    vc = session.voice_client

    vc.finish()
    await wait_until(lambda: playing(session, B))

    vc.finish()
    await wait_until(lambda: session.player.state is PlayerState.IDLE and session.queue.current is None)
    assert [source.track for source in vc.played] == [A, B]


async def test_song_loop_replays_from_cache(scheduler, session, fetcher):
    session.queue.enqueue(A)
    session.loop_mode = LoopMode.SONG
    await scheduler.play_next(session)
    await session.player.source.job.wait()

    session.voice_client.finish()
    await wait_until(lambda: len(session.voice_client.played) == 2)

    assert session.player.source.from_cache
    assert fetcher.calls == [A.source_url]


async def test_failed_track_is_skipped_and_reported(scheduler, session, fetcher, failures):
    fetcher.failing.add(A.source_url)
    session.loop_mode = LoopMode.QUEUE
    session.queue.enqueue_many([A, B])

    assert await scheduler.play_next(session) == B
    assert [track for track, _ in failures] == [A]
    assert isinstance(failures[0][1], FetchFailed)
    assert A not in session.queue.peek_all()


async def test_every_track_failing_leaves_player_idle(scheduler, session, fetcher, failures):
    fetcher.failing.update({A.source_url, B.source_url})
    session.queue.enqueue_many([A, B])

    assert await scheduler.play_next(session) is None
    assert session.player.state is PlayerState.IDLE
    assert len(failures) == 2
    assert not session.queue


async def test_play_next_is_a_no_op_while_playing(scheduler, session, fetcher):
    session.queue.enqueue_many([A, B])
    await scheduler.play_next(session)
    assert await scheduler.play_next(session) is None
    assert session.queue.current == A
    assert len(fetcher.calls) == 1


async def test_not_connected_does_nothing(scheduler, fetcher):
    session = GuildSession(guild_id=7)
    session.queue.enqueue(A)
    assert await scheduler.play_next(session) is None
    assert fetcher.calls == []


async def test_stop_during_resolve_discards_result(scheduler, session, fetcher, cache):
    fetcher.gate = asyncio.Event()
    session.queue.enqueue(A)

    task = asyncio.create_task(scheduler.play_next(session))
    await wait_until(lambda: session.player is not None and session.player.state is PlayerState.BUFFERING)

    assert session.player.stop()
    fetcher.gate.set()

    assert await task is None
    await wait_until(lambda: not list(cache.cache_dir.glob(f"*{TEMP_SUFFIX}")))
    assert session.voice_client.played == []
    assert session.player.state is PlayerState.IDLE
    assert not cache.has(A.cache_id)


async def test_skip_while_fetching_moves_on_without_waiting(scheduler, session, fetcher):
    fetcher.gate = asyncio.Event()
    session.queue.enqueue_many([A, B])

    first = asyncio.create_task(scheduler.play_next(session))
    await wait_until(lambda: fetcher.calls == [A.source_url])
    # A stays blocked for good; B resolves right away
    fetcher.gate = None

    assert session.player.stop()
    assert await asyncio.wait_for(first, 1) is None
    await wait_until(lambda: playing(session, B))
    assert [source.track for source in session.voice_client.played] == [B]


async def test_skip_while_transcode_starts_kills_ffmpeg(scheduler, session, transcoder, cache):
    transcoder.chunks = []
    transcoder.hold = asyncio.Event()
    session.queue.enqueue_many([A, B])

    first = asyncio.create_task(scheduler.play_next(session))
    await wait_until(lambda: transcoder.opened)
    transcoder.chunks = [b"OggS-one"]
    transcoder.hold = None

    assert session.player.stop()
    assert await asyncio.wait_for(first, 1) is None
    assert transcoder.opened[0].terminated
    await wait_until(lambda: playing(session, B))
    await wait_until(lambda: not list(cache.cache_dir.glob(f"*{TEMP_SUFFIX}")))
    assert not cache.has(A.cache_id)


async def test_track_broken_mid_stream_is_dropped_and_reported(scheduler, session, fetcher, transcoder, failures):
    transcoder.returncode = 1
    session.loop_mode = LoopMode.SONG
    session.queue.enqueue_many([A, B])
    await scheduler.play_next(session)
    await session.player.source.job.wait()

    session.voice_client.finish()
    await wait_until(lambda: playing(session, B) and failures)

    assert [track for track, _ in failures] == [A]
    assert isinstance(failures[0][1], TranscodeFailed)
    assert fetcher.calls == [A.source_url, B.source_url]
    assert A not in session.queue.peek_all()


async def test_leave_during_resolve_discards_result(scheduler, fetcher):
    registry = SessionRegistry()
    session = registry.get_or_create(42)
    session.voice_client = FakeVoiceClient()
    fetcher.gate = asyncio.Event()
    session.queue.enqueue_many([A, B])

    task = asyncio.create_task(scheduler.play_next(session))
    await wait_until(lambda: fetcher.calls)

    registry.remove(session.guild_id)
    fetcher.gate.set()

    assert await task is None
    assert session.closed
    assert session.voice_client.played == []
