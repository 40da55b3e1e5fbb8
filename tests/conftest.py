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

"""Fakes for discord voice, ffmpeg and yt-dlp so tests never touch the network."""

import asyncio
from collections import deque
from types import SimpleNamespace

import discord
import pytest

from core.errors import FetchFailed, NotFound
from core.pipeline import PlaybackPipeline, TrackAudio, TranscodeProcess
from core.track import Requester, StreamInfo, Track, watch_url
from systems.cache import CacheStore

ALICE = Requester(id=1, name="alice")


def make_track(video_id: str = "dQw4w9WgXcQ", title: str | None = None) -> Track:
    return Track(source_url=watch_url(video_id), requested_by=ALICE, title=title or f"song {video_id}")


class FakePCM(discord.AudioSource):
    """Stands in for FFmpegPCMAudio; remembers the stream it was built from."""

    def __init__(self, stream) -> None:
        self.stream = stream
        self.cleaned_up = False

    def read(self) -> bytes:
        return b""

    def is_opus(self) -> bool:
        return False

    def cleanup(self) -> None:
        self.cleaned_up = True


def make_audio(track: Track | None = None, job=None) -> TrackAudio:
    stream = SimpleNamespace(closed=False)
    stream.close = lambda: setattr(stream, "closed", True)
    return TrackAudio(FakePCM(stream), track=track or make_track(), stream=stream, job=job)


class FakeVoiceClient:
    """Enough of discord.VoiceClient for the player and voice manager."""

    def __init__(self, channel=None, connected: bool = True) -> None:
        self.channel = channel or SimpleNamespace(id=100, name="music")
        self._connected = connected
        self.source = None
        self.after = None
        self._playing = False
        self._paused = False
        self.played: list = []
        self.disconnected = False

    def is_connected(self) -> bool:
        return self._connected

    def is_playing(self) -> bool:
        return self._playing and not self._paused

    def is_paused(self) -> bool:
        return self._playing and self._paused

    def play(self, source, *, after=None) -> None:
        if self._playing:
            raise discord.ClientException("Already playing audio.")
        self.source = source
        self.after = after
        self._playing = True
        self._paused = False
        self.played.append(source)

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def stop(self) -> None:
        if self._playing:
            self.finish()

    def finish(self, error: Exception | None = None) -> None:
        """Simulate the audio thread reaching the end of the source."""
        after = self.after
        self._playing = False
        self._paused = False
        self.source = None
        self.after = None
        if after is not None:
            after(error)

    async def disconnect(self, *, force: bool = False) -> None:
        self.stop()
        self._connected = False
        self.disconnected = True


class FakeGuild:
    def __init__(self, guild_id: int = 42) -> None:
        self.id = guild_id
        self.voice_client = None


class FakeVoiceChannel:
    """Voice channel whose connect() can succeed, hang or fail."""

    def __init__(self, guild: FakeGuild, channel_id: int = 100, name: str = "music") -> None:
        self.guild = guild
        self.id = channel_id
        self.name = name
        self.hang = False
        self.connect_calls = 0

    async def connect(self, *, timeout: float = 60.0, reconnect: bool = True, self_deaf: bool = False):
        self.connect_calls += 1
        vc = FakeVoiceClient(channel=self, connected=not self.hang)
        self.guild.voice_client = vc
        if self.hang:
            await asyncio.sleep(3600)
        return vc


class FakeTextChannel:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, content: str, **kwargs) -> None:
        self.sent.append(content)


class FakeTranscodeProcess(TranscodeProcess):
    """Scripted ffmpeg output. hold keeps stdout open until set (or terminate)."""

    def __init__(self, chunks, returncode: int = 0, hold: asyncio.Event | None = None) -> None:
        self._chunks = deque(chunks)
        self._final_returncode = returncode
        self._returncode: int | None = None
        self.hold = hold
        self.terminated = False
        self._stderr_tail = deque(["fake ffmpeg"], maxlen=10)

    @property
    def returncode(self) -> int | None:
        return self._returncode

    async def read_chunk(self) -> bytes:
        await asyncio.sleep(0)
        if self._chunks:
            return self._chunks.popleft()
        if self.hold is not None:
            await self.hold.wait()
        if self._chunks and not self.terminated:
            return self._chunks.popleft()
        return b""

    async def wait(self) -> int:
        if self._returncode is None:
            self._returncode = -9 if self.terminated else self._final_returncode
        return self._returncode

    def terminate(self) -> None:
        self.terminated = True
        if self.hold is not None:
            self.hold.set()

    async def close(self) -> None:
        self.terminate()
        await self.wait()


class FakeTranscoder:
    executable = "ffmpeg"

    def __init__(self) -> None:
        self.chunks = [b"OggS-one", b"OggS-two", b"OggS-three"]
        self.returncode = 0
        self.hold: asyncio.Event | None = None
        self.opened: list[FakeTranscodeProcess] = []

    async def open(self, info: StreamInfo) -> FakeTranscodeProcess:
        process = FakeTranscodeProcess(list(self.chunks), self.returncode, self.hold)
        self.opened.append(process)
        return process


class FakeFetcher:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def stream_url(self, source_url: str) -> StreamInfo:
        self.calls.append(source_url)
        if self.gate is not None:
            await self.gate.wait()
        if source_url in self.failing:
            raise FetchFailed(f"cannot reach {source_url}")
        return StreamInfo(url=f"{source_url}&media=1")


class FakeResolver:
    """Query -> Track / list[Track] lookup table for the command facade."""

    def __init__(self) -> None:
        self.results: dict = {}

    async def resolve(self, query: str, requester: Requester):
        result = self.results.get(query)
        if result is None:
            raise NotFound(query)
        if isinstance(result, Exception):
            raise result
        return result


async def settle(rounds: int = 20) -> None:
    """Let call_soon_threadsafe callbacks and spawned tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until true; fails the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def cache(tmp_path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def pipeline(cache, fetcher, transcoder) -> PlaybackPipeline:
    return PlaybackPipeline(cache, fetcher, transcoder, audio_factory=FakePCM)
