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

"""Playback pipeline: turns a Track into a playable audio source.

Cache hit:
    <cache_dir>/<id>.ogg -> decoder -> voice

Cache miss:
    resolver -> stream URL -> ffmpeg (opus/ogg) -+-> StreamBuffer -> decoder -> voice
                                                 +-> CacheWriteHandle -> commit on clean exit

The miss path starts playback as soon as the first transcoded chunk arrives;
the cache write runs alongside and never delays or interrupts the live side.
"""

import asyncio
import threading
from collections import deque
from typing import Any, BinaryIO, Callable, Protocol

import discord
from loguru import logger

from core.errors import CacheWriteFailed, FetchFailed, NotFound, TranscodeFailed
from core.fanout import CacheSink, Fanout, LiveSink, StreamBuffer
from core.track import StreamInfo, Track
from systems.cache import CacheStore, CacheWriteHandle

# Keep fire-and-forget job tasks referenced until they finish
_job_tasks: set[asyncio.Task] = set()

DEFAULT_BITRATE = "128k"
CHUNK_SIZE = 16 * 1024
RECONNECT_OPTIONS = ["-reconnect", "1", "-reconnect_streamed", "1", "-reconnect_delay_max", "5"]


class StreamFetcher(Protocol):
    async def stream_url(self, source_url: str) -> StreamInfo: ...


class TranscodeProcess:
    """A running ffmpeg process writing Ogg/Opus to stdout.

    stderr is drained continuously (a full pipe would stall ffmpeg) and the
    last few lines are kept for error reporting.
    """

    def __init__(self, process: asyncio.subprocess.Process, chunk_size: int = CHUNK_SIZE) -> None:
        self.process = process
        self.chunk_size = chunk_size
        self._stderr_tail: deque[str] = deque(maxlen=10)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def stderr_tail(self) -> str:
        return " | ".join(self._stderr_tail)

    async def _drain_stderr(self) -> None:
        if self.process.stderr is None:
            return
        async for line in self.process.stderr:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)

    async def read_chunk(self) -> bytes:
        return await self.process.stdout.read(self.chunk_size)

    async def chunks(self, first: bytes = b""):
        """Yield stdout chunks until EOF. Raises TranscodeFailed on a bad exit."""
        if first:
            yield first
        while chunk := await self.read_chunk():
            yield chunk
        returncode = await self.wait()
        if returncode != 0:
            raise TranscodeFailed(f"ffmpeg exited with {returncode}: {self.stderr_tail or 'no output'}")

    async def wait(self) -> int:
        returncode = await self.process.wait()
        # Give the stderr reader a moment to collect the final lines
        await asyncio.wait({self._stderr_task}, timeout=1.0)
        return returncode

    def terminate(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
        if not self._stderr_task.done():
            self._stderr_task.cancel()

    async def close(self) -> None:
        self.terminate()
        try:
            await self.process.wait()
        except ProcessLookupError:
            pass


class FFmpegTranscoder:
    """Starts ffmpeg to pull a remote stream and re-encode it as Ogg/Opus."""

    def __init__(
        self,
        executable: str = "ffmpeg",
        bitrate: str = DEFAULT_BITRATE,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.executable = executable
        self.bitrate = bitrate
        self.chunk_size = chunk_size

    def build_args(self, info: StreamInfo) -> list[str]:
        args = [self.executable, "-hide_banner", "-nostdin", "-loglevel", "error"]
        if info.headers:
            header_blob = "".join(f"{key}: {value}\r\n" for key, value in info.headers.items())
            args += ["-headers", header_blob]
        args += RECONNECT_OPTIONS
        args += ["-analyzeduration", "0", "-i", info.url]
        args += ["-vn", "-c:a", "libopus", "-b:a", self.bitrate, "-f", "ogg", "pipe:1"]
        return args

    async def open(self, info: StreamInfo) -> TranscodeProcess:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_args(info),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeFailed(f"cannot start ffmpeg: {e}") from e
        return TranscodeProcess(process, self.chunk_size)


class PlaybackJob:
    """One in-flight fetch+transcode feeding live playback and the cache.

    The cache entry is committed only when ffmpeg exited cleanly, the job
    wasn't cancelled, and the cache sink never failed. Every other outcome
    abandons the temp file.
    """

    def __init__(
        self,
        track: Track,
        process: TranscodeProcess,
        buffer: StreamBuffer,
        cache_handle: CacheWriteHandle | None,
    ) -> None:
        self.track = track
        self.process = process
        self.buffer = buffer
        self.cache_handle = cache_handle
        self.live_sink = LiveSink(buffer)
        self.cache_sink = CacheSink(cache_handle) if cache_handle else None
        self.error: BaseException | None = None
        self.transcode_done = False
        self.cached = False
        self._first_chunk = b""
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def prime(self) -> None:
        """Wait for the first transcoded chunk. Raises TranscodeFailed if none comes."""
        first = await self.process.read_chunk()
        if not first:
            returncode = await self.process.wait()
            raise TranscodeFailed(
                f"ffmpeg produced no audio (exit {returncode}): {self.process.stderr_tail or 'no output'}"
            )
        self._first_chunk = first

    def start(self) -> asyncio.Task:
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self.run(), name=f"transcode-{self.track.cache_id}")
        _job_tasks.add(self._task)
        self._task.add_done_callback(self._on_task_done)
        return self._task

    async def run(self) -> None:
        fanout = Fanout(self.live_sink, self.cache_sink)
        try:
            total = await fanout.run(self.process.chunks(self._first_chunk))
        except asyncio.CancelledError:
            await self.process.close()
            logger.debug(f"transcode of {self.track.cache_id} cancelled")
            raise
        except TranscodeFailed as e:
            self.error = e
            logger.warning(f"transcode of {self.track.title!r} failed: {e}")
            return
        except Exception as e:
            self.error = TranscodeFailed(str(e))
            logger.opt(exception=True).error(f"transcode of {self.track.title!r} crashed")
            await self.process.close()
            return

        self.transcode_done = True
        logger.debug(f"transcoded {self.track.cache_id} ({total} bytes)")
        await self._commit_cache()

    async def _commit_cache(self) -> None:
        sink = self.cache_sink
        if sink is None or self.cache_handle is None:
            return
        if not sink.ok or not sink.finished:
            # Sink already abandoned its handle
            logger.warning(f"not caching {self.track.cache_id}: {sink.failed}")
            return
        try:
            await asyncio.to_thread(self.cache_handle.commit)
            self.cached = True
        except CacheWriteFailed as e:
            logger.warning(str(e))

    def cancel(self) -> None:
        """Stop the transcode and abandon the cache write. Callable from any thread.

        No-op once ffmpeg has finished; a finished job is left to commit.
        """
        task = self._task
        if task is None or task.done() or self.transcode_done or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            task.cancel()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(task.cancel)

    async def wait(self) -> None:
        """Wait until the job has finished, including the cache commit."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def discard(self) -> None:
        """Tear down a job that never started (prime failed or was cancelled)."""
        await self.process.close()
        if self.cache_handle is not None:
            self.cache_handle.abandon()
        self.buffer.close()

    def _on_task_done(self, task: asyncio.Task) -> None:
        _job_tasks.discard(task)
        # Covers cancellation before run() got to execute
        if task.cancelled():
            self.process.terminate()
            if self.cache_handle is not None:
                self.cache_handle.abandon()
            self.buffer.end()


class TrackAudio(discord.PCMVolumeTransformer):
    """Decoded, volume-adjustable audio for one track.

    Owns the byte stream feeding the decoder and, on the fetch path, the
    PlaybackJob producing it. cleanup() is called by discord.py when playback
    stops for any reason; it cancels an unfinished transcode.
    """

    def __init__(
        self,
        original: discord.AudioSource,
        *,
        track: Track,
        stream: Any,
        job: PlaybackJob | None = None,
        volume: float = 1.0,
    ) -> None:
        super().__init__(original, volume=volume)
        self.track = track
        self.stream = stream
        self.job = job
        self._cleaned_up = False
        self._cleanup_lock = threading.Lock()

    @property
    def from_cache(self) -> bool:
        return self.job is None

    @property
    def error(self) -> BaseException | None:
        return self.job.error if self.job else None

    def cleanup(self) -> None:
        # Both the audio thread and the event loop may get here
        with self._cleanup_lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True
        try:
            super().cleanup()
        finally:
            if self.job is not None:
                self.job.cancel()
            try:
                self.stream.close()
            except OSError:
                pass


AudioFactory = Callable[[Any], discord.AudioSource]


def ffmpeg_pcm_factory(executable: str = "ffmpeg") -> AudioFactory:
    """Decode Ogg/Opus bytes read from a file-like object into PCM for discord.py."""

    def factory(stream: BinaryIO | StreamBuffer) -> discord.AudioSource:
        return discord.FFmpegPCMAudio(
            stream,
            executable=executable,
            pipe=True,
            before_options="-f ogg",
            options="-vn -loglevel error",
        )

    return factory


class PlaybackPipeline:
    """Resolves tracks to TrackAudio via the cache or a fresh transcode."""

    def __init__(
        self,
        cache: CacheStore,
        fetcher: StreamFetcher,
        transcoder: FFmpegTranscoder,
        audio_factory: AudioFactory | None = None,
    ) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.transcoder = transcoder
        self.audio_factory = audio_factory or ffmpeg_pcm_factory(transcoder.executable)

    async def resolve(self, track: Track) -> TrackAudio:
        """Return a playable source for track.

        Raises FetchFailed or TranscodeFailed; never raises for cache problems.
        """
        cache_id = track.cache_id
        if self.cache.has(cache_id):
            try:
                stream = self.cache.open_for_read(cache_id)
            except NotFound:
                logger.debug(f"cache entry {cache_id} vanished, fetching")
            else:
                try:
                    original = self.audio_factory(stream)
                except Exception as e:
                    stream.close()
                    raise TranscodeFailed(f"cannot decode cached {cache_id}: {e}") from e
                logger.debug(f"cache hit for {cache_id}")
                return TrackAudio(original, track=track, stream=stream)

        return await self._fetch_and_transcode(track, cache_id)

    async def _fetch_and_transcode(self, track: Track, cache_id: str) -> TrackAudio:
        logger.debug(f"cache miss for {cache_id}, fetching")
        try:
            info = await self.fetcher.stream_url(track.source_url)
        except FetchFailed:
            raise
        except Exception as e:
            raise FetchFailed(f"stream lookup failed for {track.source_url}: {e}") from e

        process = await self.transcoder.open(info)

        handle = None
        try:
            handle = self.cache.begin_write(cache_id)
        except CacheWriteFailed as e:
            logger.warning(f"playing {cache_id} without caching: {e}")

        buffer = StreamBuffer()
        job = PlaybackJob(track, process, buffer, handle)
        try:
            await job.prime()
            original = self.audio_factory(buffer)
        except BaseException as e:
            await job.discard()
            if isinstance(e, Exception) and not isinstance(e, TranscodeFailed):
                raise TranscodeFailed(f"cannot start playback of {cache_id}: {e}") from e
            raise

        job.start()
        return TrackAudio(original, track=track, stream=buffer, job=job)
