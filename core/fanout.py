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

"""One producer, many independent consumers.

Each sink drains its own queue in its own task, so a slow or failing sink
never stalls the producer or the other sinks. The live sink is the one
exception: its ready() paces the producer to the listener. A sink that
fails stops receiving chunks and records the error in ``failed``.
"""

import asyncio
import threading
from typing import AsyncIterator

from loguru import logger

from systems.cache import CacheWriteHandle

_EOF = object()

# Unread bytes the live buffer may hold before the producer is paced
# (about a minute of 128k Opus)
HIGH_WATER = 1024 * 1024


class StreamBuffer:
    """Thread-safe byte buffer bridging the event loop and the audio thread.

    The event loop feeds chunks; discord.py's pipe writer thread calls read()
    and blocks until data arrives or the stream ends. read() returns b"" once
    the buffer is ended and drained, or immediately after close().

    The feeding coroutine awaits wait_for_room() to stay at most high_water
    bytes ahead of the reader.
    """

    def __init__(self, high_water: int = HIGH_WATER) -> None:
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._ended = False
        self._closed = False
        self._room: asyncio.Event | None = None
        self._room_loop: asyncio.AbstractEventLoop | None = None
        self.high_water = high_water
        self.total_bytes = 0

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def backlog(self) -> int:
        with self._cond:
            return len(self._buffer)

    async def wait_for_room(self) -> None:
        with self._cond:
            if self._ended or len(self._buffer) <= self.high_water:
                return
            if self._room is None:
                self._room = asyncio.Event()
                self._room_loop = asyncio.get_running_loop()
            room = self._room
        await room.wait()

    def _release_writer(self) -> None:
        # Caller holds _cond
        room, loop = self._room, self._room_loop
        if room is None:
            return
        self._room = self._room_loop = None
        if not loop.is_closed():
            loop.call_soon_threadsafe(room.set)

    def feed(self, data: bytes) -> None:
        with self._cond:
            if self._ended or self._closed:
                return
            self._buffer.extend(data)
            self.total_bytes += len(data)
            self._cond.notify_all()

    def end(self) -> None:
        """No more data will be fed; readers drain what's left."""
        with self._cond:
            self._ended = True
            self._release_writer()
            self._cond.notify_all()

    def close(self) -> None:
        """Drop buffered data and unblock readers."""
        with self._cond:
            self._closed = True
            self._ended = True
            self._buffer.clear()
            self._release_writer()
            self._cond.notify_all()

    def read(self, size: int = -1) -> bytes:
        with self._cond:
            while not self._buffer and not self._ended:
                self._cond.wait()
            if self._closed or not self._buffer:
                return b""
            if size is None or size < 0:
                size = len(self._buffer)
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            if len(self._buffer) <= self.high_water:
                self._release_writer()
            return data


class FanoutSink:
    """Consumer side of a fan-out. Subclasses implement consume/finish/abort."""

    name = "sink"

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._abort_error: BaseException | None = None
        self.failed: BaseException | None = None
        self.finished = False

    @property
    def ok(self) -> bool:
        return self.failed is None

    async def consume(self, chunk: bytes) -> None:
        raise NotImplementedError

    async def finish(self) -> None:
        """Producer completed cleanly and every chunk was consumed."""

    async def abort(self, error: BaseException | None) -> None:
        """Producer failed, was cancelled, or this sink failed."""

    async def ready(self) -> None:
        """Awaited by the producer after each chunk. Never blocks by default."""

    def start(self) -> None:
        self._task = asyncio.create_task(self._drain(), name=f"fanout-{self.name}")

    def feed(self, chunk: bytes) -> None:
        if self.failed is None:
            self._queue.put_nowait(chunk)

    def close(self, error: BaseException | None = None) -> None:
        self._abort_error = error
        self._queue.put_nowait(_EOF)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _EOF:
                break
            try:
                await self.consume(item)
            except Exception as e:
                self.failed = e
                logger.warning(f"{self.name} sink failed: {e}")
                await self._safe_abort(e)
                return

        if self._abort_error is not None:
            await self._safe_abort(self._abort_error)
            return
        try:
            await self.finish()
            self.finished = True
        except Exception as e:
            self.failed = e
            logger.warning(f"{self.name} sink failed to finish: {e}")
            await self._safe_abort(e)

    async def _safe_abort(self, error: BaseException | None) -> None:
        try:
            await self.abort(error)
        except Exception:
            logger.opt(exception=True).debug(f"{self.name} sink abort raised")


class LiveSink(FanoutSink):
    """Feeds the stream buffer that the voice decoder reads from."""

    name = "live"

    def __init__(self, buffer: StreamBuffer) -> None:
        super().__init__()
        self.buffer = buffer

    def feed(self, chunk: bytes) -> None:
        # buffer.feed never blocks, so skip the queue; backlog is read by ready()
        if self.failed is None:
            self.buffer.feed(chunk)

    async def ready(self) -> None:
        await self.buffer.wait_for_room()

    async def finish(self) -> None:
        self.buffer.end()

    async def abort(self, error: BaseException | None) -> None:
        # Let the decoder play out whatever already arrived
        self.buffer.end()


class CacheSink(FanoutSink):
    """Writes chunks to a cache entry on a worker thread.

    Never commits; the job decides that once the producer is known to have
    finished cleanly.
    """

    name = "cache"

    def __init__(self, handle: CacheWriteHandle) -> None:
        super().__init__()
        self.handle = handle

    async def consume(self, chunk: bytes) -> None:
        await asyncio.to_thread(self.handle.write, chunk)

    async def abort(self, error: BaseException | None) -> None:
        await asyncio.to_thread(self.handle.abandon)


class Fanout:
    """Copies every chunk of one async producer into each sink."""

    def __init__(self, *sinks: FanoutSink) -> None:
        self.sinks = [s for s in sinks if s is not None]

    async def run(self, source: AsyncIterator[bytes]) -> int:
        """Pump source to completion. Returns total bytes produced.

        Producer errors and cancellation propagate after every sink has been
        closed with the error.
        """
        for sink in self.sinks:
            sink.start()

        total = 0
        error: BaseException | None = None
        try:
            async for chunk in source:
                total += len(chunk)
                for sink in self.sinks:
                    sink.feed(chunk)
                for sink in self.sinks:
                    await sink.ready()
        except BaseException as e:
            error = e
            raise
        finally:
            for sink in self.sinks:
                sink.close(error)
            await asyncio.gather(*(sink.wait() for sink in self.sinks), return_exceptions=True)
        return total
