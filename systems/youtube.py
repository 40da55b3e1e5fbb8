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

"""YouTube lookups via yt-dlp.

yt-dlp is blocking, so every call runs on a dedicated thread pool and is
bounded by a timeout.
"""

import asyncio
import re
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any
from urllib.parse import parse_qs, urlsplit

import yt_dlp
from loguru import logger

from core.errors import FetchFailed, NotFound
from core.track import Requester, StreamInfo, Track, extract_video_id, is_youtube_url, watch_url

_URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)

UNKNOWN_TITLE = "Unknown Title"
MAX_PLAYLIST_ITEMS = 100

COMMON_YDL_OPTS = {
    "quiet": True,
    "no_warnings": True,
    "noprogress": True,
    "source_address": "0.0.0.0",
    "socket_timeout": 10,
    "logtostderr": False,
}


def is_playlist_url(query: str) -> bool:
    """Playlist links carry list= and no specific video (v=)."""
    if not is_youtube_url(query):
        return False
    params = parse_qs(urlsplit(query.strip()).query)
    return bool(params.get("list")) and "v" not in params


def is_url(query: str) -> bool:
    return bool(_URL_PATTERN.match(query.strip()))


class YouTubeResolver:
    """Turns user queries into Tracks and Tracks into stream URLs."""

    def __init__(
        self,
        cookies_file: str | None = None,
        search_timeout: float = 15.0,
        extract_timeout: float = 25.0,
        max_workers: int = 4,
    ) -> None:
        self.search_timeout = search_timeout
        self.extract_timeout = extract_timeout
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="YouTubeWorker")

        base = dict(COMMON_YDL_OPTS)
        if cookies_file:
            base["cookiefile"] = cookies_file

        self._info_opts = {**base, "noplaylist": True, "skip_download": True}
        self._stream_opts = {**base, "format": "bestaudio/best", "noplaylist": True}
        self._search_opts = {**base, "extract_flat": "in_playlist", "noplaylist": True}
        self._playlist_opts = {
            **base,
            "extract_flat": "in_playlist",
            "noplaylist": False,
            "playlist_items": f"1-{MAX_PLAYLIST_ITEMS}",
        }

    @staticmethod
    def _extract(opts: dict, query: str) -> dict[str, Any] | None:
        with yt_dlp.YoutubeDL(opts) as ydl:
            return ydl.extract_info(query, download=False)

    async def _run(self, opts: dict, query: str, timeout: float) -> dict[str, Any] | None:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self.executor, partial(self._extract, opts, query)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise FetchFailed(f"youtube lookup timed out after {timeout:g}s") from None
        except yt_dlp.utils.YoutubeDLError as e:
            raise FetchFailed(f"youtube lookup failed: {e}") from e

    async def resolve(self, query: str, requester: Requester) -> Track | list[Track]:
        """Resolve a playlist URL, a video URL or free-text search.

        Raises:
            NotFound: search had no results or the playlist is empty
            FetchFailed: yt-dlp failed or timed out
        """
        query = query.strip()
        if is_playlist_url(query):
            return await self._resolve_playlist(query, requester)
        if is_url(query):
            return await self._resolve_video(query, requester)
        return await self._search(query, requester)

    async def _resolve_playlist(self, url: str, requester: Requester) -> list[Track]:
        info = await self._run(self._playlist_opts, url, self.extract_timeout)
        tracks = []
        for entry in (info or {}).get("entries") or []:
            if not entry or not entry.get("id"):
                continue
            tracks.append(Track(
                source_url=watch_url(entry["id"]),
                requested_by=requester,
                title=entry.get("title") or UNKNOWN_TITLE,
            ))
        if not tracks:
            raise NotFound(f"no videos in playlist {url}")
        logger.debug(f"playlist {url} resolved to {len(tracks)} tracks")
        return tracks

    async def _resolve_video(self, url: str, requester: Requester) -> Track:
        info = await self._run(self._info_opts, url, self.extract_timeout)
        if not info:
            raise NotFound(f"nothing found at {url}")
        video_id = extract_video_id(url)
        source_url = watch_url(video_id) if video_id else (info.get("webpage_url") or url)
        return Track(source_url=source_url, requested_by=requester, title=info.get("title") or UNKNOWN_TITLE)

    async def _search(self, query: str, requester: Requester) -> Track:
        info = await self._run(self._search_opts, f"ytsearch1:{query}", self.search_timeout)
        entries = [e for e in (info or {}).get("entries") or [] if e and e.get("id")]
        if not entries:
            raise NotFound(f"no results for {query!r}")
        entry = entries[0]
        return Track(
            source_url=watch_url(entry["id"]),
            requested_by=requester,
            title=entry.get("title") or UNKNOWN_TITLE,
        )

    async def stream_url(self, source_url: str) -> StreamInfo:
        """Direct audio URL for a track (short-lived, fetch right before use)."""
        info = await self._run(self._stream_opts, source_url, self.extract_timeout)
        if not info or not info.get("url"):
            raise FetchFailed(f"no audio stream for {source_url}")
        return StreamInfo(url=info["url"], headers=dict(info.get("http_headers") or {}))

    async def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)
