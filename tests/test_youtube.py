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

import time

import pytest
import yt_dlp

from conftest import ALICE
from core.errors import FetchFailed, NotFound
from core.track import watch_url
from systems.youtube import YouTubeResolver, is_playlist_url, is_url


@pytest.fixture
def calls():
    return []


@pytest.fixture
def answers():
    return {}


@pytest.fixture
def resolver(monkeypatch, calls, answers):
    def fake_extract(opts, query):
        calls.append((opts, query))
        answer = answers.get(query)
        if isinstance(answer, BaseException):
            raise answer
        if callable(answer):
            return answer()
        return answer

    monkeypatch.setattr(YouTubeResolver, "_extract", staticmethod(fake_extract))
    resolver = YouTubeResolver(search_timeout=0.2, extract_timeout=0.2)
    yield resolver
    resolver.executor.shutdown(wait=False, cancel_futures=True)


def test_url_classification():
    assert is_playlist_url("https://www.youtube.com/playlist?list=PLabc")
    assert not is_playlist_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ&list=PLabc")
    assert not is_playlist_url("https://example.com/?list=PLabc")
    assert not is_playlist_url("https://x.example/?r=youtube.com&list=PLabc")
    assert is_playlist_url("https://music.youtube.com/playlist?list=PLabc")
    assert is_url("https://youtu.be/dQw4w9WgXcQ")
    assert not is_url("rick astley")


async def test_search_returns_first_hit(resolver, calls, answers):
    answers["ytsearch1:never gonna"] = {"entries": [{"id": "dQw4w9WgXcQ", "title": "Never Gonna Give You Up"}]}

    track = await resolver.resolve("never gonna", ALICE)

    assert track.source_url == watch_url("dQw4w9WgXcQ")
    assert track.title == "Never Gonna Give You Up"
    assert track.requested_by == ALICE


async def test_search_without_results_is_not_found(resolver, answers):
    answers["ytsearch1:zzzz"] = {"entries": []}
    with pytest.raises(NotFound):
        await resolver.resolve("zzzz", ALICE)


async def test_video_url_is_normalized(resolver, answers):
    url = "https://youtu.be/dQw4w9WgXcQ?t=42"
    answers[url] = {"title": "Never Gonna", "webpage_url": watch_url("dQw4w9WgXcQ")}

    track = await resolver.resolve(url, ALICE)

    assert track.source_url == watch_url("dQw4w9WgXcQ")
    assert track.cache_id == "dQw4w9WgXcQ"


async def test_video_without_title_gets_placeholder(resolver, answers):
    url = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    answers[url] = {"id": "dQw4w9WgXcQ"}
    track = await resolver.resolve(url, ALICE)
    assert track.title == "Unknown Title"


async def test_playlist_expands_valid_entries(resolver, calls, answers):
    url = "https://www.youtube.com/playlist?list=PLmix"
    answers[url] = {"entries": [
        {"id": "aaaaaaaaaa1", "title": "One"},
        None,
        {"title": "no id"},
        {"id": "bbbbbbbbbb2"},
    ]}

    tracks = await resolver.resolve(url, ALICE)

    assert [t.source_url for t in tracks] == [watch_url("aaaaaaaaaa1"), watch_url("bbbbbbbbbb2")]
    assert [t.title for t in tracks] == ["One", "Unknown Title"]
    opts, _ = calls[0]
    assert opts["extract_flat"] == "in_playlist"
    assert opts["playlist_items"] == "1-100"


async def test_empty_playlist_is_not_found(resolver, answers):
    url = "https://www.youtube.com/playlist?list=PLempty"
    answers[url] = {"entries": []}
    with pytest.raises(NotFound):
        await resolver.resolve(url, ALICE)


async def test_stream_url_carries_headers(resolver, calls, answers):
    source = watch_url("dQw4w9WgXcQ")
    answers[source] = {"url": "https://media.example/audio", "http_headers": {"User-Agent": "yt"}}

    info = await resolver.stream_url(source)

    assert info.url == "https://media.example/audio"
    assert info.headers == {"User-Agent": "yt"}
    assert calls[0][0]["format"] == "bestaudio/best"


async def test_stream_url_without_media_fails(resolver, answers):
    source = watch_url("dQw4w9WgXcQ")
    answers[source] = {"title": "live premiere"}
    with pytest.raises(FetchFailed):
        await resolver.stream_url(source)


async def test_yt_dlp_errors_become_fetch_failed(resolver, answers):
    source = watch_url("dQw4w9WgXcQ")
    answers[source] = yt_dlp.utils.DownloadError("Private video")
    with pytest.raises(FetchFailed):
        await resolver.stream_url(source)


async def test_slow_lookup_times_out(resolver, answers):
    source = watch_url("dQw4w9WgXcQ")

    def slow():
        time.sleep(0.5)
        return {"url": "https://media.example/audio"}

    answers[source] = slow
    with pytest.raises(FetchFailed):
        await resolver.stream_url(source)


def test_cookies_file_is_passed_to_every_lookup():
    resolver = YouTubeResolver(cookies_file="/config/cookies.txt")
    try:
        for opts in (resolver._info_opts, resolver._stream_opts, resolver._search_opts, resolver._playlist_opts):
            assert opts["cookiefile"] == "/config/cookies.txt"
    finally:
        resolver.executor.shutdown(wait=False)
