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

"""Track model, cache id derivation and loop modes."""

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit

from core.errors import InvalidCommandArgument

# Matches watch?v=ID, youtu.be/ID, /embed/ID, /shorts/ID and music.youtube.com
_VIDEO_ID_PATTERN = re.compile(r"(?:v=|/|embed/|youtu\.be/)([0-9A-Za-z_-]{11})(?![0-9A-Za-z_-])")
_YOUTUBE_DOMAINS = ("youtube.com", "youtu.be")


def is_youtube_url(url: str) -> bool:
    """Check the host part of a URL against known YouTube domains."""
    try:
        host = (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return False
    # Subdomains (www., m., music.) count too
    return any(host == domain or host.endswith(f".{domain}") for domain in _YOUTUBE_DOMAINS)


def extract_video_id(url: str) -> str | None:
    """Pull the 11-character video id out of a YouTube URL.

    Returns None for non-YouTube URLs and for YouTube URLs without a video
    (e.g. bare playlist links).
    """
    if not is_youtube_url(url):
        return None
    match = _VIDEO_ID_PATTERN.search(url)
    return match.group(1) if match else None


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


@dataclass(frozen=True, slots=True)
class Requester:
    """Who asked for a track. Kept as plain values so tracks outlive members."""
    id: int
    name: str


@dataclass(frozen=True, slots=True)
class Track:
    """A queued request for one video's audio.

    Immutable once enqueued. ``cache_id`` is the filename-safe key used by the
    cache store; YouTube videos use their video id so the same video requested
    from different URL shapes shares one cache entry.
    """
    source_url: str
    requested_by: Requester
    title: str

    @property
    def cache_id(self) -> str:
        video_id = extract_video_id(self.source_url)
        if video_id:
            return video_id
        # Non-YouTube sources still need a stable, filename-safe key
        return "url-" + hashlib.sha1(self.source_url.encode("utf-8")).hexdigest()[:20]


@dataclass(frozen=True, slots=True)
class StreamInfo:
    """Direct media URL for a track plus the HTTP headers needed to fetch it."""
    url: str
    headers: dict[str, str] = field(default_factory=dict)


class LoopMode(Enum):
    """Queue repeat policy applied when advancing past the current track.

    OFF: current track is dropped after it plays
    SONG: current track is replayed until the mode changes
    QUEUE: current track is moved to the back of the queue
    """
    OFF = "off"
    SONG = "song"
    QUEUE = "queue"

    @classmethod
    def parse(cls, value: str | None) -> "LoopMode":
        """Parse user input (case-insensitive). Raises InvalidCommandArgument."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise InvalidCommandArgument(f"unknown loop mode: {value!r}") from None
