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

"""Per-guild track queue with loop handling."""

from collections import deque
from typing import Iterable

from loguru import logger

from core.track import LoopMode, Track


class TrackQueue:
    """Pending tracks plus the "now playing" slot.

    The current track is never also in the pending list: advance() moves it
    out of the slot (re-inserting it for loop modes) before taking the next
    one from the front.
    """

    def __init__(self) -> None:
        self._pending: deque[Track] = deque()
        self.current: Track | None = None

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending) or self.current is not None

    def enqueue(self, track: Track) -> None:
        self._pending.append(track)

    def enqueue_many(self, tracks: Iterable[Track]) -> int:
        """Append tracks in order (playlist expansion). Returns count added."""
        before = len(self._pending)
        self._pending.extend(tracks)
        return len(self._pending) - before

    def advance(self, loop_mode: LoopMode) -> Track | None:
        """Move to the next track according to loop_mode.

        SONG puts the current track back at the front, QUEUE at the back,
        OFF drops it. Returns the new current track, or None (and clears
        the slot) when nothing is left.
        """
        if self.current is not None:
            if loop_mode is LoopMode.SONG:
                self._pending.appendleft(self.current)
            elif loop_mode is LoopMode.QUEUE:
                self._pending.append(self.current)

        self.current = self._pending.popleft() if self._pending else None
        return self.current

    def drop_current(self) -> Track | None:
        """Forget the current track without re-inserting it.

        Used when a track fails to play so loop modes don't retry it forever.
        """
        track, self.current = self.current, None
        if track:
            logger.debug(f"dropped {track.title!r} from rotation")
        return track

    def peek_all(self) -> list[Track]:
        """Snapshot of pending tracks in play order (current excluded)."""
        return list(self._pending)

    def clear(self) -> None:
        """Drop pending tracks and the current slot."""
        self._pending.clear()
        self.current = None
