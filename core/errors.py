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

"""Exception types shared across the playback stack.

Pipeline and connection failures are caught at the scheduler and command
facade, never at the call site that raised them.
"""


class EncoreError(Exception):
    """Base class for all errors raised by Encore itself."""


class ConnectTimeout(EncoreError):
    """Voice connection did not become ready within the timeout."""

    def __init__(self, channel_name: str, timeout: float) -> None:
        super().__init__(f"voice connect to #{channel_name} timed out after {timeout:g}s")
        self.channel_name = channel_name
        self.timeout = timeout


class PipelineError(EncoreError):
    """A track could not be turned into a playable source."""


class FetchFailed(PipelineError):
    """Video source lookup or stream URL extraction failed."""


class TranscodeFailed(PipelineError):
    """FFmpeg could not be started or produced no usable output."""


class CacheWriteFailed(EncoreError):
    """Writing or publishing a cache entry failed.

    Never surfaced to users; the live stream continues without caching.
    """


class NotFound(EncoreError):
    """Lookup returned nothing (search miss, empty playlist, absent cache entry)."""


class InvalidCommandArgument(EncoreError):
    """User supplied an argument the command cannot accept."""
