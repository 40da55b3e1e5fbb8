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

"""On-disk cache of transcoded tracks.

Layout:
    <cache_dir>/<id>.ogg              published entry (never modified again)
    <cache_dir>/<id>.<random>.part    in-progress write, one per writer

Entries are published with os.replace, so readers only ever see complete
files. Two writers for the same id each get their own temp file; whichever
commits last wins.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import BinaryIO

from loguru import logger

from core.errors import CacheWriteFailed, NotFound

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
TEMP_SUFFIX = ".part"


def _check_id(cache_id: str) -> str:
    # Ids become filenames; reject anything that could escape cache_dir
    if not isinstance(cache_id, str) or not _ID_PATTERN.match(cache_id):
        raise ValueError(f"invalid cache id: {cache_id!r}")
    return cache_id


class CacheWriteHandle:
    """Exclusive writer for one in-progress cache entry.

    Usage:
        with cache.begin_write(track_id) as handle:
            handle.write(chunk)
            handle.commit()

    Leaving the block without commit() abandons the temp file.
    """

    def __init__(self, cache_id: str, temp_path: Path, final_path: Path, fd: int) -> None:
        self.cache_id = cache_id
        self.temp_path = temp_path
        self.final_path = final_path
        self._file: BinaryIO | None = os.fdopen(fd, "wb")
        self.bytes_written = 0
        self.committed = False
        self.abandoned = False

    @property
    def closed(self) -> bool:
        return self.committed or self.abandoned

    def write(self, data: bytes) -> None:
        if self.closed or self._file is None:
            raise CacheWriteFailed(f"write to closed cache entry {self.cache_id}")
        try:
            self._file.write(data)
        except OSError as e:
            raise CacheWriteFailed(f"cache write failed for {self.cache_id}: {e}") from e
        self.bytes_written += len(data)

    def commit(self) -> Path:
        """Flush, fsync and atomically publish the entry."""
        if self.closed or self._file is None:
            raise CacheWriteFailed(f"cache entry {self.cache_id} already closed")
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
            self._file.close()
            self._file = None
            os.replace(self.temp_path, self.final_path)
        except OSError as e:
            self.abandon()
            raise CacheWriteFailed(f"cache commit failed for {self.cache_id}: {e}") from e
        self.committed = True
        logger.debug(f"cached {self.cache_id} ({self.bytes_written} bytes)")
        return self.final_path

    def abandon(self) -> None:
        """Close and delete the temp file. Safe to call more than once."""
        if self.committed or self.abandoned:
            return
        self.abandoned = True
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
            self._file = None
        try:
            self.temp_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"failed to remove {self.temp_path.name}: {e}")
        logger.debug(f"abandoned cache write for {self.cache_id}")

    def __enter__(self) -> "CacheWriteHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.abandon()


class CacheStore:
    """Filesystem cache keyed by track cache id."""

    def __init__(self, cache_dir: Path, extension: str = ".ogg") -> None:
        self.cache_dir = Path(cache_dir)
        self.extension = extension
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, cache_id: str) -> Path:
        return self.cache_dir / f"{_check_id(cache_id)}{self.extension}"

    def has(self, cache_id: str) -> bool:
        """True only for published entries; in-progress writes don't count."""
        return self.path_for(cache_id).is_file()

    def open_for_read(self, cache_id: str) -> BinaryIO:
        """Open a published entry. Raises NotFound if it isn't there."""
        path = self.path_for(cache_id)
        try:
            return open(path, "rb")
        except FileNotFoundError:
            raise NotFound(f"no cache entry for {cache_id}") from None

    def begin_write(self, cache_id: str) -> CacheWriteHandle:
        """Start a new temp file for cache_id. Raises CacheWriteFailed."""
        final_path = self.path_for(cache_id)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self.cache_dir, prefix=f"{cache_id}.", suffix=TEMP_SUFFIX
            )
        except OSError as e:
            raise CacheWriteFailed(f"cannot create temp file for {cache_id}: {e}") from e
        return CacheWriteHandle(cache_id, Path(temp_path), final_path, fd)

    def cleanup_stale(self) -> int:
        """Delete leftover temp files from writers that never finished.

        Only call when no writers are active (startup).
        """
        removed = 0
        for path in self.cache_dir.glob(f"*{TEMP_SUFFIX}"):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"failed to remove stale {path.name}: {e}")
        if removed:
            logger.info(f"removed {removed} stale cache file(s)")
        return removed
