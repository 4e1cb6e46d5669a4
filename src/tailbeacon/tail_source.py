from __future__ import annotations

import logging
import os
import stat
from typing import List, Optional

from tailbeacon.config import clamp_snapshot_lines

logger = logging.getLogger(__name__)

# Snapshot reads the whole file up to this size, otherwise only the tail.
SNAPSHOT_FULL_READ_MAX = 5 * 1024 * 1024
SNAPSHOT_TAIL_BYTES = 1024 * 1024

# Upper bound on bytes consumed by a single poll; the rest waits for the next tick.
POLL_READ_MAX = 1024 * 1024


def _split_lines(data: bytes) -> List[str]:
    out = []
    for raw in data.split(b"\n"):
        text = raw.decode("utf-8", errors="replace").strip()
        if text:
            out.append(text)
    return out


def _stat_file(path: str) -> Optional[os.stat_result]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not stat.S_ISREG(st.st_mode):
        return None
    return st


def read_snapshot_lines(path: str, max_lines: int) -> List[str]:
    """
    Return the last `max_lines` non-empty lines of `path`.

    Missing or unreadable files give an empty list. Large files are only
    read from their trailing megabyte, whose first (possibly partial) line
    is dropped.
    """
    max_lines = clamp_snapshot_lines(max_lines)
    st = _stat_file(path)
    if st is None:
        return []

    start = 0 if st.st_size <= SNAPSHOT_FULL_READ_MAX else st.st_size - SNAPSHOT_TAIL_BYTES
    try:
        with open(path, "rb") as f:
            f.seek(start)
            data = f.read(st.st_size - start)
    except OSError as exc:
        logger.debug("snapshot read failed for %s: %s", path, exc)
        return []

    if start > 0:
        _, _, data = data.partition(b"\n")
    return _split_lines(data)[-max_lines:]


class FileTailSource:
    """
    Offset-tracked reader of one append-only file.

    Each instance owns its own offset and trailing fragment. Reads go
    through a short-lived handle opened for an explicit byte range, so
    several sources can follow the same file without sharing a cursor.
    """

    def __init__(self, path: str, *, start_at_end: bool = True, max_read_bytes: int = POLL_READ_MAX):
        self.path = path
        self.max_read_bytes = max(4096, int(max_read_bytes))
        self.offset = 0
        self._inode: Optional[int] = None
        self._carry = b""
        self._closed = False

        st = _stat_file(path)
        if st is not None:
            self._inode = st.st_ino
            if start_at_end:
                self.offset = st.st_size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_fragment(self) -> str:
        return self._carry.decode("utf-8", errors="replace")

    def snapshot(self, max_lines: int) -> List[str]:
        return read_snapshot_lines(self.path, max_lines)

    def _reset(self, reason: str) -> None:
        logger.debug("%s: %s, rereading from start", self.path, reason)
        self.offset = 0
        self._carry = b""

    def poll_once(self) -> List[str]:
        """Return complete lines appended since the last call; keep any partial tail."""
        if self._closed:
            return []

        st = _stat_file(self.path)
        if st is None:
            return []

        if self._inode is not None and st.st_ino != self._inode:
            self._reset("file replaced")
        elif st.st_size < self.offset:
            self._reset("file truncated")
        self._inode = st.st_ino

        if st.st_size == self.offset:
            return []

        want = min(st.st_size - self.offset, self.max_read_bytes)
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                chunk = f.read(want)
        except OSError as exc:
            # transient; the next tick retries from the same offset
            logger.debug("tail read failed for %s: %s", self.path, exc)
            return []

        self.offset += len(chunk)
        data = self._carry + chunk
        data, sep, self._carry = data.rpartition(b"\n")
        if not sep:
            return []
        return _split_lines(data)

    def close(self) -> None:
        self._closed = True
        self._carry = b""
