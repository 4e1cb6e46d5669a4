from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from tailbeacon.config import BridgeConfig
from tailbeacon.tail_source import FileTailSource
from tailbeacon.wire import KEEPALIVE_FRAME, encode_data, encode_event

logger = logging.getLogger(__name__)

# Polling pauses while this many frames wait for a slow client; unread
# bytes stay in the file and are picked up once the queue drains.
MAX_PENDING_FRAMES = 5000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StreamSession:
    """
    One live connection: hello frame, snapshot frames, then tailed lines.

    The session owns two asyncio tasks (poll and keepalive) and one
    FileTailSource. close() cancels both tasks and closes the source
    synchronously; it is safe to call more than once.
    """

    def __init__(self, config: BridgeConfig, *, snapshot_lines: Optional[int] = None):
        self.config = config
        self.snapshot_lines = snapshot_lines or config.snapshot_lines
        self.source: Optional[FileTailSource] = None
        self.frames_sent = 0
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tasks(self) -> List[asyncio.Task]:
        return list(self._tasks)

    async def open(self) -> None:
        path = self.config.events_path
        # Offset is fixed before the snapshot is read, so a line appended in
        # between is delivered twice rather than never.
        self.source = FileTailSource(path, start_at_end=True)
        snapshot = await asyncio.to_thread(self.source.snapshot, self.snapshot_lines)

        self._queue.put_nowait(encode_event("hello", {
            "v": 1,
            "kind": "hello",
            "ts": _now_iso(),
            "meta": {"events_path": path, "snapshot_lines": len(snapshot)},
        }))
        for line in snapshot:
            self._queue.put_nowait(encode_data(line))

        self._tasks = [
            asyncio.create_task(self._poll_loop(), name="tailbeacon-poll"),
            asyncio.create_task(self._keepalive_loop(), name="tailbeacon-keepalive"),
        ]
        logger.debug("stream session opened on %s (snapshot=%d)", path, len(snapshot))

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.poll_interval)
            if self._queue.qsize() >= MAX_PENDING_FRAMES:
                continue
            try:
                lines = await asyncio.to_thread(self.source.poll_once)
            except Exception:
                logger.warning("tail poll failed, retrying next tick", exc_info=True)
                continue
            for line in lines:
                self._queue.put_nowait(encode_data(line))

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            self._queue.put_nowait(KEEPALIVE_FRAME)

    async def frames(
        self,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Yield encoded frames until the consumer goes away."""
        if self.source is None:
            await self.open()
        try:
            while not self._closed:
                frame = await self._queue.get()
                if not frame:
                    break
                if is_disconnected is not None and await is_disconnected():
                    break
                self.frames_sent += 1
                yield frame
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
        # wakes a consumer blocked on the queue
        self._queue.put_nowait("")
        if self.source is not None:
            self.source.close()
        logger.debug("stream session closed after %d frames", self.frames_sent)
