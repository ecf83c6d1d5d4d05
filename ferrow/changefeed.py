# ferrow/changefeed.py
"""
In-process change feed for the admin dashboard.

Writers call `publish("orders", "UPDATE", id)`; every open SSE stream gets
the event and the dashboard refetches. Single process only: with several
workers each one only sees its own writes.
"""
from __future__ import annotations
import asyncio
import logging
from typing import AsyncIterator, Dict, Optional, Set

import orjson

logger = logging.getLogger(__name__)

QUEUE_SIZE = 100
KEEPALIVE_SECONDS = 15.0


class ChangeFeed:
    def __init__(self, queue_size: int = QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscribers(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    def publish(self, table: str, event: str, row_id=None) -> None:
        msg = {"table": table, "event": event, "id": row_id}
        for q in list(self._subscribers):
            try:
                q.put_nowait(msg)
            except asyncio.QueueFull:
                # a stalled client only needs to know *something* changed
                logger.debug("change feed queue full, dropping %s", msg)

    async def stream(self, q: asyncio.Queue,
                     keepalive: float = KEEPALIVE_SECONDS
                     ) -> AsyncIterator[bytes]:
        """SSE frames for one subscriber; unsubscribes when closed."""
        try:
            yield b": connected\n\n"
            while True:
                try:
                    msg: Optional[Dict] = await asyncio.wait_for(
                        q.get(), timeout=keepalive
                    )
                except asyncio.TimeoutError:
                    yield b": keepalive\n\n"
                    continue
                yield b"data: " + orjson.dumps(msg) + b"\n\n"
        finally:
            self.unsubscribe(q)


feed = ChangeFeed()
