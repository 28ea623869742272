"""
Crowd Count — Real-time Fan-out
===============================

Registry of connected viewers.  Results are broadcast to every viewer,
not echoed to the one that submitted the frame.  Messages are JSON
envelopes ``{"event": <name>, "data": {...}}``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

log = logging.getLogger(__name__)


class Sink(Protocol):
    async def send_json(self, data: Any) -> None: ...


def envelope(event: str, data: dict) -> dict:
    return {"event": event, "data": data}


class ViewerRegistry:
    """Set of live output sinks (WebSocket connections)."""

    def __init__(self):
        self._viewers: set = set()

    def __len__(self):
        return len(self._viewers)

    def __contains__(self, sink):
        return sink in self._viewers

    def connect(self, sink: Sink):
        self._viewers.add(sink)
        log.info("Viewer connected (%d total)", len(self._viewers))

    def disconnect(self, sink: Sink):
        if sink in self._viewers:
            self._viewers.discard(sink)
            log.info("Viewer disconnected (%d total)", len(self._viewers))

    async def send(self, sink: Sink, event: str, data: dict) -> bool:
        """Point-to-point message.  A failed send drops the viewer."""
        try:
            await sink.send_json(envelope(event, data))
            return True
        except Exception as e:
            log.info("Send to viewer failed, dropping it: %s", e)
            self.disconnect(sink)
            return False

    async def acknowledge(self, sink: Sink) -> bool:
        """Tell a producer its frame entered the pipeline (not that it is done)."""
        return await self.send(sink, "ack", {"received": True})

    async def broadcast(self, event: str, data: dict) -> int:
        """Deliver one message to every connected viewer.  Returns how many got it."""
        viewers = list(self._viewers)
        if not viewers:
            return 0
        sent = await asyncio.gather(*(self.send(v, event, data) for v in viewers))
        return sum(1 for ok in sent if ok)
