"""
Real-time species events over Server-Sent Events.

Every open /api/sse request owns a bounded queue registered with the hub.
broadcast() offers the serialized event to each queue; a queue that is full
is treated as a dead client and dropped. There is no buffer or replay, so a
client only sees events emitted while it is connected.

Event types: connection, heartbeat, media_generated, species_updated,
generation_failed (only when BROADCAST_GENERATION_FAILURES is on).
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from species_gallery.config import settings
from species_gallery.domain.enums import EventType

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SSEEvent:
    type: str
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": EventType(self.type).value, "timestamp": self.timestamp}
        if self.message is not None:
            out["message"] = self.message
        if self.data is not None:
            out["data"] = self.data
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        return f"data: {self.to_json()}\n\n"


class EventHub:
    def __init__(self, *, heartbeat_seconds: Optional[float] = None, queue_size: Optional[int] = None):
        self.heartbeat_seconds = float(settings.SSE_HEARTBEAT_SECONDS if heartbeat_seconds is None else heartbeat_seconds)
        self.queue_size = int(settings.SSE_CLIENT_QUEUE_SIZE if queue_size is None else queue_size)
        self._connections: Set[asyncio.Queue] = set()
        self._stats = {"total_events_emitted": 0, "dropped_connections": 0}

    # ── Connection lifecycle ─────────────────────────────────────────────

    def connect(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._connections.add(q)
        logger.info("SSE client connected", extra={"connections": len(self._connections)})
        return q

    def disconnect(self, q: asyncio.Queue) -> None:
        if q in self._connections:
            self._connections.discard(q)
            logger.info("SSE client disconnected", extra={"connections": len(self._connections)})

    def is_connected(self, q: asyncio.Queue) -> bool:
        return q in self._connections

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ── Emission ─────────────────────────────────────────────────────────

    def broadcast(self, event: SSEEvent) -> int:
        """Returns the number of clients the event was handed to."""
        self._stats["total_events_emitted"] += 1
        if not self._connections:
            return 0

        payload = event.to_sse()
        dead: List[asyncio.Queue] = []
        delivered = 0

        for q in list(self._connections):
            try:
                q.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                dead.append(q)

        for q in dead:
            self._connections.discard(q)
        if dead:
            self._stats["dropped_connections"] += len(dead)
            logger.warning("Dropped unresponsive SSE clients", extra={"dropped": len(dead)})

        return delivered

    def emit(self, event_type: EventType, *, message: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> int:
        return self.broadcast(SSEEvent(type=EventType(event_type).value, message=message, data=data))

    # ── Streaming ────────────────────────────────────────────────────────

    async def stream(self, is_disconnected: Callable[[], Awaitable[bool]]) -> AsyncIterator[str]:
        """
        Async generator for one SSE response: welcome event, then live events,
        with a heartbeat every heartbeat_seconds whether or not events flowed.
        """
        loop = asyncio.get_running_loop()
        q = self.connect()
        try:
            yield SSEEvent(type=EventType.connection.value, message="Connected to real-time updates").to_sse()
            next_heartbeat = loop.time() + self.heartbeat_seconds

            while True:
                if await is_disconnected():
                    break
                if loop.time() >= next_heartbeat:
                    if not self.is_connected(q):
                        break
                    next_heartbeat = loop.time() + self.heartbeat_seconds
                    yield SSEEvent(type=EventType.heartbeat.value).to_sse()
                    continue
                try:
                    payload = await asyncio.wait_for(q.get(), timeout=next_heartbeat - loop.time())
                except asyncio.TimeoutError:
                    continue
                yield payload
        finally:
            self.disconnect(q)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "active_connections": len(self._connections)}
