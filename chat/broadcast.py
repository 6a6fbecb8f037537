"""Real-time fan-out of room events.

Live delivery is a convenience only: every message is persisted before it
is published, so a lost event just means a viewer picks the message up on
the next history fetch.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

EVENT_MESSAGE = "message"
EVENT_TRIAD_LOCKED = "triad_locked"
EVENT_MESSAGE_REJECTED = "message_rejected"


@dataclass(frozen=True)
class RoomEvent:
    room_id: int
    event: str
    payload: dict[str, Any] = field(default_factory=dict)


class Broadcaster(ABC):
    """Publish/subscribe channel scoped by room id."""

    @property
    @abstractmethod
    def ready(self) -> bool:
        ...

    @abstractmethod
    async def publish(self, room_id: int, event: str, payload: dict[str, Any]) -> None:
        ...

    async def warm_up(self) -> None:
        """Prepare the channel; called once when a publish finds it not ready."""


class RoomBroadcaster(Broadcaster):
    """In-process fan-out: one ``asyncio.Queue`` per subscriber."""

    def __init__(self) -> None:
        self._subscribers: dict[int, list[asyncio.Queue[RoomEvent]]] = defaultdict(list)

    @property
    def ready(self) -> bool:
        return True

    def subscribe(self, room_id: int) -> asyncio.Queue[RoomEvent]:
        queue: asyncio.Queue[RoomEvent] = asyncio.Queue()
        self._subscribers[room_id].append(queue)
        return queue

    def unsubscribe(self, room_id: int, queue: asyncio.Queue[RoomEvent]) -> None:
        queues = self._subscribers.get(room_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(room_id, None)

    def subscriber_count(self, room_id: int) -> int:
        return len(self._subscribers.get(room_id, []))

    async def publish(self, room_id: int, event: str, payload: dict[str, Any]) -> None:
        item = RoomEvent(room_id=room_id, event=event, payload=payload)
        for queue in list(self._subscribers.get(room_id, [])):
            queue.put_nowait(item)


class HttpRelayBroadcaster(Broadcaster):
    """Relays events to an external socket broker over HTTP.

    The broker exposes ``GET /`` (health / warm-up) and ``POST /emit``.
    A failed publish marks the relay not ready; it is not retried.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def warm_up(self) -> None:
        try:
            resp = await self._client.get(f"{self.base_url}/")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Socket broker warm-up failed: %s", exc)
            self._ready = False
            return
        self._ready = True

    async def publish(self, room_id: int, event: str, payload: dict[str, Any]) -> None:
        try:
            resp = await self._client.post(
                f"{self.base_url}/emit",
                json={"roomId": room_id, "event": event, "payload": payload},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Relay publish to room %d failed: %s", room_id, exc)
            self._ready = False

    async def aclose(self) -> None:
        await self._client.aclose()


async def deliver(broadcaster: Broadcaster | None, room_id: int, event: str, payload: dict[str, Any]) -> bool:
    """Publish if the channel is ready; otherwise warm it up and drop the event.

    Returns True when the event was handed to the channel.
    """
    if broadcaster is None:
        return False
    if not broadcaster.ready:
        await broadcaster.warm_up()
        logger.debug("Broadcast channel not ready; %s for room %d left to history", event, room_id)
        return False
    await broadcaster.publish(room_id, event, payload)
    return True
