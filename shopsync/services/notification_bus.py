"""
Brand notification bus for real-time dashboard updates.

WHAT:
    In-memory pub/sub with one room per brand (`brand-{id}`). Dashboard
    WebSocket clients subscribe to a room; revenue recalculations publish
    `metrics-calculation-complete` / `metrics-calculation-error` into it.

WHY:
    Revenue is recomputed in ARQ worker processes, while WebSocket clients
    are connected to the API process. Workers publish on a Redis channel and
    the API process relays those messages into this in-process bus.

USAGE:
    # API process (WebSocket endpoint)
    await notification_bus.subscribe(brand_id, websocket)

    # Worker process
    await publish_brand_event(ctx["redis"], brand_id, "metrics-calculation-complete", data)

REFERENCES:
    - shopsync/routers/notifications.py (WebSocket endpoint)
    - shopsync/main.py (starts the Redis relay)
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from uuid import UUID

logger = logging.getLogger(__name__)

METRICS_COMPLETE = "metrics-calculation-complete"
METRICS_ERROR = "metrics-calculation-error"

DEFAULT_CHANNEL = "brand-notifications"


def brand_room(brand_id: UUID | str) -> str:
    return f"brand-{brand_id}"


class NotificationBus:
    """
    Room-based fan-out to WebSocket subscribers.

    Subscribers only need an async `send_json(message)` method, so FastAPI
    WebSockets and test doubles both work. A subscriber whose send fails is
    dropped from every room.
    """

    def __init__(self):
        # room -> set of subscribers
        self._rooms: Dict[str, Set[Any]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def subscribe(self, brand_id: UUID | str, subscriber: Any) -> None:
        room = brand_room(brand_id)
        async with self._lock:
            self._rooms[room].add(subscriber)
        logger.info(f"[NOTIFY] Subscriber joined {room}")

    async def unsubscribe(self, brand_id: UUID | str, subscriber: Any) -> None:
        room = brand_room(brand_id)
        async with self._lock:
            members = self._rooms.get(room)
            if members is None:
                return
            members.discard(subscriber)
            if not members:
                del self._rooms[room]
        logger.info(f"[NOTIFY] Subscriber left {room}")

    async def _drop(self, subscriber: Any) -> None:
        async with self._lock:
            for room in list(self._rooms):
                self._rooms[room].discard(subscriber)
                if not self._rooms[room]:
                    del self._rooms[room]

    async def publish(self, brand_id: UUID | str, event: str, data: Optional[Dict[str, Any]] = None) -> int:
        """
        Send an event to every subscriber of a brand room.

        Returns:
            Number of subscribers the message was delivered to
        """
        room = brand_room(brand_id)
        message = {
            "event": event,
            "brand_id": str(brand_id),
            "data": data or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        async with self._lock:
            subscribers = set(self._rooms.get(room, set()))

        if not subscribers:
            logger.debug(f"[NOTIFY] No subscribers in {room} for {event}")
            return 0

        delivered = 0
        disconnected = []
        for subscriber in subscribers:
            try:
                await subscriber.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"[NOTIFY] Failed to send to subscriber in {room}: {e}")
                disconnected.append(subscriber)

        for subscriber in disconnected:
            await self._drop(subscriber)

        return delivered

    def subscriber_count(self, brand_id: Optional[UUID | str] = None) -> int:
        if brand_id is not None:
            return len(self._rooms.get(brand_room(brand_id), set()))
        return sum(len(members) for members in self._rooms.values())


# Singleton used by the API process
notification_bus = NotificationBus()


# =============================================================================
# CROSS-PROCESS RELAY
# =============================================================================

def encode_relay_message(brand_id: UUID | str, event: str, data: Optional[Dict[str, Any]] = None) -> str:
    return json.dumps({"brand_id": str(brand_id), "event": event, "data": data or {}}, default=str)


async def publish_brand_event(
    redis,
    brand_id: UUID | str,
    event: str,
    data: Optional[Dict[str, Any]] = None,
    channel: str = DEFAULT_CHANNEL,
) -> None:
    """
    Publish a brand event from a worker process.

    WHAT: PUBLISH on the Redis notification channel
    WHY: Workers have no WebSocket clients; the API process relays the message

    Failures are logged, never raised: a missed notification must not fail
    the revenue job that produced it.
    """
    try:
        await redis.publish(channel, encode_relay_message(brand_id, event, data))
        logger.debug(f"[NOTIFY] Published {event} for brand {brand_id} on {channel}")
    except Exception as e:
        logger.warning(f"[NOTIFY] Failed to publish {event} for brand {brand_id}: {e}")


async def dispatch_relay_message(bus: NotificationBus, raw: Any) -> int:
    """Decode one relayed message and publish it on the local bus."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        message = json.loads(raw)
        brand_id = message["brand_id"]
        event = message["event"]
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"[NOTIFY] Ignoring malformed relay message: {e}")
        return 0
    return await bus.publish(brand_id, event, message.get("data"))


async def run_redis_relay(redis_url: str, bus: NotificationBus, channel: str = DEFAULT_CHANNEL) -> None:
    """
    Forward Redis channel messages into the in-process bus until cancelled.

    Started as a background task on API startup.
    """
    from redis import asyncio as aioredis

    client = aioredis.from_url(redis_url)
    pubsub = client.pubsub()
    await pubsub.subscribe(channel)
    logger.info(f"[NOTIFY] Relay subscribed to Redis channel {channel}")

    try:
        async for item in pubsub.listen():
            if item.get("type") != "message":
                continue
            await dispatch_relay_message(bus, item.get("data"))
    except asyncio.CancelledError:
        logger.info("[NOTIFY] Relay stopped")
        raise
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await client.aclose()
