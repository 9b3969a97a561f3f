"""
Redis Pub/Sub Order Notifier

Publishes every event on a Redis channel. Each API worker subscribes to
the same channel and relays what it hears into its own admin room, so a
dashboard connected to any worker sees transitions made on any other.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from ordering.core.config import get_settings
from ordering.services.notifications.base import AdminRoom, BaseOrderNotifier, OrderEvent

logger = logging.getLogger(__name__)


class RedisOrderNotifier(BaseOrderNotifier):
    """Cross-process admin room fan-out over Redis."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel: Optional[str] = None,
        room: Optional[AdminRoom] = None,
    ):
        super().__init__(room)
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.notifier_channel
        self.client = aioredis.from_url(self.redis_url, decode_responses=True)
        self._listener: Optional[asyncio.Task] = None

    @property
    def provider_name(self) -> str:
        return "redis"

    async def publish(self, event: OrderEvent) -> None:
        try:
            await self.client.publish(self.channel, json.dumps(event.to_message()))
        except Exception as e:
            logger.error(f"Failed to publish {event.event} for {event.order_number}: {e}")

    async def start(self) -> None:
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())
            logger.info(f"Listening for order events on '{self.channel}'")

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self.client.aclose()

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def _listen(self) -> None:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.relay(message["data"])
        finally:
            await pubsub.aclose()

    async def relay(self, raw: str) -> None:
        """Deliver one channel message to this process's room."""
        try:
            event = OrderEvent.from_message(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed order event: {e}")
            return
        await self.room.broadcast(event.to_message())
