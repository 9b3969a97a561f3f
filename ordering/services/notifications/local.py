"""
In-Process Order Notifier

Delivers events straight to this process's admin room. Correct for a
single API worker; multi-worker deployments use the Redis notifier.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging

from ordering.services.notifications.base import BaseOrderNotifier, OrderEvent

logger = logging.getLogger(__name__)


class LocalOrderNotifier(BaseOrderNotifier):
    """Admin room fan-out within one process."""

    @property
    def provider_name(self) -> str:
        return "local"

    async def publish(self, event: OrderEvent) -> None:
        try:
            delivered = await self.room.broadcast(event.to_message())
        except Exception as e:
            logger.error(f"Failed to broadcast {event.event} for {event.order_number}: {e}")
            return
        logger.debug(
            f"{event.event} {event.order_number} -> {event.status} "
            f"delivered to {delivered} admin client(s)"
        )
