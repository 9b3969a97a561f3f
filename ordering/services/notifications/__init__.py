"""
Order Notifier Factory

Returns the local or Redis-backed notifier based on NOTIFIER_BACKEND.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from ordering.core.config import NotifierBackend, get_settings
from ordering.services.notifications.base import (
    ORDER_CREATED,
    ORDER_UPDATED,
    AdminRoom,
    BaseOrderNotifier,
    OrderEvent,
)
from ordering.services.notifications.local import LocalOrderNotifier
from ordering.services.notifications.redis_pubsub import RedisOrderNotifier

logger = logging.getLogger(__name__)


@lru_cache()
def get_notifier() -> BaseOrderNotifier:
    """Get the configured order notifier."""
    settings = get_settings()

    if settings.notifier_backend == NotifierBackend.REDIS:
        logger.info("Order Notifier: Using RedisOrderNotifier")
        return RedisOrderNotifier()
    logger.info("Order Notifier: Using LocalOrderNotifier")
    return LocalOrderNotifier()


def reset_notifier() -> None:
    """Clear the cached notifier instance."""
    get_notifier.cache_clear()


__all__ = [
    "get_notifier",
    "reset_notifier",
    "AdminRoom",
    "BaseOrderNotifier",
    "OrderEvent",
    "LocalOrderNotifier",
    "RedisOrderNotifier",
    "ORDER_CREATED",
    "ORDER_UPDATED",
]
