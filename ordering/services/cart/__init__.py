"""
Cart Service Factory

Usage:
    from ordering.services.cart import build_cart_aggregator

    carts = build_cart_aggregator(db)
    cart = await carts.add_item(owner_id, menu_item_id=3, quantity=2)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession

from ordering.core.config import get_settings
from ordering.services.cart.aggregator import CartAggregator
from ordering.services.cart.base import (
    AddonOption,
    CartChanged,
    CartEventBus,
    CartRepository,
    CartSnapshot,
    CartTotals,
    LineItem,
    MenuCatalog,
    MenuItemView,
)
from ordering.services.cart.memory import InMemoryCartRepository, StaticMenuCatalog
from ordering.services.cart.sql import SqlCartRepository, SqlMenuCatalog, menu_item_view

logger = logging.getLogger(__name__)


@lru_cache()
def get_cart_events() -> CartEventBus:
    """Process-wide bus for ``CartChanged`` events."""
    return CartEventBus()


def build_cart_aggregator(session: AsyncSession) -> CartAggregator:
    """Aggregator over the SQL backends, bound to one database session."""
    return CartAggregator(
        repository=SqlCartRepository(session),
        catalog=SqlMenuCatalog(session),
        settings=get_settings(),
        events=get_cart_events(),
    )


def reset_cart_events() -> None:
    """Clear the cached bus and its observers."""
    get_cart_events.cache_clear()


__all__ = [
    "build_cart_aggregator",
    "get_cart_events",
    "reset_cart_events",
    "CartAggregator",
    "AddonOption",
    "CartChanged",
    "CartEventBus",
    "CartRepository",
    "CartSnapshot",
    "CartTotals",
    "LineItem",
    "MenuCatalog",
    "MenuItemView",
    "InMemoryCartRepository",
    "StaticMenuCatalog",
    "SqlCartRepository",
    "SqlMenuCatalog",
    "menu_item_view",
]
