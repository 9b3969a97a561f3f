"""
In-Memory Cart Backends

Process-local implementations of the cart interfaces, used for local
development and tests. Same compare-and-swap semantics as the SQL backend.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
from typing import Iterable, Optional

from ordering.core.errors import ConflictError
from ordering.services.cart.base import (
    CartRepository,
    CartSnapshot,
    LineItem,
    MenuCatalog,
    MenuItemView,
)

logger = logging.getLogger(__name__)


class InMemoryCartRepository(CartRepository):
    """Dictionary-backed cart store."""

    def __init__(self):
        self._carts: dict[int, CartSnapshot] = {}
        self._lock = asyncio.Lock()

    async def load(self, owner_id: int) -> Optional[CartSnapshot]:
        return self._carts.get(owner_id)

    async def create(self, owner_id: int) -> CartSnapshot:
        async with self._lock:
            existing = self._carts.get(owner_id)
            if existing is not None:
                return existing
            cart = CartSnapshot(owner_id=owner_id)
            self._carts[owner_id] = cart
            logger.debug(f"Created in-memory cart for owner {owner_id}")
            return cart

    async def save(
        self,
        owner_id: int,
        items: Iterable[LineItem],
        expected_version: int,
    ) -> CartSnapshot:
        async with self._lock:
            current = self._carts.get(owner_id)
            current_version = current.version if current else None
            if current_version != expected_version:
                raise ConflictError(
                    f"Cart for owner {owner_id} changed "
                    f"(expected v{expected_version}, found v{current_version})"
                )
            cart = CartSnapshot(
                owner_id=owner_id,
                items=tuple(items),
                version=expected_version + 1,
            )
            self._carts[owner_id] = cart
            return cart

    def discard(self, owner_id: int) -> None:
        self._carts.pop(owner_id, None)


class StaticMenuCatalog(MenuCatalog):
    """Fixed menu, keyed by menu item id."""

    def __init__(self, items: Iterable[MenuItemView] = ()):
        self._items = {item.id: item for item in items}

    def add(self, item: MenuItemView) -> None:
        self._items[item.id] = item

    async def get_item(self, menu_item_id: int) -> Optional[MenuItemView]:
        return self._items.get(menu_item_id)
