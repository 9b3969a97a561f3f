"""
SQL Cart Backends

SQLAlchemy implementations of the cart interfaces. ``save`` is a single
conditional UPDATE on the cart's version column, so two requests racing
on the same cart cannot both win.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ordering.core.errors import ConflictError
from ordering.database import utcnow
from ordering.models import Cart, MenuItem
from ordering.services.cart.base import (
    AddonOption,
    CartRepository,
    CartSnapshot,
    LineItem,
    MenuCatalog,
    MenuItemView,
)

logger = logging.getLogger(__name__)


def menu_item_view(item: MenuItem) -> MenuItemView:
    """Project a MenuItem row onto the cart's read model."""
    addons = {}
    for addon in item.addons or []:
        addon_id = str(addon["id"])
        addons[addon_id] = AddonOption(
            id=addon_id,
            name=addon.get("name", addon_id),
            price=float(addon.get("price", 0.0)),
        )
    return MenuItemView(
        id=item.id,
        name=item.name,
        price=float(item.price),
        sizes=tuple(item.sizes or ()),
        addons=addons,
        is_vegetarian=bool(item.is_vegetarian),
        is_active=bool(item.is_active),
        is_available=bool(item.is_available),
        preparation_time=int(item.preparation_time or 0),
        stock=item.stock,
    )


class SqlCartRepository(CartRepository):
    """Cart persistence on the ``carts`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _snapshot(row: Cart) -> CartSnapshot:
        return CartSnapshot(
            owner_id=row.owner_id,
            items=tuple(LineItem.from_dict(data) for data in row.items or []),
            version=row.version,
        )

    async def load(self, owner_id: int) -> Optional[CartSnapshot]:
        result = await self.session.execute(
            select(Cart)
            .where(Cart.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._snapshot(row) if row else None

    async def create(self, owner_id: int) -> CartSnapshot:
        row = Cart(owner_id=owner_id, items=[], subtotal=0.0, total_items=0, version=0)
        self.session.add(row)
        try:
            await self.session.commit()
        except IntegrityError:
            # Another request created it first
            await self.session.rollback()
            existing = await self.load(owner_id)
            if existing is None:
                raise
            return existing

        logger.debug(f"Created cart for owner {owner_id}")
        return self._snapshot(row)

    async def save(
        self,
        owner_id: int,
        items: Iterable[LineItem],
        expected_version: int,
    ) -> CartSnapshot:
        cart = CartSnapshot(
            owner_id=owner_id,
            items=tuple(items),
            version=expected_version + 1,
        )
        result = await self.session.execute(
            update(Cart)
            .where(Cart.owner_id == owner_id, Cart.version == expected_version)
            .values(
                items=[item.to_dict() for item in cart.items],
                subtotal=cart.subtotal,
                total_items=cart.total_items,
                version=cart.version,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount
        # Ends the transaction either way; nothing was written on a miss
        await self.session.commit()

        if updated != 1:
            raise ConflictError(
                f"Cart for owner {owner_id} changed (expected v{expected_version})"
            )
        return cart


class SqlMenuCatalog(MenuCatalog):
    """Menu lookups on the ``menu_items`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_item(self, menu_item_id: int) -> Optional[MenuItemView]:
        # Stock moves under other sessions; re-read the row
        item = await self.session.get(MenuItem, menu_item_id, populate_existing=True)
        return menu_item_view(item) if item else None
