"""
Menu Catalog Administration

Category and menu item CRUD. Every write is checked against the
capability table for the diet partition of the record, both before and
after the change, so an admin cannot move a record out of (or into) a
partition they do not manage.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
import secrets
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ordering.core.errors import InvalidArgumentError, NotFoundError
from ordering.core.permissions import Action, DietPartition, Principal, require, vegetarian_filter
from ordering.database import utcnow
from ordering.models import Category, MenuItem

logger = logging.getLogger(__name__)


def normalize_addons(addons: Optional[list[dict[str, Any]]]) -> list[dict[str, Any]]:
    """Give every add-on a stable id and reject duplicates."""
    normalized = []
    seen = set()
    for addon in addons or []:
        addon_id = str(addon.get("id") or secrets.token_hex(4))
        if addon_id in seen:
            raise InvalidArgumentError(f"Duplicate add-on id '{addon_id}'")
        seen.add(addon_id)
        normalized.append({
            "id": addon_id,
            "name": addon["name"],
            "price": round(float(addon.get("price", 0.0)), 2),
        })
    return normalized


class CatalogService:
    """Categories and menu items over one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # =========================================================================
    # PUBLIC MENU
    # =========================================================================

    async def list_menu(
        self,
        vegetarian: Optional[bool] = None,
        category_id: Optional[int] = None,
    ) -> list[MenuItem]:
        """Items customers can order right now."""
        query = select(MenuItem).where(MenuItem.is_active.is_(True), MenuItem.is_available.is_(True))
        if vegetarian is not None:
            query = query.where(MenuItem.is_vegetarian.is_(vegetarian))
        if category_id is not None:
            query = query.where(MenuItem.category_id == category_id)
        result = await self.session.execute(query.order_by(MenuItem.name))
        return list(result.scalars().all())

    async def list_categories(self, include_inactive: bool = False) -> list[Category]:
        query = select(Category)
        if not include_inactive:
            query = query.where(Category.is_active.is_(True))
        result = await self.session.execute(query.order_by(Category.sort_order, Category.name))
        return list(result.scalars().all())

    # =========================================================================
    # ADMIN LISTINGS
    # =========================================================================

    async def admin_menu_items(self, actor: Principal, editable_only: bool = False) -> list[MenuItem]:
        action = Action.UPDATE if editable_only else Action.VIEW
        query = select(MenuItem)
        flag = vegetarian_filter(actor.role, action)
        if flag is not None:
            query = query.where(MenuItem.is_vegetarian.is_(flag))
        result = await self.session.execute(query.order_by(MenuItem.name))
        return list(result.scalars().all())

    async def admin_categories(self, actor: Principal, editable_only: bool = False) -> list[Category]:
        action = Action.UPDATE if editable_only else Action.VIEW
        query = select(Category)
        flag = vegetarian_filter(actor.role, action)
        if flag is not None:
            query = query.where(Category.is_vegetarian.is_(flag))
        result = await self.session.execute(query.order_by(Category.sort_order, Category.name))
        return list(result.scalars().all())

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def get_category(self, category_id: int) -> Category:
        category = await self.session.get(Category, category_id)
        if category is None:
            raise NotFoundError(f"Category #{category_id} not found")
        return category

    async def create_category(self, actor: Principal, data: dict[str, Any]) -> Category:
        is_vegetarian = bool(data.get("is_vegetarian", False))
        require(actor.role, Action.CREATE, DietPartition.of_flag(is_vegetarian))

        category = Category(**data)
        self.session.add(category)
        await self.session.commit()
        logger.info(f"Category '{category.name}' created by user #{actor.user_id}")
        return category

    async def update_category(self, actor: Principal, category_id: int, changes: dict[str, Any]) -> Category:
        category = await self.get_category(category_id)
        require(actor.role, Action.UPDATE, DietPartition.of_flag(category.is_vegetarian))
        if "is_vegetarian" in changes:
            require(actor.role, Action.UPDATE, DietPartition.of_flag(bool(changes["is_vegetarian"])))

        for key, value in changes.items():
            setattr(category, key, value)
        category.updated_at = utcnow()
        await self.session.commit()
        return category

    async def delete_category(self, actor: Principal, category_id: int) -> None:
        category = await self.get_category(category_id)
        require(actor.role, Action.DELETE, DietPartition.of_flag(category.is_vegetarian))

        await self.session.execute(
            update(MenuItem).where(MenuItem.category_id == category_id).values(category_id=None)
        )
        await self.session.execute(delete(Category).where(Category.id == category_id))
        await self.session.commit()
        logger.info(f"Category #{category_id} deleted by user #{actor.user_id}")

    # =========================================================================
    # MENU ITEMS
    # =========================================================================

    async def get_menu_item(self, menu_item_id: int) -> MenuItem:
        item = await self.session.get(MenuItem, menu_item_id)
        if item is None:
            raise NotFoundError(f"Menu item #{menu_item_id} not found")
        return item

    async def create_menu_item(self, actor: Principal, data: dict[str, Any]) -> MenuItem:
        data = dict(data)
        category_id = data.get("category_id")
        if category_id is not None:
            category = await self.get_category(category_id)
            data.setdefault("is_vegetarian", category.is_vegetarian)
        is_vegetarian = bool(data.get("is_vegetarian", False))
        require(actor.role, Action.CREATE, DietPartition.of_flag(is_vegetarian))

        data["addons"] = normalize_addons(data.get("addons"))
        data["sizes"] = list(data.get("sizes") or [])
        item = MenuItem(**data)
        self.session.add(item)
        await self.session.commit()
        logger.info(f"Menu item '{item.name}' created by user #{actor.user_id}")
        return item

    async def update_menu_item(self, actor: Principal, menu_item_id: int, changes: dict[str, Any]) -> MenuItem:
        item = await self.get_menu_item(menu_item_id)
        require(actor.role, Action.UPDATE, DietPartition.of_flag(item.is_vegetarian))
        if "is_vegetarian" in changes:
            require(actor.role, Action.UPDATE, DietPartition.of_flag(bool(changes["is_vegetarian"])))
        if changes.get("category_id") is not None:
            await self.get_category(changes["category_id"])

        changes = dict(changes)
        if "addons" in changes:
            changes["addons"] = normalize_addons(changes["addons"])
        for key, value in changes.items():
            setattr(item, key, value)
        item.updated_at = utcnow()
        await self.session.commit()
        return item

    async def delete_menu_item(self, actor: Principal, menu_item_id: int) -> None:
        item = await self.get_menu_item(menu_item_id)
        require(actor.role, Action.DELETE, DietPartition.of_flag(item.is_vegetarian))
        await self.session.delete(item)
        await self.session.commit()
        logger.info(f"Menu item #{menu_item_id} deleted by user #{actor.user_id}")
