"""
Cart Aggregator

All cart mutations go through here. Each one is a read-modify-write on a
``CartSnapshot`` that is saved with a version check; a lost race re-reads
the cart and re-applies the change, up to ``cart_max_retries`` attempts.

Pricing always comes from the menu catalog, never from the client.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from typing import Callable, Iterable, Mapping, Optional

from ordering.core.config import Settings, get_settings
from ordering.core.errors import ConflictError, InvalidArgumentError, NotFoundError
from ordering.services.cart.base import (
    CartChanged,
    CartEventBus,
    CartRepository,
    CartSnapshot,
    CartTotals,
    LineItem,
    MenuCatalog,
    MenuItemView,
)

logger = logging.getLogger(__name__)

Change = Callable[[CartSnapshot], tuple[LineItem, ...]]


class CartAggregator:
    """
    Per-owner cart operations.

    Args:
        repository: Where carts are stored
        catalog: Menu lookups for pricing and validation
        settings: Tax rate, quantity cap and retry limit
        events: Bus that receives a ``CartChanged`` after every committed write
    """

    def __init__(
        self,
        repository: CartRepository,
        catalog: MenuCatalog,
        settings: Optional[Settings] = None,
        events: Optional[CartEventBus] = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.events = events or CartEventBus()

    # =========================================================================
    # READS
    # =========================================================================

    async def get_cart(self, owner_id: int) -> CartSnapshot:
        """Return the owner's cart, creating an empty one if absent."""
        cart = await self.repository.load(owner_id)
        if cart is None:
            cart = await self.repository.create(owner_id)
        return cart

    def totals_for(self, cart: CartSnapshot) -> CartTotals:
        subtotal = cart.subtotal
        tax = round(subtotal * self.settings.tax_rate, 2)
        return CartTotals(
            subtotal=subtotal,
            tax=tax,
            total=round(subtotal + tax, 2),
            total_items=cart.total_items,
            tax_rate=self.settings.tax_rate,
        )

    async def compute_totals(self, owner_id: int) -> CartTotals:
        return self.totals_for(await self.get_cart(owner_id))

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def add_item(
        self,
        owner_id: int,
        menu_item_id: int,
        quantity: int = 1,
        size: Optional[str] = None,
        addon_ids: Iterable[str] = (),
        instructions: Optional[str] = None,
    ) -> CartSnapshot:
        """
        Add a product to the cart, merging into an identical line if present.

        Raises:
            NotFoundError: Menu item missing or no longer orderable
            InvalidArgumentError: Bad quantity, size or add-on, or not enough stock
        """
        self._check_quantity(quantity, minimum=1)

        menu_item = await self.catalog.get_item(menu_item_id)
        if menu_item is None or not menu_item.is_orderable:
            raise NotFoundError(f"Menu item {menu_item_id} not found")

        candidate = self._build_line(menu_item, quantity, size, addon_ids, instructions)

        def change(cart: CartSnapshot) -> tuple[LineItem, ...]:
            items = list(cart.items)
            for index, existing in enumerate(items):
                if existing.merge_key == candidate.merge_key:
                    merged = existing.quantity + candidate.quantity
                    self._check_quantity(merged, minimum=1)
                    items[index] = existing.with_quantity(merged)
                    break
            else:
                items.append(candidate)
            self._check_stock(menu_item, items)
            return tuple(items)

        cart = await self._mutate(owner_id, change)
        logger.info(f"Owner {owner_id}: added {quantity} x {menu_item.name}")
        return cart

    async def update_quantity(self, owner_id: int, line_id: str, quantity: int) -> CartSnapshot:
        """Set a line's quantity; 0 removes the line."""
        if quantity == 0:
            return await self.remove_item(owner_id, line_id)
        self._check_quantity(quantity, minimum=1)

        line = (await self.get_cart(owner_id)).find(line_id)
        if line is None:
            raise NotFoundError(f"Cart item {line_id} not found")
        menu_item = await self.catalog.get_item(line.menu_item_id)

        def change(cart: CartSnapshot) -> tuple[LineItem, ...]:
            current = cart.find(line_id)
            if current is None:
                raise NotFoundError(f"Cart item {line_id} not found")
            items = tuple(
                item.with_quantity(quantity) if item.line_id == line_id else item
                for item in cart.items
            )
            # Lowering a quantity is always allowed
            if menu_item is not None and quantity > current.quantity:
                self._check_stock(menu_item, items)
            return items

        return await self._mutate(owner_id, change)

    async def remove_item(self, owner_id: int, line_id: str) -> CartSnapshot:
        def change(cart: CartSnapshot) -> tuple[LineItem, ...]:
            if cart.find(line_id) is None:
                raise NotFoundError(f"Cart item {line_id} not found")
            return tuple(item for item in cart.items if item.line_id != line_id)

        return await self._mutate(owner_id, change)

    async def remove_lines(self, owner_id: int, ordered: Mapping[str, int]) -> CartSnapshot:
        """
        Take checked-out units out of the cart.

        ``ordered`` maps line id to the quantity that was ordered. Units
        merged into a line after the order snapshot stay in the cart; a line
        is dropped once nothing is left of it. Ids no longer in the cart are
        ignored.
        """
        ordered = dict(ordered)

        def change(cart: CartSnapshot) -> tuple[LineItem, ...]:
            items = []
            for item in cart.items:
                remaining = item.quantity - ordered.get(item.line_id, 0)
                if remaining == item.quantity:
                    items.append(item)
                elif remaining > 0:
                    items.append(item.with_quantity(remaining))
            return tuple(items)

        return await self._mutate(owner_id, change)

    async def clear(self, owner_id: int) -> CartSnapshot:
        return await self._mutate(owner_id, lambda cart: ())

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _check_quantity(self, quantity: int, minimum: int) -> None:
        if quantity < minimum:
            raise InvalidArgumentError(f"Quantity must be at least {minimum}")
        if quantity > self.settings.max_item_quantity:
            raise InvalidArgumentError(
                f"Quantity cannot exceed {self.settings.max_item_quantity}"
            )

    @staticmethod
    def _check_stock(menu_item: MenuItemView, items: Iterable[LineItem]) -> None:
        """Units of one menu item across all its lines must fit its stock."""
        if menu_item.stock is None:
            return
        wanted = sum(item.quantity for item in items if item.menu_item_id == menu_item.id)
        if wanted > menu_item.stock:
            if menu_item.stock <= 0:
                raise InvalidArgumentError(f"{menu_item.name} is out of stock")
            raise InvalidArgumentError(
                f"Only {menu_item.stock} x {menu_item.name} left in stock"
            )

    @staticmethod
    def _build_line(
        menu_item: MenuItemView,
        quantity: int,
        size: Optional[str],
        addon_ids: Iterable[str],
        instructions: Optional[str],
    ) -> LineItem:
        if size is not None and size not in menu_item.sizes:
            raise InvalidArgumentError(
                f"Size '{size}' is not offered for {menu_item.name}"
            )
        if size is None and menu_item.sizes:
            size = menu_item.sizes[0]

        addons = {}
        for addon_id in addon_ids:
            option = menu_item.addons.get(str(addon_id))
            if option is None:
                raise InvalidArgumentError(
                    f"Add-on '{addon_id}' is not offered for {menu_item.name}"
                )
            addons[option.id] = option.price

        instructions = (instructions or "").strip() or None
        return LineItem(
            line_id=LineItem.new_line_id(),
            menu_item_id=menu_item.id,
            name=menu_item.name,
            unit_price=menu_item.price,
            quantity=quantity,
            size=size,
            addons=addons,
            instructions=instructions,
            is_vegetarian=menu_item.is_vegetarian,
        )

    async def _mutate(self, owner_id: int, change: Change) -> CartSnapshot:
        attempts = self.settings.cart_max_retries
        for attempt in range(1, attempts + 1):
            cart = await self.get_cart(owner_id)
            items = change(cart)
            if items == cart.items:
                return cart
            try:
                saved = await self.repository.save(owner_id, items, expected_version=cart.version)
            except ConflictError:
                logger.warning(
                    f"Owner {owner_id}: cart v{cart.version} changed concurrently "
                    f"(attempt {attempt}/{attempts})"
                )
                continue
            self.events.publish(CartChanged(owner_id=owner_id, cart=saved))
            return saved

        raise ConflictError(
            f"Cart for owner {owner_id} kept changing; gave up after {attempts} attempts"
        )
