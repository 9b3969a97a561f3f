"""
Cart Abstractions

Value types for cart state, the repository and menu-catalog interfaces the
aggregator depends on, and the ``CartChanged`` publish/subscribe bus.

Design Pattern: Strategy Pattern
    - The aggregator never touches the database directly
    - SQL and in-memory implementations share one interface
    - The owning identity is always an explicit argument

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# MENU VIEW
# =============================================================================

@dataclass(frozen=True)
class AddonOption:
    id: str
    name: str
    price: float


@dataclass(frozen=True)
class MenuItemView:
    """
    Read-only projection of a menu item, as the cart needs it.

    Attributes:
        id: Menu item id
        name: Display name, copied onto line items
        price: Base unit price charged for one unit without add-ons
        sizes: Allowed size names (empty means size is not selectable)
        addons: Allowed add-ons keyed by add-on id
        is_vegetarian: Diet partition flag
        is_active: Listed on the menu
        is_available: Currently orderable
        preparation_time: Minutes, used for ready-time estimates
        stock: Units left; None when the dish is not stock-tracked
    """
    id: int
    name: str
    price: float
    sizes: tuple[str, ...] = ()
    addons: dict[str, AddonOption] = field(default_factory=dict)
    is_vegetarian: bool = False
    is_active: bool = True
    is_available: bool = True
    preparation_time: int = 15
    stock: Optional[int] = None

    @property
    def is_orderable(self) -> bool:
        return self.is_active and self.is_available


# =============================================================================
# CART STATE
# =============================================================================

@dataclass(frozen=True)
class LineItem:
    """
    One line of a cart.

    ``addons`` maps add-on id to the add-on price at the time it was added.
    """
    line_id: str
    menu_item_id: int
    name: str
    unit_price: float
    quantity: int
    size: Optional[str] = None
    addons: dict[str, float] = field(default_factory=dict)
    instructions: Optional[str] = None
    is_vegetarian: bool = False

    @staticmethod
    def new_line_id() -> str:
        return uuid.uuid4().hex

    @property
    def addon_total(self) -> float:
        return round(sum(self.addons.values()), 2)

    @property
    def line_unit_price(self) -> float:
        """Price of one unit including add-ons."""
        return round(self.unit_price + self.addon_total, 2)

    @property
    def item_total(self) -> float:
        return round(self.line_unit_price * self.quantity, 2)

    @property
    def merge_key(self) -> tuple:
        """Lines with equal keys are the same product and merge on add."""
        return (
            self.menu_item_id,
            self.size,
            frozenset(self.addons),
            (self.instructions or "").strip(),
        )

    def with_quantity(self, quantity: int) -> "LineItem":
        return LineItem(
            line_id=self.line_id,
            menu_item_id=self.menu_item_id,
            name=self.name,
            unit_price=self.unit_price,
            quantity=quantity,
            size=self.size,
            addons=dict(self.addons),
            instructions=self.instructions,
            is_vegetarian=self.is_vegetarian,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "line_id": self.line_id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "size": self.size,
            "addons": dict(self.addons),
            "instructions": self.instructions,
            "is_vegetarian": self.is_vegetarian,
            "item_total": self.item_total,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        return cls(
            line_id=data["line_id"],
            menu_item_id=int(data["menu_item_id"]),
            name=data["name"],
            unit_price=float(data["unit_price"]),
            quantity=int(data["quantity"]),
            size=data.get("size"),
            addons={str(k): float(v) for k, v in (data.get("addons") or {}).items()},
            instructions=data.get("instructions"),
            is_vegetarian=bool(data.get("is_vegetarian", False)),
        )


@dataclass(frozen=True)
class CartSnapshot:
    """Immutable view of one owner's cart at a given version."""
    owner_id: int
    items: tuple[LineItem, ...] = ()
    version: int = 0

    @property
    def subtotal(self) -> float:
        return round(sum(item.item_total for item in self.items), 2)

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def find(self, line_id: str) -> Optional[LineItem]:
        for item in self.items:
            if item.line_id == line_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "items": [item.to_dict() for item in self.items],
            "subtotal": self.subtotal,
            "total_items": self.total_items,
            "version": self.version,
        }


@dataclass(frozen=True)
class CartTotals:
    """Result of ``compute_totals``."""
    subtotal: float
    tax: float
    total: float
    total_items: int
    tax_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "total_items": self.total_items,
            "tax_rate": self.tax_rate,
        }


# =============================================================================
# INTERFACES
# =============================================================================

class CartRepository(ABC):
    """
    Persistence for carts.

    ``save`` is a compare-and-swap on ``version``: it must fail with
    ConflictError when the stored version is not ``expected_version``.
    """

    @abstractmethod
    async def load(self, owner_id: int) -> Optional[CartSnapshot]:
        """Return the stored cart, or None when the owner has none."""
        pass

    @abstractmethod
    async def create(self, owner_id: int) -> CartSnapshot:
        """Create an empty cart. Returns the existing cart if one already exists."""
        pass

    @abstractmethod
    async def save(
        self,
        owner_id: int,
        items: Iterable[LineItem],
        expected_version: int,
    ) -> CartSnapshot:
        """Replace the items if the stored version matches; returns the new snapshot."""
        pass


class MenuCatalog(ABC):
    """Menu lookups used to price and validate cart lines."""

    @abstractmethod
    async def get_item(self, menu_item_id: int) -> Optional[MenuItemView]:
        """Return the menu item, or None if it does not exist."""
        pass


# =============================================================================
# CHANGE EVENTS
# =============================================================================

@dataclass(frozen=True)
class CartChanged:
    """Full cart state after a committed mutation."""
    owner_id: int
    cart: CartSnapshot


CartObserver = Callable[[CartChanged], None]


class CartEventBus:
    """
    Synchronous publish/subscribe for ``CartChanged``.

    Each publish delivers to the observers registered at that moment.
    Observers may publish, subscribe or unsubscribe from inside a callback.
    Events carry the whole cart and its version, so applying one twice
    leaves an observer in the same state.
    """

    def __init__(self):
        self._observers: list[CartObserver] = []

    def subscribe(self, observer: CartObserver) -> Callable[[], None]:
        """Register an observer. Returns a function that unregisters it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: CartChanged) -> None:
        for observer in tuple(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception(
                    f"Cart observer {observer!r} failed for owner {event.owner_id}"
                )

    def __len__(self) -> int:
        return len(self._observers)
