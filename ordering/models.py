"""
SQLAlchemy Database Models

One ``users`` table for every role (guests included), the menu catalog,
one cart row per owner and the orders created from carts at checkout.

Author: Khalil Bannouri
Version: 1.0.0
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)

from ordering.core.permissions import DietPartition, Role
from ordering.database import Base, utcnow


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PLACED = "placed"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class OrderType(str, enum.Enum):
    """Order type - Pickup or Delivery."""
    PICKUP = "pickup"
    DELIVERY = "delivery"


class CustomerType(str, enum.Enum):
    GUEST = "guest"
    REGISTERED = "registered"


class User(Base):
    """
    Every account, from anonymous guests to super admins.

    Guests carry a ``session_id`` and a placeholder email until they are
    promoted in place to customers.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # =========================================================================
    # IDENTITY
    # =========================================================================
    name = Column(String(100), nullable=False)
    # Not unique: guest placeholders may collide
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(20), nullable=True)
    role = Column(Enum(Role), default=Role.CUSTOMER, nullable=False, index=True)

    # =========================================================================
    # GUEST SESSION
    # =========================================================================
    session_id = Column(String(100), nullable=True, unique=True, index=True)

    # =========================================================================
    # CREDENTIALS
    # =========================================================================
    password_hash = Column(String(255), nullable=True)
    is_email_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST

    def __repr__(self):
        return f"<User #{self.id} - {self.role.value} - {self.name}>"


class Category(Base):
    """Menu category, scoped to a diet partition."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_vegetarian = Column(Boolean, default=False, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Category #{self.id} - {self.name}>"


class MenuItem(Base):
    """
    A dish on the menu.

    ``sizes`` is a list of size names. ``addons`` is a list of
    ``{"id", "name", "price"}`` objects.
    """
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    price = Column(Float, nullable=False)
    mrp = Column(Float, nullable=True)

    # =========================================================================
    # OPTIONS
    # =========================================================================
    sizes = Column(JSON, nullable=False, default=list)
    addons = Column(JSON, nullable=False, default=list)

    # =========================================================================
    # FLAGS
    # =========================================================================
    is_vegetarian = Column(Boolean, default=False, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    preparation_time = Column(Integer, default=15, nullable=False)  # minutes
    stock = Column(Integer, nullable=True)  # NULL: made to order, not tracked

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name} - {self.price}>"


class Cart(Base):
    """
    Exactly one cart per owner.

    ``items`` holds serialized line items. ``version`` increments on every
    write and guards read-modify-write against lost updates.
    """
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Float, nullable=False, default=0.0)
    total_items = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Cart owner={self.owner_id} v{self.version} - {self.total_items} items>"


class Order(Base):
    """
    An order created from a cart snapshot.

    Line items and pricing are frozen at checkout; only the status (and
    its history and timestamps) changes afterwards.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)

    # =========================================================================
    # CUSTOMER
    # =========================================================================
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    customer_type = Column(Enum(CustomerType), nullable=False, default=CustomerType.REGISTERED)
    customer_name = Column(String(100), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(20), nullable=True)

    # =========================================================================
    # FULFILMENT
    # =========================================================================
    order_type = Column(Enum(OrderType), default=OrderType.DELIVERY, nullable=False, index=True)
    delivery_address = Column(Text, nullable=True)
    special_instructions = Column(Text, nullable=True)
    estimated_ready_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False)
    diet_partition = Column(Enum(DietPartition), nullable=False, index=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False)
    tax = Column(Float, nullable=False)
    delivery_fee = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(Enum(OrderStatus), default=OrderStatus.PLACED, nullable=False, index=True)
    status_history = Column(JSON, nullable=False, default=list)
    cancel_reason = Column(Text, nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    preparing_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Order {self.order_number} - {self.order_type.value} - {self.status.value}>"
