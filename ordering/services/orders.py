"""
Order State Machine

Checkout (cart -> order) and the admin-driven order lifecycle:

    placed -> confirmed -> preparing -> ready -> completed
    placed | confirmed | preparing -> cancelled

Only the immediate successor is a valid forward move; cancelling is only
possible before the order is ready. The actor's role is checked against
the order's diet partition before the transition itself is validated.
Every committed transition is published to the admin room.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ordering.core.config import Settings, get_settings
from ordering.core.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidStateTransitionError,
    NotFoundError,
)
from ordering.core.permissions import Action, DietPartition, Principal, require, visible_partitions
from ordering.database import as_utc, utcnow
from ordering.models import CustomerType, MenuItem, Order, OrderStatus, OrderType, User
from ordering.services.cart import CartAggregator
from ordering.services.guests import is_placeholder_email
from ordering.services.notifications import (
    ORDER_CREATED,
    ORDER_UPDATED,
    BaseOrderNotifier,
    OrderEvent,
)

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

TRANSITIONS: dict[OrderStatus, frozenset] = {
    OrderStatus.PLACED: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Column stamped when an order enters a status
STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

# Extra minutes on top of kitchen time for delivery orders
DELIVERY_BUFFER_MINUTES = 15


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def validate_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransitionError(
            f"Cannot move order from '{current.value}' to '{target.value}'",
            details={
                "current": current.value,
                "allowed": sorted(s.value for s in TRANSITIONS[current]),
            },
        )


# =============================================================================
# CHECKOUT INPUT
# =============================================================================

@dataclass
class CheckoutDetails:
    """What the customer supplies at checkout, beyond the cart itself."""
    order_type: OrderType = OrderType.DELIVERY
    delivery_address: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    special_instructions: Optional[str] = None


@dataclass
class OrderFilters:
    status: Optional[OrderStatus] = None
    partition: Optional[DietPartition] = None
    search: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class OrderService:
    """Checkout, status transitions and order queries over one session."""

    def __init__(
        self,
        session: AsyncSession,
        notifier: BaseOrderNotifier,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.clock = clock

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get(self, order_id: int) -> Order:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order #{order_id} not found")
        return order

    async def get_by_number(self, order_number: str) -> Order:
        result = await self.session.execute(
            select(Order).where(Order.order_number == order_number)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_number} not found")
        return order

    async def list_for_user(self, user_id: int, skip: int = 0, limit: int = 20) -> tuple[int, list[Order]]:
        criteria = [Order.user_id == user_id]
        return await self._page(criteria, skip, limit)

    async def list_orders(
        self,
        actor: Principal,
        filters: Optional[OrderFilters] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[int, list[Order]]:
        """Admin listing, limited to the partitions the actor may view."""
        filters = filters or OrderFilters()
        criteria = [Order.diet_partition.in_(visible_partitions(actor.role))]

        if filters.status is not None:
            criteria.append(Order.status == filters.status)
        if filters.partition is not None:
            criteria.append(Order.diet_partition == filters.partition)
        if filters.date_from is not None:
            criteria.append(Order.created_at >= filters.date_from)
        if filters.date_to is not None:
            criteria.append(Order.created_at <= filters.date_to)
        if filters.search:
            pattern = f"%{filters.search}%"
            criteria.append(or_(
                Order.order_number.ilike(pattern),
                Order.customer_name.ilike(pattern),
                Order.customer_email.ilike(pattern),
            ))

        return await self._page(criteria, skip, limit)

    async def _page(self, criteria: list, skip: int, limit: int) -> tuple[int, list[Order]]:
        total_result = await self.session.execute(select(func.count(Order.id)).where(*criteria))
        total = total_result.scalar() or 0

        result = await self.session.execute(
            select(Order)
            .where(*criteria)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return total, list(result.scalars().all())

    async def track(self, order_number: str) -> dict[str, Any]:
        """Public tracking summary; no customer details."""
        order = await self.get_by_number(order_number)
        now = self.clock()
        eta = as_utc(order.estimated_ready_at)
        remaining = 0
        if eta is not None and eta > now and not order.status.is_terminal:
            remaining = int((eta - now).total_seconds() // 60) + 1

        return {
            "order_number": order.order_number,
            "status": order.status.value,
            "order_type": order.order_type.value,
            "estimated_ready_at": eta.isoformat() if eta else None,
            "time_remaining_minutes": remaining,
            "placed_at": as_utc(order.created_at).isoformat(),
            "history": [
                {"status": entry["status"], "timestamp": entry["timestamp"]}
                for entry in order.status_history or []
            ],
        }

    async def stats(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> dict[str, Any]:
        criteria = []
        if date_from is not None:
            criteria.append(Order.created_at >= date_from)
        if date_to is not None:
            criteria.append(Order.created_at <= date_to)

        counts_result = await self.session.execute(
            select(Order.status, func.count(Order.id)).where(*criteria).group_by(Order.status)
        )
        by_status = {status.value: 0 for status in OrderStatus}
        for status, count in counts_result.all():
            by_status[status.value] = count
        total_orders = sum(by_status.values())

        revenue_criteria = criteria + [Order.status != OrderStatus.CANCELLED]
        revenue_result = await self.session.execute(
            select(func.sum(Order.total_amount), func.avg(Order.total_amount)).where(*revenue_criteria)
        )
        revenue, average = revenue_result.one()

        today_start = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
        today_result = await self.session.execute(
            select(func.count(Order.id)).where(Order.created_at >= today_start, *criteria)
        )

        partition_result = await self.session.execute(
            select(Order.diet_partition, func.count(Order.id)).where(*criteria).group_by(Order.diet_partition)
        )

        return {
            "total_orders": total_orders,
            "orders_today": today_result.scalar() or 0,
            "by_status": by_status,
            "by_partition": {p.value: c for p, c in partition_result.all()},
            "revenue": round(revenue or 0.0, 2),
            "average_order_value": round(average or 0.0, 2),
        }

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def transition(
        self,
        order_id: int,
        target: OrderStatus,
        actor: Principal,
        note: Optional[str] = None,
        cancel_reason: Optional[str] = None,
    ) -> Order:
        """
        Move an order to ``target``.

        Raises:
            NotFoundError: Unknown order
            ForbiddenError: Actor's role may not update this diet partition
            InvalidStateTransitionError: ``target`` is not reachable from the current status
            ConflictError: The order changed status concurrently
        """
        order = await self.get(order_id)
        require(actor.role, Action.UPDATE_ORDER_STATUS, order.diet_partition)

        current = order.status
        validate_transition(current, target)

        now = self.clock()
        entry = {
            "status": target.value,
            "previous_status": current.value,
            "changed_by": actor.user_id,
            "note": note or "",
            "timestamp": now.isoformat(),
        }
        values = {
            "status": target,
            "status_history": list(order.status_history or []) + [entry],
            "updated_at": now,
            STATUS_TIMESTAMPS[target]: now,
        }
        if target == OrderStatus.CANCELLED:
            values["cancel_reason"] = cancel_reason or note

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount
        await self.session.commit()

        if updated != 1:
            raise ConflictError(f"Order #{order_id} changed status concurrently; reload and retry")

        order = await self.get(order_id)
        logger.info(
            f"Order {order.order_number}: {current.value} -> {target.value} "
            f"by user #{actor.user_id} ({actor.role.value})"
        )

        await self.notifier.publish(OrderEvent(
            event=ORDER_UPDATED,
            order_id=order.id,
            order_number=order.order_number,
            status=target.value,
            previous_status=current.value,
            diet_partition=order.diet_partition.value,
            timestamp=now,
        ))
        return order

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def checkout(
        self,
        owner: Principal,
        details: CheckoutDetails,
        carts: CartAggregator,
    ) -> Order:
        """
        Convert the owner's cart into a placed order.

        Stock of tracked dishes is decremented in the same transaction as
        the order insert. The order is committed first, then exactly the
        checked-out units are taken out of the cart; units added to the
        cart meanwhile stay. If that cleanup fails the order stands.

        Raises:
            InvalidArgumentError: Empty cart, unavailable item, missing address, stock
            NotFoundError: Owner no longer exists
        """
        cart = await carts.get_cart(owner.user_id)
        if cart.is_empty:
            raise InvalidArgumentError("Cart is empty")

        if details.order_type == OrderType.DELIVERY and not (details.delivery_address or "").strip():
            raise InvalidArgumentError("A delivery address is required for delivery orders")

        vegetarian_flags = []
        prep_minutes = 0
        demand: dict[int, int] = {}
        for line in cart.items:
            demand[line.menu_item_id] = demand.get(line.menu_item_id, 0) + line.quantity
        tracked: dict[int, int] = {}
        for line in cart.items:
            menu_item = await carts.catalog.get_item(line.menu_item_id)
            if menu_item is None or not menu_item.is_orderable:
                raise InvalidArgumentError(f"{line.name} is no longer available")
            if menu_item.stock is not None:
                if demand[menu_item.id] > menu_item.stock:
                    raise InvalidArgumentError(
                        f"Only {menu_item.stock} x {menu_item.name} left in stock"
                    )
                tracked[menu_item.id] = demand[menu_item.id]
            vegetarian_flags.append(menu_item.is_vegetarian)
            prep_minutes = max(prep_minutes, menu_item.preparation_time)

        user = await self.session.get(User, owner.user_id)
        if user is None:
            raise NotFoundError(f"User #{owner.user_id} not found")

        customer_email = details.customer_email or (
            None if is_placeholder_email(user.email) else user.email
        )
        customer = {
            "user_id": user.id,
            "customer_type": CustomerType.GUEST if owner.is_guest else CustomerType.REGISTERED,
            "customer_name": details.customer_name or user.name,
            "customer_email": customer_email,
            "customer_phone": details.customer_phone or user.phone,
        }

        totals = carts.totals_for(cart)
        delivery_fee = self.delivery_fee_for(details.order_type, totals.subtotal)
        now = self.clock()
        if details.order_type == OrderType.DELIVERY:
            prep_minutes += DELIVERY_BUFFER_MINUTES

        order = None
        for attempt in range(1, self.settings.order_number_retries + 1):
            order_number = await self._next_order_number(now)
            order = Order(
                order_number=order_number,
                order_type=details.order_type,
                delivery_address=details.delivery_address if details.order_type == OrderType.DELIVERY else None,
                special_instructions=details.special_instructions,
                items=[line.to_dict() for line in cart.items],
                diet_partition=DietPartition.of_items(vegetarian_flags),
                subtotal=totals.subtotal,
                tax=totals.tax,
                delivery_fee=delivery_fee,
                total_amount=round(totals.subtotal + totals.tax + delivery_fee, 2),
                status=OrderStatus.PLACED,
                status_history=[{
                    "status": OrderStatus.PLACED.value,
                    "previous_status": None,
                    "changed_by": owner.user_id,
                    "note": "",
                    "timestamp": now.isoformat(),
                }],
                estimated_ready_at=now + timedelta(minutes=prep_minutes),
                created_at=now,
                updated_at=now,
                **customer,
            )
            self.session.add(order)
            try:
                await self._reserve_stock(tracked)
                await self.session.commit()
                break
            except InvalidArgumentError:
                await self.session.rollback()
                raise
            except IntegrityError:
                await self.session.rollback()
                logger.warning(
                    f"Order number {order_number} taken "
                    f"(attempt {attempt}/{self.settings.order_number_retries})"
                )
                order = None

        if order is None:
            raise ConflictError("Could not allocate an order number; please retry")

        logger.info(
            f"Order {order.order_number} placed by user #{owner.user_id}: "
            f"{len(cart.items)} lines, total {order.total_amount}"
        )

        await self.notifier.publish(OrderEvent(
            event=ORDER_CREATED,
            order_id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            diet_partition=order.diet_partition.value,
            timestamp=now,
        ))

        order_id = order.id
        try:
            await carts.remove_lines(owner.user_id, {line.line_id: line.quantity for line in cart.items})
        except Exception as e:
            logger.error(
                f"Order {order.order_number} placed but cart cleanup for "
                f"user #{owner.user_id} failed: {e}"
            )
            await self.session.rollback()
            order = await self.get(order_id)

        return order

    async def _reserve_stock(self, demand: dict[int, int]) -> None:
        """
        Decrement stock for each tracked menu item, or raise if any sold out.

        Each decrement is conditional on enough stock being left, so two
        checkouts racing for the last units cannot both take them.
        """
        for menu_item_id, quantity in sorted(demand.items()):
            result = await self.session.execute(
                update(MenuItem)
                .where(
                    MenuItem.id == menu_item_id,
                    or_(MenuItem.stock.is_(None), MenuItem.stock >= quantity),
                )
                .values(stock=MenuItem.stock - quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidArgumentError(
                    f"Menu item {menu_item_id} sold out while checking out"
                )

    def delivery_fee_for(self, order_type: OrderType, subtotal: float) -> float:
        if order_type == OrderType.PICKUP:
            return 0.0
        if subtotal >= self.settings.free_delivery_threshold:
            return 0.0
        return self.settings.delivery_fee

    async def _next_order_number(self, now: datetime) -> str:
        """Next ``PREFIX-YYYYMMDD-NNNN`` for the day of ``now``."""
        prefix = f"{self.settings.order_number_prefix}-{now:%Y%m%d}-"
        result = await self.session.execute(
            select(func.max(Order.order_number)).where(Order.order_number.like(f"{prefix}%"))
        )
        last = result.scalar()
        sequence = 1
        if last:
            try:
                sequence = int(last.rsplit("-", 1)[1]) + 1
            except ValueError:
                sequence = 1
        return f"{prefix}{sequence:04d}"
