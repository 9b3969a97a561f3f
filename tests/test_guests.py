from datetime import timedelta

import pytest
from sqlalchemy import select

from ordering.core.errors import ConflictError, InvalidArgumentError, NotFoundError
from ordering.core.permissions import Principal, Role
from ordering.database import utcnow
from ordering.models import Cart, Order, OrderType, User
from ordering.services.cart import build_cart_aggregator
from ordering.services.guests import (
    GuestContact,
    GuestIdentityResolver,
    generate_session_id,
    is_placeholder_email,
    validate_session_id,
)
from ordering.services.notifications import LocalOrderNotifier
from ordering.services.orders import CheckoutDetails, OrderService
from tests.utils.factories import create_test_user

session_id = "guest_123_abc"


@pytest.fixture
def guests(db):
    return GuestIdentityResolver(db)


def resolver_at(db, moment) -> GuestIdentityResolver:
    return GuestIdentityResolver(db, clock=lambda: moment)


def test_session_id_format():
    generated = generate_session_id()

    assert validate_session_id(generated) == generated
    for bad in ["", "guest_", "guest_abc_123", "user_123_abc", "guest_123_xyz"]:
        with pytest.raises(InvalidArgumentError):
            validate_session_id(bad)


def test_placeholder_email():
    assert is_placeholder_email("guest_1712345678901@temp.com")
    assert is_placeholder_email(None)
    assert not is_placeholder_email("jane@example.com")


async def test_resolve_creates_guest_once(guests):
    guest = await guests.resolve(session_id)
    again = await guests.resolve(session_id)

    assert guest.id == again.id
    assert guest.role == Role.GUEST
    assert guest.session_id == session_id
    assert guest.name.startswith("Guest_")
    assert is_placeholder_email(guest.email)


async def test_resolve_with_contact_details(guests):
    await guests.resolve(session_id)
    guest = await guests.resolve(session_id, GuestContact(name="Jane", email="jane@example.com"))

    assert guest.name == "Jane"
    assert guest.email == "jane@example.com"
    assert guest.phone is None


async def test_lookup_unknown_session(guests):
    with pytest.raises(NotFoundError):
        await guests.lookup("guest_999_fff")


async def test_resolve_counts_as_activity(db):
    start = utcnow() - timedelta(days=3)
    await resolver_at(db, start).resolve(session_id)

    guest = await resolver_at(db, utcnow()).resolve(session_id)

    assert guest.updated_at > start


# =============================================================================
# PROMOTION
# =============================================================================

async def test_promote_guest(guests, db, menu):
    guest = await guests.resolve(session_id)
    carts = build_cart_aggregator(db)
    await carts.add_item(guest.id, menu_item_id=menu["salad"].id)

    user = await guests.promote(session_id, password="s3cret-pass", email="jane@example.com", name="Jane")

    assert user.id == guest.id
    assert user.role == Role.CUSTOMER
    assert user.session_id is None
    assert user.email == "jane@example.com"
    assert user.is_email_verified is False
    assert guests.password_context.verify("s3cret-pass", user.password_hash)
    assert not (await carts.get_cart(user.id)).is_empty, "cart survives promotion"

    with pytest.raises(NotFoundError):
        await guests.lookup(session_id)


async def test_promote_keeps_supplied_guest_email(guests):
    await guests.resolve(session_id, GuestContact(email="sam@example.com"))

    user = await guests.promote(session_id, password="long-enough")

    assert user.email == "sam@example.com"


async def test_promote_requires_real_email(guests):
    await guests.resolve(session_id)

    with pytest.raises(InvalidArgumentError):
        await guests.promote(session_id, password="long-enough")


async def test_promote_rejects_short_password(guests):
    await guests.resolve(session_id)

    with pytest.raises(InvalidArgumentError):
        await guests.promote(session_id, password="short", email="jane@example.com")


async def test_promote_rejects_taken_email(guests, staff):
    await guests.resolve(session_id)

    with pytest.raises(ConflictError):
        await guests.promote(session_id, password="long-enough", email="CASEY@example.com")

    guest = await guests.lookup(session_id)
    assert guest.role == Role.GUEST


# =============================================================================
# CLEANUP
# =============================================================================

async def test_cleanup_removes_only_stale_guests(db, menu):
    now = utcnow()
    retention = timedelta(days=7)

    stale = await resolver_at(db, now - retention - timedelta(minutes=1)).resolve("guest_1_aa")
    boundary = await resolver_at(db, now - retention).resolve("guest_2_bb")
    fresh = await resolver_at(db, now - timedelta(days=6)).resolve("guest_3_cc")
    old_customer = await create_test_user(db, Role.CUSTOMER, updated_at=now - timedelta(days=30))

    carts = build_cart_aggregator(db)
    await carts.add_item(stale.id, menu_item_id=menu["salad"].id)
    order = await OrderService(db, notifier=LocalOrderNotifier()).checkout(
        Principal(user_id=stale.id, role=stale.role), CheckoutDetails(order_type=OrderType.PICKUP), carts
    )
    await carts.add_item(stale.id, menu_item_id=menu["wings"].id)
    stale_id = stale.id

    result = await GuestIdentityResolver(db).cleanup_stale(now=now)

    assert result.deleted_users == 1
    assert result.deleted_carts == 1
    assert result.cutoff == now - retention

    remaining = await db.execute(select(User.id))
    remaining_ids = {row[0] for row in remaining.all()}
    assert stale_id not in remaining_ids
    assert {boundary.id, fresh.id, old_customer.id} <= remaining_ids

    carts_left = await db.execute(select(Cart).where(Cart.owner_id == stale_id))
    assert carts_left.scalar_one_or_none() is None

    kept = await db.execute(select(Order.user_id).where(Order.id == order.id))
    assert kept.scalar_one() is None, "orders outlive the guest"


async def test_cleanup_with_nothing_to_do(guests):
    await guests.resolve(session_id)

    result = await guests.cleanup_stale()

    assert result.deleted_users == 0
    assert result.to_dict()["deleted_carts"] == 0


async def test_guest_stats(db):
    now = utcnow()
    await resolver_at(db, now).resolve("guest_1_aa")
    await resolver_at(db, now - timedelta(days=3)).resolve("guest_2_bb")
    await resolver_at(db, now - timedelta(days=10)).resolve("guest_3_cc")

    stats = await resolver_at(db, now).stats()

    assert stats["total_guest_users"] == 3
    assert stats["active_this_week"] == 2
    assert stats["active_today"] >= 1
