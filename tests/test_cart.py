import asyncio

import pytest

from ordering.core.config import get_settings
from ordering.core.errors import ConflictError, InvalidArgumentError, NotFoundError
from ordering.core.permissions import Role
from ordering.services.cart import (
    CartAggregator,
    CartChanged,
    CartEventBus,
    InMemoryCartRepository,
    StaticMenuCatalog,
    build_cart_aggregator,
)
from ordering.services.cart.base import LineItem, MenuItemView
from tests.utils.factories import margherita_view

owner_id = 42

wings_view = MenuItemView(id=2, name="Chicken Wings", price=8.25, is_vegetarian=False)
sold_out_view = MenuItemView(id=3, name="Truffle Fries", price=6.0, is_available=False)


class RacingCartRepository(InMemoryCartRepository):
    """Slips a competing write in before the next ``interferences`` saves."""

    def __init__(self, interferences: int, competing_line: LineItem):
        super().__init__()
        self.interferences = interferences
        self.competing_line = competing_line
        self.save_calls = 0

    async def save(self, owner_id, items, expected_version):
        self.save_calls += 1
        if self.interferences > 0:
            self.interferences -= 1
            current = await self.load(owner_id)
            await super().save(owner_id, current.items + (self.competing_line,), current.version)
        return await super().save(owner_id, items, expected_version)


class YieldingCartRepository(InMemoryCartRepository):
    """Suspends on every read so concurrent mutations interleave."""

    async def load(self, owner_id):
        await asyncio.sleep(0)
        return await super().load(owner_id)


def competing_wings_line() -> LineItem:
    return LineItem(
        line_id=LineItem.new_line_id(),
        menu_item_id=wings_view.id,
        name=wings_view.name,
        unit_price=wings_view.price,
        quantity=1,
    )


@pytest.fixture
def catalog():
    return StaticMenuCatalog([margherita_view(), wings_view, sold_out_view])


@pytest.fixture
def events():
    return CartEventBus()


@pytest.fixture
def carts(catalog, events):
    return CartAggregator(InMemoryCartRepository(), catalog, settings=get_settings(), events=events)


async def test_get_cart_creates_empty_cart(carts):
    cart = await carts.get_cart(owner_id)

    assert cart.owner_id == owner_id
    assert cart.items == ()
    assert cart.version == 0
    assert cart.subtotal == 0


async def test_identical_adds_merge_into_one_line(carts):
    await carts.add_item(owner_id, menu_item_id=1, quantity=1)
    cart = await carts.add_item(owner_id, menu_item_id=1, quantity=2)

    assert len(cart.items) == 1
    assert cart.items[0].quantity == 3
    assert cart.items[0].size == "Regular", "first listed size is the default"


async def test_lines_split_on_size_addons_and_instructions(carts):
    await carts.add_item(owner_id, menu_item_id=1)
    await carts.add_item(owner_id, menu_item_id=1, size="Large")
    await carts.add_item(owner_id, menu_item_id=1, addon_ids=["x-cheese"])
    await carts.add_item(owner_id, menu_item_id=1, instructions="well done")
    cart = await carts.add_item(owner_id, menu_item_id=1, instructions="  well done ")

    assert len(cart.items) == 4
    assert [line.quantity for line in cart.items] == [1, 1, 1, 2]


async def test_subtotal_and_totals(carts):
    await carts.add_item(owner_id, menu_item_id=1, quantity=2, addon_ids=["x-cheese"])
    cart = await carts.add_item(owner_id, menu_item_id=2)

    assert cart.subtotal == sum(line.item_total for line in cart.items)
    assert cart.subtotal == 31.25
    assert cart.total_items == 3

    totals = await carts.compute_totals(owner_id)
    assert totals.tax == 2.5
    assert totals.total == 33.75
    assert totals.tax_rate == get_settings().tax_rate


async def test_prices_come_from_catalog(carts, catalog):
    cart = await carts.add_item(owner_id, menu_item_id=1)
    assert cart.items[0].unit_price == 10.0

    catalog.add(margherita_view(price=12.0))
    cart = await carts.add_item(owner_id, menu_item_id=1, size="Large")
    assert cart.items[1].unit_price == 12.0


@pytest.mark.parametrize("menu_item_id", [99, sold_out_view.id])
async def test_add_unknown_or_unavailable_item(carts, menu_item_id):
    with pytest.raises(NotFoundError):
        await carts.add_item(owner_id, menu_item_id=menu_item_id)


@pytest.mark.parametrize("kwargs", [
    {"quantity": 0},
    {"quantity": -2},
    {"quantity": 11},
    {"size": "Family"},
    {"addon_ids": ["anchovies"]},
])
async def test_add_rejects_bad_arguments(carts, kwargs):
    with pytest.raises(InvalidArgumentError):
        await carts.add_item(owner_id, menu_item_id=1, **kwargs)

    cart = await carts.get_cart(owner_id)
    assert cart.is_empty


async def test_merge_respects_quantity_cap(carts):
    await carts.add_item(owner_id, menu_item_id=1, quantity=6)

    with pytest.raises(InvalidArgumentError):
        await carts.add_item(owner_id, menu_item_id=1, quantity=5)

    cart = await carts.get_cart(owner_id)
    assert cart.items[0].quantity == 6


async def test_update_quantity_zero_is_remove(carts):
    await carts.add_item(owner_id, menu_item_id=1)
    cart = await carts.add_item(owner_id, menu_item_id=2)
    line_id = cart.items[0].line_id

    cart = await carts.update_quantity(owner_id, line_id, 0)

    assert [line.menu_item_id for line in cart.items] == [2]
    with pytest.raises(NotFoundError):
        await carts.update_quantity(owner_id, line_id, 0)


async def test_update_quantity(carts):
    cart = await carts.add_item(owner_id, menu_item_id=2)
    cart = await carts.update_quantity(owner_id, cart.items[0].line_id, 4)

    assert cart.items[0].quantity == 4
    assert cart.subtotal == 33.0

    with pytest.raises(InvalidArgumentError):
        await carts.update_quantity(owner_id, cart.items[0].line_id, -1)


async def test_remove_unknown_line(carts):
    with pytest.raises(NotFoundError):
        await carts.remove_item(owner_id, "does-not-exist")


async def test_remove_lines_is_idempotent(carts):
    await carts.add_item(owner_id, menu_item_id=1)
    cart = await carts.add_item(owner_id, menu_item_id=2)
    doomed = [cart.items[0].line_id, "never-existed"]

    cart = await carts.remove_lines(owner_id, {line_id: 1 for line_id in doomed})
    again = await carts.remove_lines(owner_id, {line_id: 1 for line_id in doomed})

    assert [line.menu_item_id for line in cart.items] == [2]
    assert again.version == cart.version


async def test_remove_lines_keeps_units_added_after_the_snapshot(carts):
    cart = await carts.add_item(owner_id, menu_item_id=2)
    ordered = {cart.items[0].line_id: cart.items[0].quantity}
    await carts.add_item(owner_id, menu_item_id=2, quantity=2)

    cart = await carts.remove_lines(owner_id, ordered)

    assert [(line.menu_item_id, line.quantity) for line in cart.items] == [(2, 2)]


async def test_add_respects_stock_across_lines(carts, catalog):
    catalog.add(margherita_view(stock=3))
    await carts.add_item(owner_id, menu_item_id=1, quantity=2)

    with pytest.raises(InvalidArgumentError):
        await carts.add_item(owner_id, menu_item_id=1, size="Large", quantity=2)

    cart = await carts.add_item(owner_id, menu_item_id=1, size="Large")
    assert cart.total_items == 3


async def test_add_out_of_stock(carts, catalog):
    catalog.add(margherita_view(stock=0))

    with pytest.raises(InvalidArgumentError):
        await carts.add_item(owner_id, menu_item_id=1)

    assert (await carts.get_cart(owner_id)).is_empty


async def test_update_quantity_respects_stock(carts, catalog):
    cart = await carts.add_item(owner_id, menu_item_id=1, quantity=3)
    line_id = cart.items[0].line_id
    catalog.add(margherita_view(stock=2))

    with pytest.raises(InvalidArgumentError):
        await carts.update_quantity(owner_id, line_id, 4)

    cart = await carts.update_quantity(owner_id, line_id, 2)
    assert cart.items[0].quantity == 2


async def test_clear(carts):
    await carts.add_item(owner_id, menu_item_id=1)
    cart = await carts.clear(owner_id)

    assert cart.is_empty
    assert cart.total_items == 0


async def test_lost_race_is_retried(catalog, events):
    repository = RacingCartRepository(interferences=1, competing_line=competing_wings_line())
    carts = CartAggregator(repository, catalog, settings=get_settings(), events=events)

    cart = await carts.add_item(owner_id, menu_item_id=1)

    assert sorted(line.menu_item_id for line in cart.items) == [1, 2]
    assert repository.save_calls == 2
    assert cart.items[-1].menu_item_id == 1


async def test_gives_up_after_max_retries(catalog, events):
    settings = get_settings()
    repository = RacingCartRepository(interferences=100, competing_line=competing_wings_line())
    carts = CartAggregator(repository, catalog, settings=settings, events=events)

    with pytest.raises(ConflictError):
        await carts.add_item(owner_id, menu_item_id=1)

    assert repository.save_calls == settings.cart_max_retries


async def test_concurrent_adds_are_not_lost(catalog, events):
    carts = CartAggregator(YieldingCartRepository(), catalog, settings=get_settings(), events=events)
    await carts.get_cart(owner_id)

    await asyncio.gather(*(carts.add_item(owner_id, menu_item_id=1) for _ in range(4)))

    cart = await carts.get_cart(owner_id)
    assert len(cart.items) == 1
    assert cart.items[0].quantity == 4
    assert cart.version == 4


async def test_events_published_after_each_write(carts, events):
    received = []
    events.subscribe(received.append)

    await carts.add_item(owner_id, menu_item_id=1)
    cart = await carts.add_item(owner_id, menu_item_id=1)
    await carts.remove_lines(owner_id, {"never-existed": 1})

    assert len(received) == 2
    assert received[-1] == CartChanged(owner_id=owner_id, cart=cart)


async def test_observers_may_unsubscribe_during_publish(carts, events):
    received = []

    def once(event):
        received.append(("once", event.cart.version))
        unsubscribe_once()

    def failing(event):
        raise RuntimeError("observer bug")

    unsubscribe_once = events.subscribe(once)
    events.subscribe(failing)
    events.subscribe(lambda event: received.append(("always", event.cart.version)))

    await carts.add_item(owner_id, menu_item_id=1)
    await carts.add_item(owner_id, menu_item_id=2)

    assert received == [("once", 1), ("always", 1), ("always", 2)]
    assert len(events) == 2


async def test_sql_backend(db, staff, menu):
    owner = staff[Role.CUSTOMER]
    carts = build_cart_aggregator(db)

    await carts.add_item(owner.id, menu_item_id=menu["margherita"].id, addon_ids=["x-cheese"])
    cart = await carts.add_item(owner.id, menu_item_id=menu["margherita"].id, addon_ids=["x-cheese"])
    assert cart.version == 2
    assert cart.items[0].quantity == 2

    reloaded = await build_cart_aggregator(db).get_cart(owner.id)
    assert reloaded == cart

    with pytest.raises(ConflictError):
        await carts.repository.save(owner.id, (), expected_version=1)
