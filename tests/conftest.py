import os

# Must be set before ordering.core.config builds its cached settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("NOTIFIER_BACKEND", "local")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ordering.core.permissions import Role
from ordering.database import get_db, get_session_factory, init_db
from ordering.main import app
from ordering.services.cart import reset_cart_events
from ordering.services.notifications import reset_notifier
from tests.utils.factories import create_test_category, create_test_menu_item, create_test_user


@pytest.fixture(autouse=True)
def fresh_singletons(request):
    reset_notifier()
    reset_cart_events()

    def resource_teardown():
        reset_notifier()
        reset_cart_events()
    request.addfinalizer(resource_teardown)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def client(session_maker, request):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_maker
    request.addfinalizer(app.dependency_overrides.clear)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def staff(db):
    """One user per role, keyed by role."""
    return {
        Role.SUPER_ADMIN: await create_test_user(db, Role.SUPER_ADMIN, name="Sam Super"),
        Role.VEG_ADMIN: await create_test_user(db, Role.VEG_ADMIN, name="Vera Veg"),
        Role.NON_VEG_ADMIN: await create_test_user(db, Role.NON_VEG_ADMIN, name="Nico NonVeg"),
        Role.CUSTOMER: await create_test_user(db, Role.CUSTOMER, name="Casey Customer", email="casey@example.com"),
    }


@pytest.fixture
async def menu(db):
    """A small mixed menu: two veg dishes and one non-veg dish."""
    veg = await create_test_category(db, "Pizzas", is_vegetarian=True)
    non_veg = await create_test_category(db, "Grill", is_vegetarian=False)

    margherita = await create_test_menu_item(
        db,
        "Margherita",
        10.0,
        is_vegetarian=True,
        sizes=["Regular", "Large"],
        addons=[{"id": "x-cheese", "name": "Extra cheese", "price": 1.5}],
        preparation_time=20,
    )
    salad = await create_test_menu_item(db, "Garden Salad", 30.0, is_vegetarian=True, preparation_time=5)
    wings = await create_test_menu_item(db, "Chicken Wings", 8.25, is_vegetarian=False, preparation_time=25)
    margherita.category_id = veg.id
    salad.category_id = veg.id
    wings.category_id = non_veg.id
    await db.commit()

    return {"margherita": margherita, "salad": salad, "wings": wings, "veg": veg, "non_veg": non_veg}
