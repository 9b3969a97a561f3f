"""
FastAPI Application Entry Point

Restaurant Ordering Platform - carts, checkout and order workflow.

Identity:
    - Authorization: Bearer <token>   registered users and admins
    - X-Guest-Session-Id: guest_...   anonymous guests

Endpoints:
    - /api/guest/*: Guest session, profile, promotion
    - /api/cart/*: Cart for the current guest or user
    - /api/checkout: Convert the cart into an order
    - /api/orders/*: Own orders and public tracking
    - /api/menu, /api/categories: Public menu
    - /api/admin/*: Orders, catalog, users, guests, reports
    - /ws: Admin room (live order events)
    - /health: System health check

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordering.core.config import get_settings, setup_logging
from ordering.core.errors import (
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
    OrderingError,
    UnauthenticatedError,
)
from ordering.core.permissions import (
    Action,
    DietPartition,
    GlobalAction,
    Principal,
    Role,
    capabilities_for,
    capability_table,
    require,
    require_global,
)
from ordering.core.security import create_access_token, decode_access_token
from ordering.database import engine, get_db, get_session_factory, init_db, utcnow
from ordering.models import OrderStatus, User
from ordering.schemas import (
    CartItemAdd,
    CartItemUpdate,
    CartResponse,
    CartTotalsResponse,
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    CheckoutRequest,
    ErrorResponse,
    GuestContactUpdate,
    GuestPromoteRequest,
    GuestSessionResponse,
    HealthResponse,
    MenuItemCreate,
    MenuItemResponse,
    MenuItemUpdate,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
    PromotedUserResponse,
    UserListResponse,
    UserResponse,
    UserRoleUpdate,
)
from ordering.services.cart import CartChanged, CartSnapshot, build_cart_aggregator, get_cart_events
from ordering.services.catalog import CatalogService
from ordering.services.guests import GuestContact, GuestIdentityResolver, generate_session_id
from ordering.services.notifications import get_notifier
from ordering.services.orders import CheckoutDetails, OrderFilters, OrderService
from ordering.services.reports import ReportExporter, ReportFormat, fetch_orders

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


def log_cart_change(event: CartChanged) -> None:
    logger.debug(
        f"Cart for owner {event.owner_id} now v{event.cart.version}: "
        f"{event.cart.total_items} items, subtotal {event.cart.subtotal}"
    )


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("Database initialized")

    notifier = get_notifier()
    await notifier.start()
    logger.info(f"Order Notifier: {notifier.provider_name}")

    unsubscribe = get_cart_events().subscribe(log_cart_change)

    problems = settings.validate_production_config()
    if problems:
        logger.warning(f"Production config still on development defaults: {problems}")

    logger.info("Application ready!")

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    unsubscribe()
    await notifier.stop()
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Restaurant ordering backend: guest and customer carts, checkout, "
        "diet-partitioned order workflow and live admin updates."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


# =============================================================================
# IDENTITY
# =============================================================================

def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthenticatedError("Authorization header must be 'Bearer <token>'")
    return token.strip()


async def user_for_token(db: AsyncSession, token: str) -> User:
    """
    Resolve a signed access token to an active, non-guest user.

    Raises:
        UnauthenticatedError: bad token, or the user is gone, inactive or a guest
    """
    user_id = decode_access_token(token)
    user = await db.get(User, user_id)
    if user is None or not user.is_active or user.is_guest:
        raise UnauthenticatedError("Invalid or expired token")
    return user


async def get_current_user(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Authenticated (bearer) caller."""
    token = parse_bearer(authorization)
    if token is None:
        raise UnauthenticatedError("Authentication required")
    user = await user_for_token(db, token)
    return Principal(user_id=user.id, role=user.role)


async def get_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required")
    return principal


async def get_guest_session_id(
    x_guest_session_id: Optional[str] = Header(None, alias="X-Guest-Session-Id"),
    session_id: Optional[str] = Query(None),
) -> str:
    sid = x_guest_session_id or session_id
    if not sid:
        raise UnauthenticatedError("Guest session id required")
    return sid


async def resolve_owner(
    db: AsyncSession,
    authorization: Optional[str],
    session_id: Optional[str],
    create_guest: bool,
) -> Principal:
    token = parse_bearer(authorization)
    if token is not None:
        user = await user_for_token(db, token)
        return Principal(user_id=user.id, role=user.role)

    if not session_id:
        raise UnauthenticatedError("Authentication or guest session id required")
    guests = GuestIdentityResolver(db)
    guest = await (guests.resolve(session_id) if create_guest else guests.lookup(session_id))
    return Principal(user_id=guest.id, role=Role.GUEST, session_id=session_id)


async def get_cart_owner(
    authorization: Optional[str] = Header(None),
    x_guest_session_id: Optional[str] = Header(None, alias="X-Guest-Session-Id"),
    session_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """
    Bearer user if present, otherwise the guest for the session id.

    A session id seen for the first time creates the guest.
    """
    return await resolve_owner(db, authorization, x_guest_session_id or session_id, create_guest=True)


async def get_existing_owner(
    authorization: Optional[str] = Header(None),
    x_guest_session_id: Optional[str] = Header(None, alias="X-Guest-Session-Id"),
    session_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Read-only variant: an unknown session id is NotFound, nothing is created."""
    return await resolve_owner(db, authorization, x_guest_session_id or session_id, create_guest=False)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def order_service(db: AsyncSession) -> OrderService:
    return OrderService(db, notifier=get_notifier())


def cart_response(cart: CartSnapshot) -> CartResponse:
    return CartResponse(**cart.to_dict())


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "healthy"
    try:
        await db.execute(select(func.count(User.id)))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    notifier = get_notifier()
    notifier_status = "healthy" if await notifier.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, notifier_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        notifier=notifier_status,
        timestamp=utcnow(),
    )


# =============================================================================
# GUEST ENDPOINTS
# =============================================================================

@app.post(
    "/api/guest/session",
    response_model=GuestSessionResponse,
    tags=["Guest"],
    summary="Start a guest session",
)
async def start_guest_session(
    contact: Optional[GuestContactUpdate] = None,
    db: AsyncSession = Depends(get_db),
) -> GuestSessionResponse:
    """Allocate a new guest session id and its guest user."""
    session_id = generate_session_id()
    details = GuestContact(**contact.model_dump()) if contact else None
    guest = await GuestIdentityResolver(db).resolve(session_id, details)
    return GuestSessionResponse(session_id=session_id, user=UserResponse.model_validate(guest))


@app.get("/api/guest/me", response_model=UserResponse, responses=ERROR_RESPONSES, tags=["Guest"])
async def get_guest_profile(
    session_id: str = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    guest = await GuestIdentityResolver(db).lookup(session_id)
    return UserResponse.model_validate(guest)


@app.put("/api/guest/me", response_model=UserResponse, responses=ERROR_RESPONSES, tags=["Guest"])
async def update_guest_profile(
    contact: GuestContactUpdate,
    session_id: str = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    guest = await GuestIdentityResolver(db).update_contact(
        session_id, GuestContact(**contact.model_dump())
    )
    return UserResponse.model_validate(guest)


@app.post(
    "/api/guest/promote",
    response_model=PromotedUserResponse,
    responses=ERROR_RESPONSES,
    tags=["Guest"],
    summary="Convert guest to customer",
)
async def promote_guest(
    body: GuestPromoteRequest,
    session_id: str = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
) -> PromotedUserResponse:
    """
    Turn the guest into a customer account. The session id stops working;
    the cart and past orders stay with the account.
    """
    user = await GuestIdentityResolver(db).promote(
        session_id,
        password=body.password,
        email=body.email,
        name=body.name,
    )
    return PromotedUserResponse(
        user=UserResponse.model_validate(user),
        access_token=create_access_token(user.id),
    )


@app.get("/api/guest/orders", response_model=OrderListResponse, responses=ERROR_RESPONSES, tags=["Guest"])
async def list_guest_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    session_id: str = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    guest = await GuestIdentityResolver(db).lookup(session_id)
    total, orders = await order_service(db).list_for_user(guest.id, skip=skip, limit=limit)
    return OrderListResponse(total=total, orders=[OrderResponse.model_validate(o) for o in orders])


# =============================================================================
# CART ENDPOINTS
# =============================================================================

@app.get("/api/cart", response_model=CartResponse, responses=ERROR_RESPONSES, tags=["Cart"])
async def get_cart(
    owner: Principal = Depends(get_cart_owner),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    """Current cart; an empty one is created if none exists."""
    cart = await build_cart_aggregator(db).get_cart(owner.user_id)
    return cart_response(cart)


@app.get("/api/cart/totals", response_model=CartTotalsResponse, responses=ERROR_RESPONSES, tags=["Cart"])
async def get_cart_totals(
    owner: Principal = Depends(get_cart_owner),
    db: AsyncSession = Depends(get_db),
) -> CartTotalsResponse:
    totals = await build_cart_aggregator(db).compute_totals(owner.user_id)
    return CartTotalsResponse(**totals.to_dict())


@app.post("/api/cart/items", response_model=CartResponse, responses=ERROR_RESPONSES, tags=["Cart"])
async def add_cart_item(
    item: CartItemAdd,
    owner: Principal = Depends(get_cart_owner),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    cart = await build_cart_aggregator(db).add_item(
        owner.user_id,
        menu_item_id=item.menu_item_id,
        quantity=item.quantity,
        size=item.size,
        addon_ids=item.addon_ids,
        instructions=item.instructions,
    )
    return cart_response(cart)


@app.put("/api/cart/items/{line_id}", response_model=CartResponse, responses=ERROR_RESPONSES, tags=["Cart"])
async def update_cart_item(
    line_id: str,
    body: CartItemUpdate,
    owner: Principal = Depends(get_cart_owner),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    """Set a line's quantity; 0 removes it."""
    cart = await build_cart_aggregator(db).update_quantity(owner.user_id, line_id, body.quantity)
    return cart_response(cart)


@app.delete("/api/cart/items/{line_id}", response_model=CartResponse, responses=ERROR_RESPONSES, tags=["Cart"])
async def remove_cart_item(
    line_id: str,
    owner: Principal = Depends(get_cart_owner),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    cart = await build_cart_aggregator(db).remove_item(owner.user_id, line_id)
    return cart_response(cart)


@app.delete("/api/cart", response_model=CartResponse, responses=ERROR_RESPONSES, tags=["Cart"])
async def clear_cart(
    owner: Principal = Depends(get_cart_owner),
    db: AsyncSession = Depends(get_db),
) -> CartResponse:
    cart = await build_cart_aggregator(db).clear(owner.user_id)
    return cart_response(cart)


# =============================================================================
# CHECKOUT & ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/checkout",
    response_model=OrderCreateResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Place an order from the cart",
)
async def checkout(
    body: CheckoutRequest,
    owner: Principal = Depends(get_cart_owner),
    db: AsyncSession = Depends(get_db),
) -> OrderCreateResponse:
    details = CheckoutDetails(**body.model_dump())
    order = await order_service(db).checkout(owner, details, build_cart_aggregator(db))
    return OrderCreateResponse(
        success=True,
        message="Order placed successfully!",
        order=OrderResponse.model_validate(order),
    )


@app.get("/api/orders", response_model=OrderListResponse, responses=ERROR_RESPONSES, tags=["Orders"])
async def list_my_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    total, orders = await order_service(db).list_for_user(principal.user_id, skip=skip, limit=limit)
    return OrderListResponse(total=total, orders=[OrderResponse.model_validate(o) for o in orders])


@app.get("/api/orders/{order_number}", response_model=OrderResponse, responses=ERROR_RESPONSES, tags=["Orders"])
async def get_my_order(
    order_number: str,
    owner: Principal = Depends(get_existing_owner),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await order_service(db).get_by_number(order_number)
    if order.user_id != owner.user_id:
        raise NotFoundError(f"Order {order_number} not found")
    return OrderResponse.model_validate(order)


@app.get("/api/orders/{order_number}/track", responses=ERROR_RESPONSES, tags=["Orders"])
async def track_order(
    order_number: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Public status tracking by order number."""
    return {"success": True, "data": await order_service(db).track(order_number)}


# =============================================================================
# MENU ENDPOINTS
# =============================================================================

@app.get("/api/menu", response_model=list[MenuItemResponse], tags=["Menu"])
async def list_menu(
    vegetarian: Optional[bool] = Query(None),
    category_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> list[MenuItemResponse]:
    items = await CatalogService(db).list_menu(vegetarian=vegetarian, category_id=category_id)
    return [MenuItemResponse.model_validate(i) for i in items]


@app.get("/api/categories", response_model=list[CategoryResponse], tags=["Menu"])
async def list_categories(
    db: AsyncSession = Depends(get_db),
) -> list[CategoryResponse]:
    categories = await CatalogService(db).list_categories()
    return [CategoryResponse.model_validate(c) for c in categories]


# =============================================================================
# ADMIN: CAPABILITIES
# =============================================================================

@app.get("/api/admin/capabilities", responses=ERROR_RESPONSES, tags=["Admin"])
async def get_capabilities(
    principal: Principal = Depends(get_current_user),
) -> dict[str, Any]:
    """The caller's capability row plus the whole table, for the admin UI."""
    return {
        "success": True,
        "data": {
            "me": capabilities_for(principal.role),
            **capability_table(),
        },
    }


# =============================================================================
# ADMIN: ORDERS
# =============================================================================

@app.get("/api/admin/orders", response_model=OrderListResponse, responses=ERROR_RESPONSES, tags=["Admin Orders"])
async def admin_list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    partition: Optional[DietPartition] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    filters = OrderFilters(
        status=status,
        partition=partition,
        search=search,
        date_from=date_from,
        date_to=date_to,
    )
    total, orders = await order_service(db).list_orders(admin, filters, skip=skip, limit=limit)
    return OrderListResponse(total=total, orders=[OrderResponse.model_validate(o) for o in orders])


@app.get("/api/admin/orders/stats", responses=ERROR_RESPONSES, tags=["Admin Orders"])
async def admin_order_stats(
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    require_global(admin.role, GlobalAction.VIEW_ANALYTICS)
    stats = await order_service(db).stats(date_from=date_from, date_to=date_to)
    return {"success": True, "data": stats}


@app.get("/api/admin/orders/{order_id}", response_model=OrderResponse, responses=ERROR_RESPONSES, tags=["Admin Orders"])
async def admin_get_order(
    order_id: int,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await order_service(db).get(order_id)
    require(admin.role, Action.VIEW, order.diet_partition)
    return OrderResponse.model_validate(order)


@app.patch(
    "/api/admin/orders/{order_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Admin Orders"],
    summary="Move an order to its next status",
)
async def admin_update_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await order_service(db).transition(
        order_id,
        body.status,
        actor=admin,
        note=body.note,
        cancel_reason=body.cancel_reason,
    )
    return OrderResponse.model_validate(order)


# =============================================================================
# ADMIN: REPORTS
# =============================================================================

@app.get("/api/admin/reports/orders/export", responses=ERROR_RESPONSES, tags=["Admin Reports"])
async def export_orders_report(
    format: ReportFormat = Query(ReportFormat.CSV),
    status: Optional[OrderStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Download orders as CSV, Excel or PDF."""
    require_global(admin.role, GlobalAction.EXPORT_REPORTS)
    orders = await fetch_orders(db, status=status, date_from=date_from, date_to=date_to)
    report = ReportExporter.export_orders(orders, format)
    return Response(
        content=report.content,
        media_type=report.media_type,
        headers={"Content-Disposition": f'attachment; filename="{report.filename}"'},
    )


# =============================================================================
# ADMIN: CATALOG
# =============================================================================

@app.get("/api/admin/categories", response_model=list[CategoryResponse], responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_list_categories(
    editable_only: bool = Query(False),
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> list[CategoryResponse]:
    categories = await CatalogService(db).admin_categories(admin, editable_only=editable_only)
    return [CategoryResponse.model_validate(c) for c in categories]


@app.post("/api/admin/categories", response_model=CategoryResponse, status_code=201, responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_create_category(
    body: CategoryCreate,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> CategoryResponse:
    category = await CatalogService(db).create_category(admin, body.model_dump())
    return CategoryResponse.model_validate(category)


@app.put("/api/admin/categories/{category_id}", response_model=CategoryResponse, responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_update_category(
    category_id: int,
    body: CategoryUpdate,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> CategoryResponse:
    category = await CatalogService(db).update_category(
        admin, category_id, body.model_dump(exclude_unset=True, exclude_none=True)
    )
    return CategoryResponse.model_validate(category)


@app.delete("/api/admin/categories/{category_id}", responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_delete_category(
    category_id: int,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await CatalogService(db).delete_category(admin, category_id)
    return {"success": True, "message": f"Category #{category_id} deleted"}


@app.get("/api/admin/menu-items", response_model=list[MenuItemResponse], responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_list_menu_items(
    editable_only: bool = Query(False),
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> list[MenuItemResponse]:
    items = await CatalogService(db).admin_menu_items(admin, editable_only=editable_only)
    return [MenuItemResponse.model_validate(i) for i in items]


@app.post("/api/admin/menu-items", response_model=MenuItemResponse, status_code=201, responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_create_menu_item(
    body: MenuItemCreate,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> MenuItemResponse:
    item = await CatalogService(db).create_menu_item(admin, body.model_dump(exclude_none=True))
    return MenuItemResponse.model_validate(item)


@app.put("/api/admin/menu-items/{menu_item_id}", response_model=MenuItemResponse, responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_update_menu_item(
    menu_item_id: int,
    body: MenuItemUpdate,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> MenuItemResponse:
    item = await CatalogService(db).update_menu_item(
        admin, menu_item_id, body.model_dump(exclude_unset=True, exclude_none=True)
    )
    return MenuItemResponse.model_validate(item)


@app.delete("/api/admin/menu-items/{menu_item_id}", responses=ERROR_RESPONSES, tags=["Admin Catalog"])
async def admin_delete_menu_item(
    menu_item_id: int,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await CatalogService(db).delete_menu_item(admin, menu_item_id)
    return {"success": True, "message": f"Menu item #{menu_item_id} deleted"}


# =============================================================================
# ADMIN: USERS & GUESTS
# =============================================================================

@app.get("/api/admin/users", response_model=UserListResponse, responses=ERROR_RESPONSES, tags=["Admin Users"])
async def admin_list_users(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    role: Optional[Role] = Query(None),
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> UserListResponse:
    require_global(admin.role, GlobalAction.VIEW_USERS)

    query = select(User).order_by(User.created_at.desc(), User.id.desc())
    count_query = select(func.count(User.id))
    if role is not None:
        query = query.where(User.role == role)
        count_query = count_query.where(User.role == role)

    total_result = await db.execute(count_query)
    total = total_result.scalar() or 0
    result = await db.execute(query.offset(skip).limit(limit))
    users = result.scalars().all()

    return UserListResponse(total=total, users=[UserResponse.model_validate(u) for u in users])


@app.patch("/api/admin/users/{user_id}/role", response_model=UserResponse, responses=ERROR_RESPONSES, tags=["Admin Users"])
async def admin_update_user_role(
    user_id: int,
    body: UserRoleUpdate,
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    require_global(admin.role, GlobalAction.UPDATE_USER_ROLES)

    if user_id == admin.user_id:
        raise InvalidArgumentError("Admins cannot change their own role")
    if body.role == Role.GUEST:
        raise InvalidArgumentError("Users cannot be demoted to guest")

    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User #{user_id} not found")
    if user.is_guest:
        raise InvalidArgumentError("Guests become customers by promotion, not role changes")

    previous = user.role
    user.role = body.role
    user.updated_at = utcnow()
    await db.commit()
    logger.info(f"User #{user_id} role {previous.value} -> {body.role.value} by #{admin.user_id}")
    return UserResponse.model_validate(user)


@app.get("/api/admin/guests/stats", responses=ERROR_RESPONSES, tags=["Admin Users"])
async def admin_guest_stats(
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    require_global(admin.role, GlobalAction.MANAGE_GUESTS)
    return {"success": True, "data": await GuestIdentityResolver(db).stats()}


@app.post("/api/admin/guests/cleanup", responses=ERROR_RESPONSES, tags=["Admin Users"])
async def admin_cleanup_guests(
    admin: Principal = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Run the stale-guest sweep now instead of waiting for the scheduled job."""
    require_global(admin.role, GlobalAction.MANAGE_GUESTS)
    result = await GuestIdentityResolver(db).cleanup_stale()
    return {"success": True, "data": result.to_dict()}


# =============================================================================
# REAL-TIME ADMIN ROOM
# =============================================================================

@app.websocket("/ws")
async def admin_room_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Live order events for admin dashboards.

    Clients connect with ``?token=...`` and then send
    ``{"event": "joinAdminRoom"}`` / ``{"event": "leaveAdminRoom"}``.
    """
    role = user_id = None
    if token:
        async with session_factory() as db:
            try:
                user = await user_for_token(db, token)
                role, user_id = user.role, user.id
            except UnauthenticatedError as e:
                logger.info(f"WebSocket token rejected: {e.message}")

    if role is None or not role.is_admin:
        logger.warning("WebSocket rejected: missing or non-admin token")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    logger.info(f"WebSocket connected: admin #{user_id} ({role.value})")
    room = get_notifier().room

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Messages must be JSON"}})
                continue

            event = message.get("event") if isinstance(message, dict) else None
            if event == "joinAdminRoom":
                room.join(websocket)
                await websocket.send_json({"event": "joinedAdminRoom", "data": capabilities_for(role)})
            elif event == "leaveAdminRoom":
                room.leave(websocket)
                await websocket.send_json({"event": "leftAdminRoom", "data": {}})
            elif event == "ping":
                await websocket.send_json({"event": "pong", "data": {"timestamp": utcnow().isoformat()}})
            else:
                await websocket.send_json({"event": "error", "data": {"message": f"Unknown event '{event}'"}})

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: admin #{user_id}")
    finally:
        room.leave(websocket)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    """Domain errors carry their own kind and status code."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    error = InvalidArgumentError(problems or "Invalid request")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
