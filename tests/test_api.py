import pytest
from sqlalchemy import func, select

from ordering.core.permissions import Role
from ordering.models import User
from ordering.services.notifications import get_notifier
from tests.utils.request_utils import make_request


class FakeClient:
    def __init__(self):
        self.received = []

    async def send_json(self, data):
        self.received.append(data)


async def start_guest_session(client) -> str:
    response = await make_request(client, "/api/guest/session", method="POST")
    assert response.status_code == 200, response.text
    return response.json()["session_id"]


async def guest_checkout(client, session_id, menu_item_id, order_type="pickup") -> dict:
    response = await make_request(client, "/api/cart/items", method="POST", session_id=session_id,
                                  json_body={"menu_item_id": menu_item_id, "quantity": 2})
    assert response.status_code == 200, response.text

    response = await make_request(client, "/api/checkout", method="POST", session_id=session_id,
                                  json_body={"order_type": order_type})
    assert response.status_code == 201, response.text
    return response.json()["order"]


async def test_root_and_health(client):
    root = await make_request(client, "/")
    health = await make_request(client, "/health")

    assert root.status_code == 200
    assert health.status_code == 200
    assert health.json()["status"] == "operational"


async def test_guest_cart_and_checkout_flow(client, menu):
    session_id = await start_guest_session(client)

    cart = await make_request(client, "/api/cart", session_id=session_id)
    assert cart.json()["items"] == []

    response = await make_request(client, "/api/cart/items", method="POST", session_id=session_id,
                                  json_body={"menu_item_id": menu["margherita"].id, "addon_ids": ["x-cheese"]})
    line = response.json()["items"][0]
    assert line["item_total"] == 11.5

    response = await make_request(client, f"/api/cart/items/{line['line_id']}", method="PUT",
                                  session_id=session_id, json_body={"quantity": 3})
    assert response.json()["subtotal"] == 34.5

    totals = await make_request(client, "/api/cart/totals", session_id=session_id)
    assert totals.json() == {"subtotal": 34.5, "tax": 2.76, "total": 37.26, "total_items": 3, "tax_rate": 0.08}

    response = await make_request(client, "/api/checkout", method="POST", session_id=session_id,
                                  json_body={"order_type": "delivery", "delivery_address": "1 Main St"})
    assert response.status_code == 201, response.text
    order = response.json()["order"]
    assert order["customer_type"] == "guest"
    assert order["delivery_fee"] == 5.99
    assert order["status"] == "placed"

    cart = await make_request(client, "/api/cart", session_id=session_id)
    assert cart.json()["items"] == []

    mine = await make_request(client, "/api/guest/orders", session_id=session_id)
    assert mine.json()["total"] == 1

    own = await make_request(client, f"/api/orders/{order['order_number']}", session_id=session_id)
    assert own.status_code == 200

    tracked = await make_request(client, f"/api/orders/{order['order_number']}/track")
    assert tracked.json()["data"]["status"] == "placed"


async def test_other_guests_cannot_read_an_order(client, menu):
    owner = await start_guest_session(client)
    order = await guest_checkout(client, owner, menu["salad"].id)
    stranger = await start_guest_session(client)

    response = await make_request(client, f"/api/orders/{order['order_number']}", session_id=stranger)

    assert response.status_code == 404


async def test_errors_use_standard_payload(client, menu):
    session_id = await start_guest_session(client)

    unauthenticated = await make_request(client, "/api/cart")
    assert unauthenticated.status_code == 401
    assert unauthenticated.json()["error"] == "unauthenticated"

    malformed = await make_request(client, "/api/cart", session_id="not-a-session")
    assert malformed.status_code == 400

    missing = await make_request(client, "/api/cart/items", method="POST", session_id=session_id,
                                 json_body={"menu_item_id": 999})
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "error": "not_found", "detail": "Menu item 999 not found"}

    invalid = await make_request(client, "/api/cart/items", method="POST", session_id=session_id,
                                 json_body={"menu_item_id": "abc"})
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "invalid_argument"

    empty = await make_request(client, "/api/checkout", method="POST", session_id=session_id,
                               json_body={"order_type": "pickup"})
    assert empty.status_code == 400


async def test_guest_promotion(client):
    session_id = await start_guest_session(client)

    await make_request(client, "/api/guest/me", method="PUT", session_id=session_id,
                       json_body={"name": "Jane", "email": "jane@example.com"})
    response = await make_request(client, "/api/guest/promote", method="POST", session_id=session_id,
                                  json_body={"password": "correct-horse"})
    assert response.status_code == 200, response.text
    promoted = response.json()
    assert promoted["user"]["role"] == "customer"
    assert promoted["user"]["email"] == "jane@example.com"
    assert promoted["token_type"] == "bearer"

    gone = await make_request(client, "/api/guest/me", session_id=session_id)
    assert gone.status_code == 404

    as_customer = await make_request(client, "/api/cart", authorization=f"Bearer {promoted['access_token']}")
    assert as_customer.status_code == 200


async def test_admin_order_workflow(client, staff, menu):
    session_id = await start_guest_session(client)
    veg_order = await guest_checkout(client, session_id, menu["salad"].id)
    non_veg_order = await guest_checkout(client, session_id, menu["wings"].id)
    veg_admin = staff[Role.VEG_ADMIN].id

    dashboard = FakeClient()
    get_notifier().room.join(dashboard)

    response = await make_request(client, f"/api/admin/orders/{veg_order['id']}/status", method="PATCH",
                                  user_id=veg_admin, json_body={"status": "confirmed"})
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "confirmed"
    assert dashboard.received[-1]["event"] == "orderUpdated"
    assert dashboard.received[-1]["data"]["order_number"] == veg_order["order_number"]

    forbidden = await make_request(client, f"/api/admin/orders/{non_veg_order['id']}/status", method="PATCH",
                                   user_id=veg_admin, json_body={"status": "confirmed"})
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "forbidden"

    skipped = await make_request(client, f"/api/admin/orders/{veg_order['id']}/status", method="PATCH",
                                 user_id=veg_admin, json_body={"status": "completed"})
    assert skipped.status_code == 409
    assert skipped.json()["error"] == "invalid_state_transition"

    listing = await make_request(client, "/api/admin/orders", user_id=veg_admin, params={"status": "confirmed"})
    assert listing.json()["total"] == 1

    not_admin = await make_request(client, "/api/admin/orders", user_id=staff[Role.CUSTOMER].id)
    assert not_admin.status_code == 403


async def test_admin_catalog_partitions(client, staff, menu):
    veg_admin = staff[Role.VEG_ADMIN].id

    created = await make_request(client, "/api/admin/menu-items", method="POST", user_id=veg_admin,
                                 json_body={"name": "Paneer Tikka", "price": 12.5, "category_id": menu["veg"].id,
                                            "stock": 4, "addons": [{"name": "Mint chutney", "price": 0.75}]})
    assert created.status_code == 201, created.text
    assert created.json()["is_vegetarian"] is True
    assert created.json()["stock"] == 4
    assert created.json()["addons"][0]["id"]

    forbidden = await make_request(client, f"/api/admin/menu-items/{menu['wings'].id}", method="PUT",
                                   user_id=veg_admin, json_body={"price": 1.0})
    assert forbidden.status_code == 403

    editable = await make_request(client, "/api/admin/menu-items", user_id=veg_admin, params={"editable_only": True})
    assert all(item["is_vegetarian"] for item in editable.json())

    public = await make_request(client, "/api/menu", params={"vegetarian": False})
    assert [item["name"] for item in public.json()] == ["Chicken Wings"]


async def test_admin_users_and_capabilities(client, staff):
    super_admin = staff[Role.SUPER_ADMIN].id
    customer = staff[Role.CUSTOMER].id

    capabilities = await make_request(client, "/api/admin/capabilities", user_id=staff[Role.VEG_ADMIN].id)
    assert capabilities.json()["data"]["me"]["role"] == "veg-admin"

    promoted = await make_request(client, f"/api/admin/users/{customer}/role", method="PATCH",
                                  user_id=super_admin, json_body={"role": "non-veg-admin"})
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "non-veg-admin"

    to_guest = await make_request(client, f"/api/admin/users/{customer}/role", method="PATCH",
                                  user_id=super_admin, json_body={"role": "guest"})
    assert to_guest.status_code == 400

    self_change = await make_request(client, f"/api/admin/users/{super_admin}/role", method="PATCH",
                                     user_id=super_admin, json_body={"role": "customer"})
    assert self_change.status_code == 400

    not_allowed = await make_request(client, "/api/admin/users", user_id=staff[Role.VEG_ADMIN].id)
    assert not_allowed.status_code == 403


async def test_admin_guest_maintenance_and_export(client, staff, menu):
    super_admin = staff[Role.SUPER_ADMIN].id
    session_id = await start_guest_session(client)
    await guest_checkout(client, session_id, menu["salad"].id)

    stats = await make_request(client, "/api/admin/guests/stats", user_id=super_admin)
    assert stats.json()["data"]["total_guest_users"] == 1

    cleanup = await make_request(client, "/api/admin/guests/cleanup", method="POST", user_id=super_admin)
    assert cleanup.json()["data"]["deleted_users"] == 0

    export = await make_request(client, "/api/admin/reports/orders/export", user_id=super_admin,
                                params={"format": "csv"})
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["content-disposition"]
    assert len(export.text.strip().splitlines()) == 2

    order_stats = await make_request(client, "/api/admin/orders/stats", user_id=staff[Role.NON_VEG_ADMIN].id)
    assert order_stats.json()["data"]["total_orders"] == 1


@pytest.mark.parametrize("endpoint", ["/api/admin/guests/cleanup", "/api/admin/reports/orders/export"])
async def test_partition_admins_cannot_run_maintenance(client, staff, endpoint):
    method = "POST" if endpoint.endswith("cleanup") else "GET"

    response = await make_request(client, endpoint, method=method, user_id=staff[Role.VEG_ADMIN].id)

    assert response.status_code == 403


async def test_order_lookup_does_not_create_guests(client, db, menu):
    owner = await start_guest_session(client)
    order = await guest_checkout(client, owner, menu["salad"].id)

    response = await make_request(client, f"/api/orders/{order['order_number']}", session_id="guest_1_abc")

    assert response.status_code == 404
    guests = await db.execute(select(func.count(User.id)).where(User.role == Role.GUEST))
    assert guests.scalar_one() == 1
