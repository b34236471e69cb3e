from circle_kitchen.database import ORDERS, PRODUCTS, to_object_id

from conftest import checkout_payload


def cart(products, *pairs):
    return [{"id": products[key]["id"], "name": products[key]["name"], "quantity": qty} for key, qty in pairs]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


async def place_order(client, products, **kwargs):
    response = await client.post("/api/checkout", json=checkout_payload(cart(products, ("biryani", 1)), **kwargs))
    assert response.status_code == 200, response.text
    return response.json()


async def test_checkout_response_shape(client, products):
    body = await place_order(client, products)
    assert body["success"] is True
    assert body["order"]["orderNumber"].startswith("ORD-")
    assert body["order"]["totalAmount"] == 10.0
    assert body["order"]["status"] == "pending"
    assert body["customer"]["isNewCustomer"] is True
    assert body["customer"]["email"] == "amira@example.com"
    assert body["customer"]["defaultAddress"]["street"] == "Way 3021"
    assert body["authToken"]


async def test_checkout_errors_are_structured(client, products):
    response = await client.post("/api/checkout", json=checkout_payload(cart(products, ("biryani", 1)), hours=2))
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Booking must be at least 24 hours in advance"}

    ghost = [{"id": "65f000000000000000000000", "name": "Ghost", "quantity": 1}]
    response = await client.post("/api/checkout", json=checkout_payload(ghost))
    assert response.status_code == 400
    assert response.json()["error"] == "Product with ID 65f000000000000000000000 not found"


async def test_malformed_body_is_400(client):
    response = await client.post("/api/checkout", json={"items": [{"id": "x", "quantity": 0}]})
    assert response.status_code == 400
    assert response.json()["success"] is False


async def test_cart_quote(client, products):
    response = await client.post(
        "/api/cart/quote",
        json={"items": cart(products, ("korma", 2), ("naan", 2)), "serviceType": "delivery"},
    )
    body = response.json()
    assert response.status_code == 200
    assert body["subtotal"] == 17.0
    assert body["deliveryFee"] == 1.0
    assert body["total"] == 18.0
    assert body["meetsMinimumOrder"] is True
    assert body["hasMinQuantityIssues"] is True
    assert body["canCheckout"] is False
    korma = body["items"][0]
    assert korma["unitPrice"] == 8.0
    assert korma["priceInfo"]["savingsPercentage"] == 20


async def test_register_login_and_me(client):
    response = await client.post(
        "/api/customers/register",
        json={"email": "omar@example.com", "password": "secret123", "firstName": "Omar", "lastName": "Said", "phone": "+968"},
    )
    assert response.status_code == 200, response.text

    duplicate = await client.post(
        "/api/customers/register",
        json={"email": "OMAR@example.com", "password": "secret123", "firstName": "Omar", "lastName": "Said", "phone": "+968"},
    )
    assert duplicate.status_code == 409

    login = await client.post("/api/customers/login", json={"email": "omar@example.com", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["token"]

    me = await client.get("/api/customers/me", headers=bearer(token))
    assert me.status_code == 200
    assert me.json()["user"]["totalOrders"] == 0

    bad = await client.post("/api/customers/login", json={"email": "omar@example.com", "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json() == {"success": False, "error": "Invalid email or password"}


async def test_receipt_lookup_is_public(client, products):
    body = await place_order(client, products)
    response = await client.get("/api/orders", params={"orderNumber": body["order"]["orderNumber"]})
    assert response.status_code == 200
    receipt = response.json()
    assert receipt["success"] is True
    assert receipt["order"]["orderNumber"] == body["order"]["orderNumber"]
    assert receipt["order"]["items"][0]["name"] == "Chicken Biryani"

    missing = await client.get("/api/orders", params={"orderNumber": "ORD-1"})
    assert missing.status_code == 404


async def test_order_listing_requires_auth(client, products, admin_token):
    body = await place_order(client, products)
    assert (await client.get("/api/orders")).status_code == 401

    own = await client.get("/api/orders", headers=bearer(body["authToken"]))
    assert own.status_code == 200
    assert own.json()["totalDocs"] == 1
    assert [o["orderNumber"] for o in own.json()["orders"]] == [body["order"]["orderNumber"]]

    everyone = await client.get("/api/orders", headers=bearer(admin_token))
    assert everyone.status_code == 200


async def test_cancel_flow(client, products):
    body = await place_order(client, products)
    token = body["authToken"]
    params = {"orderNumber": body["order"]["orderNumber"], "customerId": body["customer"]["id"]}

    anonymous = await client.post("/api/orders/cancel", json=params)
    assert anonymous.status_code == 401

    check = await client.get("/api/orders/cancel", params=params, headers=bearer(token))
    assert check.json()["canCancel"] is True

    response = await client.post("/api/orders/cancel", json={**params, "reason": "Travelling"}, headers=bearer(token))
    assert response.status_code == 200
    assert response.json()["order"]["status"] == "cancelled"

    again = await client.post("/api/orders/cancel", json=params, headers=bearer(token))
    assert again.status_code == 400


async def test_cannot_cancel_other_customers_order(client, products):
    first = await place_order(client, products)
    second = await place_order(client, products, email="other@example.com")
    response = await client.post(
        "/api/orders/cancel",
        json={"orderNumber": first["order"]["orderNumber"], "customerId": first["customer"]["id"]},
        headers=bearer(second["authToken"]),
    )
    assert response.status_code == 403


async def test_admin_status_update_and_history(client, db, products, admin_token):
    body = await place_order(client, products)
    order_id = body["order"]["id"]

    denied = await client.patch(
        "/api/orders", json={"orderId": order_id, "status": "confirmed"}, headers=bearer(body["authToken"])
    )
    assert denied.status_code == 403

    response = await client.patch(
        "/api/orders", json={"orderId": order_id, "status": "preparing", "adminNotes": "On the stove"}, headers=bearer(admin_token)
    )
    assert response.status_code == 200
    assert response.json()["order"]["status"] == "preparing"

    history = await client.get(f"/api/orders/{order_id}/history", headers=bearer(admin_token))
    entries = history.json()["history"]
    assert [e["status"] for e in entries] == ["preparing"]
    assert entries[0]["notes"] == "On the stove"

    cancel = await client.post(
        "/api/orders/cancel",
        json={"orderNumber": body["order"]["orderNumber"], "customerId": body["customer"]["id"]},
        headers=bearer(body["authToken"]),
    )
    assert cancel.status_code == 400
    stored = await db[ORDERS].find_one({"_id": to_object_id(order_id)})
    assert stored["status"] == "preparing"


async def test_customer_order_history(client, products):
    body = await place_order(client, products)
    customer_id = body["customer"]["id"]
    response = await client.get("/api/orders/customer", params={"customerId": customer_id}, headers=bearer(body["authToken"]))
    orders = response.json()["orders"]
    assert len(orders) == 1
    assert orders[0]["items"][0]["category"] == "Curries"

    single = await client.post(
        "/api/orders/customer",
        json={"customerId": customer_id, "orderNumber": body["order"]["orderNumber"]},
        headers=bearer(body["authToken"]),
    )
    assert single.json()["order"]["orderNumber"] == body["order"]["orderNumber"]


async def test_store_config_write_invalidates_cache(client, admin_token):
    before = await client.get("/api/store-config")
    assert before.json()["config"]["storeName"] == "FlavorForge"

    config = before.json()["config"]
    config["storeName"] = "Circle Kitchen"
    denied = await client.put("/api/store-config", json=config)
    assert denied.status_code == 401

    response = await client.put("/api/store-config", json=config, headers=bearer(admin_token))
    assert response.status_code == 200
    after = await client.get("/api/store-config")
    assert after.json()["config"]["storeName"] == "Circle Kitchen"


async def test_products_and_admin_writes(client, products, admin_token, category):
    listing = await client.get("/api/products", params={"onOffer": "true"})
    names = [p["name"] for p in listing.json()["docs"]]
    assert names == ["Veg Korma"]

    detail = await client.get(f"/api/products/{products['korma']['id']}")
    assert detail.json()["priceInfo"]["effectivePrice"] == 8.0

    bad = await client.post(
        "/api/products",
        json={"name": "Samosa", "price": 1.0, "isOnOffer": True, "discountType": "fixed", "discountValue": 2},
        headers=bearer(admin_token),
    )
    assert bad.status_code == 400

    created = await client.post(
        "/api/products",
        json={"name": "Samosa", "price": 1.0, "category": category["id"]},
        headers=bearer(admin_token),
    )
    assert created.status_code == 201

    patched = await client.patch(
        f"/api/products/{created.json()['id']}",
        json={"isOnOffer": True, "discountType": "percentage", "discountValue": 50},
        headers=bearer(admin_token),
    )
    assert patched.status_code == 200
    assert patched.json()["priceInfo"]["effectivePrice"] == 0.5

    rejected = await client.patch(
        f"/api/products/{created.json()['id']}",
        json={"discountValue": 150},
        headers=bearer(admin_token),
    )
    assert rejected.status_code == 400
    assert rejected.json()["error"] == "Percentage discount cannot exceed 100%"

    categories = await client.get("/api/categories")
    # three fixture dishes plus the new one
    assert categories.json()[0]["itemCount"] == 4


async def test_seed_only_once(client):
    first = await client.post("/api/seed")
    assert first.json()["inserted"] > 0
    second = await client.post("/api/seed")
    assert second.json()["inserted"] == 0


async def test_reconcile_endpoint_requires_admin(client, admin_token):
    assert (await client.post("/api/admin/reconcile-stats")).status_code == 401
    response = await client.post("/api/admin/reconcile-stats", headers=bearer(admin_token))
    assert response.json() == {"success": True, "applied": 0}


async def test_offer_filter_applies_before_paging(client, products):
    # the discounted dish sorts last by name
    response = await client.get("/api/products", params={"onOffer": "true", "limit": 1, "page": 1})
    body = response.json()
    assert [p["name"] for p in body["docs"]] == ["Veg Korma"]
    assert body["totalDocs"] == 1
    assert body["totalPages"] == 1

    regular = await client.get("/api/products", params={"onOffer": "false", "limit": 1, "page": 2})
    body = regular.json()
    assert [p["name"] for p in body["docs"]] == ["Chicken Biryani"]
    assert body["totalDocs"] == 2


async def test_listing_skips_unreadable_products(client, db, products):
    await db[PRODUCTS].insert_one({"name": "Lamb Kebab", "price": 5.0, "is_available": True, "discount_type": "amount"})
    response = await client.get("/api/products")
    assert response.status_code == 200
    names = [p["name"] for p in response.json()["docs"]]
    assert names == ["Butter Naan", "Chicken Biryani", "Veg Korma"]
