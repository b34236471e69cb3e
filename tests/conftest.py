from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from circle_kitchen import auth
from circle_kitchen.database import CATEGORIES, PRODUCTS, USERS, create_document, ensure_indexes, get_db
from circle_kitchen.main import create_app
from circle_kitchen.schemas import OperatingHours, StoreConfig
from circle_kitchen.settings import Settings
from circle_kitchen.store_config import save_store_config


@pytest.fixture
def settings():
    return Settings(
        DATABASE_NAME="circle_kitchen_test",
        STORE_CONFIG_TTL_SECONDS=300,
        BOOKING_LEAD_HOURS=24,
        CHECKOUT_PRICING="effective",
    )


@pytest.fixture
def store_config():
    return StoreConfig(
        store_timezone="UTC",
        operating_hours=OperatingHours(open_time="00:00", close_time="23:59"),
    )


@pytest.fixture
async def db(store_config):
    database = AsyncMongoMockClient()["circle_kitchen_test"]
    await ensure_indexes(database)
    await save_store_config(database, store_config)
    return database


@pytest.fixture
async def category(db):
    return await create_document(db, CATEGORIES, {"name": "Curries", "is_active": True, "display_order": 1, "item_count": 0})


@pytest.fixture
async def products(db, category):
    """Three dishes: plain, 20% off, and one needing at least 4 pieces."""
    biryani = await create_document(
        db,
        PRODUCTS,
        {"name": "Chicken Biryani", "category": category["id"], "price": 10.0, "min_order_quantity": 1, "is_available": True},
    )
    korma = await create_document(
        db,
        PRODUCTS,
        {
            "name": "Veg Korma",
            "category": category["id"],
            "price": 10.0,
            "min_order_quantity": 1,
            "is_available": True,
            "is_on_offer": True,
            "discount_type": "percentage",
            "discount_value": 20,
        },
    )
    naan = await create_document(
        db,
        PRODUCTS,
        {"name": "Butter Naan", "category": category["id"], "price": 0.5, "min_order_quantity": 4, "is_available": True},
    )
    return {"biryani": biryani, "korma": korma, "naan": naan}


@pytest.fixture
def app(db, settings):
    application = create_app(settings)
    application.dependency_overrides[get_db] = lambda: db
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
async def admin_token(db, settings):
    await auth.ensure_admin_user(db, "admin@example.com", "admin-secret")
    token, _ = await auth.login(db, USERS, "admin@example.com", "admin-secret", timedelta(hours=1))
    return token


def later(hours: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def checkout_payload(items, email="amira@example.com", password="secret123", hours=48, service_type="delivery", **extra):
    payload = {
        "items": items,
        "customerInfo": {
            "email": email,
            "firstName": "Amira",
            "lastName": "Haddad",
            "phone": "+96890000000",
            "password": password,
        },
        "serviceType": service_type,
        "bookingDate": later(hours).isoformat(),
        "customerNotes": "Less spicy please",
    }
    if service_type == "delivery":
        payload["deliveryAddress"] = {"street": "Way 3021", "area": "Al Khuwair", "city": "Muscat"}
    payload.update(extra)
    return payload
