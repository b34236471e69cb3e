from __future__ import annotations
import logging
from datetime import timedelta
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from circle_kitchen import auth
from circle_kitchen.database import CUSTOMERS, create_document, find_document, get_document
from circle_kitchen.errors import ConflictError, NotFoundError, ValidationError
from circle_kitchen.schemas import CustomerSummary, LoginRequest, RegisterRequest

logger = logging.getLogger(__name__)


def summarize(customer: dict[str, Any]) -> CustomerSummary:
    return CustomerSummary(
        id=customer["id"],
        email=customer["email"],
        first_name=customer.get("first_name"),
        last_name=customer.get("last_name"),
        phone=customer.get("phone"),
        default_address=customer.get("default_address") or None,
    )


async def register(db: AsyncIOMotorDatabase, data: RegisterRequest, ttl: timedelta) -> tuple[str, CustomerSummary]:
    email = auth.normalize_email(data.email)
    if await find_document(db, CUSTOMERS, {"email": email}):
        raise ConflictError("A customer with this email already exists")
    try:
        customer = await create_document(
            db,
            CUSTOMERS,
            {
                "email": email,
                "password_hash": auth.hash_password(data.password),
                "first_name": data.first_name,
                "last_name": data.last_name,
                "phone": data.phone,
                "default_address": data.default_address.model_dump() if data.default_address else None,
                "is_active": True,
                "total_orders": 0,
                "total_spent": 0.0,
                "loyalty_points": 0,
                "last_order_date": None,
                "dietary_preferences": [],
                "preferred_spice_level": "mild",
            },
        )
    except DuplicateKeyError as exc:
        raise ConflictError("A customer with this email already exists") from exc
    logger.info("Customer registered: %s", email)
    token = await auth.issue_session(db, CUSTOMERS, customer["id"], ttl)
    return token, summarize(customer)


async def login(db: AsyncIOMotorDatabase, data: LoginRequest, ttl: timedelta) -> tuple[str, CustomerSummary]:
    if not data.email or not data.password:
        raise ValidationError("Email and password are required")
    token, customer = await auth.login(db, CUSTOMERS, data.email, data.password, ttl)
    return token, summarize(customer)


async def profile(db: AsyncIOMotorDatabase, customer_id: str) -> dict[str, Any]:
    customer = await get_document(db, CUSTOMERS, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    return {
        **summarize(customer).model_dump(by_alias=True),
        "totalOrders": customer.get("total_orders", 0),
        "totalSpent": customer.get("total_spent", 0.0),
        "loyaltyPoints": customer.get("loyalty_points", 0),
        "lastOrderDate": customer.get("last_order_date"),
    }
