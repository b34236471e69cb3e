"""
Checkout: turn an untrusted cart into an order.

Steps run in order; anything that fails before the order insert undoes the
customer write that preceded it. After the insert nothing is rolled back:
customer statistics and the session token are best-effort and logged.
"""
from __future__ import annotations
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from circle_kitchen import auth
from circle_kitchen.catalog import parse_product
from circle_kitchen.database import CUSTOMERS, PRODUCTS, as_utc, find_document, get_document, utcnow
from circle_kitchen.errors import CustomerError, InternalError, ItemError, SchedulingError, ValidationError
from circle_kitchen.offers import effective_price
from circle_kitchen.orders import apply_customer_stats, create_order, order_numbers
from circle_kitchen.pricing import is_service_enabled
from circle_kitchen.schemas import Address, CheckoutRequest, StoreConfig
from circle_kitchen.settings import Settings

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
ORDER_NUMBER_ATTEMPTS = 3

Compensation = Callable[[], Awaitable[Any]]


@dataclass
class CheckoutResult:
    order: dict[str, Any]
    customer: dict[str, Any]
    is_new_customer: bool
    auth_token: Optional[str] = None


@dataclass
class _Saga:
    compensations: list[tuple[str, Compensation]] = field(default_factory=list)

    def record(self, name: str, action: Compensation) -> None:
        self.compensations.append((name, action))

    async def unwind(self) -> None:
        for name, action in reversed(self.compensations):
            try:
                await action()
            except PyMongoError:
                logger.exception("Compensation %r failed", name)


# Step 1

def validate_request(request: CheckoutRequest, config: StoreConfig) -> None:
    if not request.items:
        raise ValidationError("Cart is empty")

    info = request.customer_info
    if info is None or not (info.email and info.first_name and info.last_name and info.phone):
        raise ValidationError("Customer information is incomplete")

    if request.service_type is None:
        raise ValidationError("Service type is required")
    if not is_service_enabled(request.service_type, config):
        raise ValidationError(f"{request.service_type.capitalize()} is not available at the moment")

    if request.service_type == "delivery":
        address = request.delivery_address
        if address is None or not address.street or not address.area:
            raise ValidationError("Delivery address is incomplete")

    if request.booking_date is None:
        raise ValidationError("Booking date is required")


# Step 2

async def resolve_customer(
    db: AsyncIOMotorDatabase, request: CheckoutRequest, saga: _Saga
) -> tuple[dict[str, Any], bool]:
    info = request.customer_info
    email = auth.normalize_email(info.email)
    contact = {"first_name": info.first_name, "last_name": info.last_name, "phone": info.phone}
    if request.service_type == "delivery":
        contact["default_address"] = request.delivery_address.model_dump()

    try:
        existing = await find_document(db, CUSTOMERS, {"email": email})
    except PyMongoError as exc:
        logger.exception("Customer lookup failed for %s", email)
        raise CustomerError("Failed to process customer information", status_code=500) from exc

    if existing is not None:
        previous = {k: existing.get(k) for k in contact}
        customer_id = existing["id"]
        try:
            await db[CUSTOMERS].update_one(
                {"email": email}, {"$set": {**contact, "updated_at": utcnow()}}
            )
        except PyMongoError as exc:
            logger.exception("Failed to update customer %s", customer_id)
            raise CustomerError("Failed to process customer information", status_code=500) from exc

        async def restore_contact() -> None:
            await db[CUSTOMERS].update_one({"email": email}, {"$set": previous})

        saga.record("restore customer contact", restore_contact)
        return {**existing, **contact}, False

    if not info.password or len(info.password) < MIN_PASSWORD_LENGTH:
        raise CustomerError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters for new customers")

    now = utcnow()
    doc = {
        "email": email,
        "password_hash": auth.hash_password(info.password),
        **contact,
        "is_active": True,
        "total_orders": 0,
        "total_spent": 0.0,
        "loyalty_points": 0,
        "last_order_date": None,
        "dietary_preferences": [],
        "preferred_spice_level": "mild",
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = await db[CUSTOMERS].insert_one(doc)
    except DuplicateKeyError as exc:
        raise CustomerError("A customer with this email was created concurrently, please retry") from exc
    except PyMongoError as exc:
        logger.exception("Failed to create customer %s", email)
        raise CustomerError("Failed to create customer account", status_code=500) from exc

    inserted_id = result.inserted_id

    async def delete_customer() -> None:
        await db[CUSTOMERS].delete_one({"_id": inserted_id})

    saga.record("delete new customer", delete_customer)
    doc.pop("_id", None)
    logger.info("New customer created: %s", email)
    return {**doc, "id": str(inserted_id)}, True


# Step 3

async def price_lines(
    db: AsyncIOMotorDatabase,
    request: CheckoutRequest,
    pricing: str,
    now: datetime,
) -> tuple[list[dict[str, Any]], float]:
    lines = []
    total = 0.0
    for item in request.items:
        label = item.name or "unnamed item"
        if not item.id:
            raise ItemError(f"Item missing ID: {label}")
        doc = await get_document(db, PRODUCTS, item.id)
        if doc is None:
            raise ItemError(f"Product with ID {item.id} not found", item_id=item.id)
        product = parse_product(doc)
        if not product.is_available:
            raise ItemError(f"{product.name} is currently unavailable", item_id=item.id)
        if item.quantity < product.min_order_quantity:
            raise ItemError(
                f"{product.name} requires a minimum order of {product.min_order_quantity}", item_id=item.id
            )

        unit = effective_price(product, now) if pricing == "effective" else product.price
        unit = round(unit, 2)
        subtotal = round(unit * item.quantity, 2)
        lines.append(
            {
                "product": product.id,
                "name": product.name,
                "quantity": item.quantity,
                "price": unit,
                "list_price": product.price,
                "subtotal": subtotal,
            }
        )
        total += subtotal
    return lines, round(total, 2)


# Step 4

def check_lead_time(booking_date: datetime, now: datetime, lead: timedelta) -> None:
    if as_utc(booking_date) - now < lead:
        hours = int(lead.total_seconds() // 3600)
        raise SchedulingError(f"Booking must be at least {hours} hours in advance")


# Step 5

async def insert_order(db: AsyncIOMotorDatabase, data: dict[str, Any]) -> dict[str, Any]:
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        try:
            return await create_order(db, {**data, "order_number": order_numbers.next()})
        except DuplicateKeyError:
            # another process took the same millisecond
            if attempt == ORDER_NUMBER_ATTEMPTS:
                raise
            logger.warning("Order number collision, retrying (%d/%d)", attempt, ORDER_NUMBER_ATTEMPTS)
    raise AssertionError("unreachable")


async def checkout(
    db: AsyncIOMotorDatabase,
    request: CheckoutRequest,
    config: StoreConfig,
    settings: Settings,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    now = now or utcnow()
    validate_request(request, config)

    saga = _Saga()
    try:
        customer, is_new = await resolve_customer(db, request, saga)
        lines, total = await price_lines(db, request, settings.CHECKOUT_PRICING, now)
        check_lead_time(request.booking_date, now, timedelta(hours=settings.BOOKING_LEAD_HOURS))

        if request.total_amount is not None and abs(request.total_amount - total) >= 0.01:
            logger.warning(
                "Checkout total mismatch for %s: client %.2f, server %.2f",
                customer["email"], request.total_amount, total,
            )

        try:
            order = await insert_order(
                db,
                {
                    "customer": customer["id"],
                    "customer_name": f"{customer['first_name']} {customer['last_name']}",
                    "items": lines,
                    "total_amount": total,
                    "status": "pending",
                    "payment_status": "pending",
                    "service_type": request.service_type,
                    "booking_date": as_utc(request.booking_date),
                    "delivery_address": (
                        request.delivery_address.model_dump() if request.service_type == "delivery" else None
                    ),
                    "customer_notes": request.customer_notes or "",
                    "admin_notes": None,
                    "actual_delivery_time": None,
                    "stats_applied": False,
                },
            )
        except PyMongoError as exc:
            logger.exception("Order creation failed for %s", customer["email"])
            raise InternalError("Failed to create order") from exc
    except Exception:
        # anything before the commit point leaves no customer write behind
        await saga.unwind()
        raise

    logger.info("Order %s created for %s, total %.2f", order["order_number"], customer["email"], total)

    # Past the commit point: failures below are logged, never raised.
    try:
        await apply_customer_stats(db, order["id"], now)
    except PyMongoError:
        logger.exception("Customer stats update failed for order %s, left for reconciliation", order["order_number"])

    token = None
    password = request.customer_info.password
    if is_new or auth.verify_password(password, customer.get("password_hash")):
        try:
            token = await auth.issue_session(
                db, CUSTOMERS, customer["id"], timedelta(seconds=settings.SESSION_TTL_SECONDS)
            )
        except PyMongoError:
            logger.exception("Session issuance failed for %s", customer["email"])

    return CheckoutResult(order=order, customer=customer, is_new_customer=is_new, auth_token=token)


def default_address(customer: dict[str, Any]) -> Optional[Address]:
    value = customer.get("default_address")
    return Address.model_validate(value) if value else None
