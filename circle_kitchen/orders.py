"""
Orders: numbering, status machine, cancellation, status history and the
customer-statistics outbox.
"""
from __future__ import annotations
import logging
import math
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from circle_kitchen.database import (
    CATEGORIES,
    CUSTOMERS,
    ORDER_STATUS_HISTORY,
    ORDERS,
    PRODUCTS,
    create_document,
    find_document,
    get_document,
    get_documents,
    serialize,
    to_object_id,
    utcnow,
)
from circle_kitchen.errors import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CANCELLABLE = ("pending", "confirmed")

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"preparing", "cancelled"}),
    "preparing": frozenset({"ready-for-pickup", "out-for-delivery", "completed", "cancelled"}),
    "ready-for-pickup": frozenset({"completed", "cancelled"}),
    "out-for-delivery": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def can_cancel(status: str) -> bool:
    return status in CANCELLABLE


class OrderNumberGenerator:
    """ORD-<epoch millis>, bumped so one process never repeats a number."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last = 0

    def next(self) -> str:
        millis = int(self._clock() * 1000)
        if millis <= self._last:
            millis = self._last + 1
        self._last = millis
        return f"ORD-{millis}"


order_numbers = OrderNumberGenerator()


# Status history

async def record_status_change(
    db: AsyncIOMotorDatabase,
    order_id: str,
    status: str,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    entry = {
        "order": order_id,
        "status": status,
        "changed_by": changed_by,
        "notes": notes,
        "timestamp": now or utcnow(),
    }
    result = await db[ORDER_STATUS_HISTORY].insert_one(entry)
    entry["_id"] = result.inserted_id
    return serialize(entry)


async def list_status_history(db: AsyncIOMotorDatabase, order_id: str) -> list[dict[str, Any]]:
    return await get_documents(
        db, ORDER_STATUS_HISTORY, {"order": order_id}, sort=[("timestamp", ASCENDING), ("_id", ASCENDING)], limit=1000
    )


# Status changes

async def update_order_status(
    db: AsyncIOMotorDatabase,
    order_id: str,
    status: str,
    changed_by: Optional[str] = None,
    admin_notes: Optional[str] = None,
) -> dict[str, Any]:
    """Admin path: any status may be set; the change is always recorded."""
    oid = to_object_id(order_id)
    order = await db[ORDERS].find_one({"_id": oid}) if oid else None
    if order is None:
        raise NotFoundError("Order not found")

    previous = order["status"]
    if previous != status and not can_transition(previous, status):
        logger.warning("Order %s moved off the status machine: %s -> %s", order["order_number"], previous, status)

    now = utcnow()
    changes: dict[str, Any] = {"status": status, "updated_at": now}
    if admin_notes:
        changes["admin_notes"] = admin_notes
    if status == "completed":
        changes["actual_delivery_time"] = now
    updated = await db[ORDERS].find_one_and_update(
        {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    await record_status_change(
        db, str(oid), status, changed_by=changed_by, notes=admin_notes or f"Status updated to {status}", now=now
    )
    logger.info("Order %s status %s -> %s by %s", order["order_number"], previous, status, changed_by)
    return serialize(updated)


async def _find_customer_order(db: AsyncIOMotorDatabase, order_number: str, customer_id: str) -> Optional[dict[str, Any]]:
    return await find_document(db, ORDERS, {"order_number": order_number, "customer": customer_id})


async def cancellation_status(db: AsyncIOMotorDatabase, order_number: str, customer_id: str) -> dict[str, Any]:
    if not order_number or not customer_id:
        raise ValidationError("Order number and customer ID are required")
    order = await _find_customer_order(db, order_number, customer_id)
    if order is None:
        raise NotFoundError("Order not found")
    status = order["status"]
    allowed = can_cancel(status)
    return {
        "can_cancel": allowed,
        "current_status": status,
        "message": "Order can be cancelled" if allowed else f"Order cannot be cancelled (status: {status})",
    }


async def cancel_order(
    db: AsyncIOMotorDatabase,
    order_number: str,
    customer_id: str,
    reason: Optional[str] = None,
) -> dict[str, Any]:
    if not order_number or not customer_id:
        raise ValidationError("Order number and customer ID are required")
    order = await _find_customer_order(db, order_number, customer_id)
    if order is None:
        raise NotFoundError("Order not found or does not belong to you")
    if not can_cancel(order["status"]):
        raise InvalidStateError(
            f"Cannot cancel order with status: {order['status']}. "
            "Only pending or confirmed orders can be cancelled."
        )

    note = f"CANCELLED: {reason}" if reason else "CANCELLED by customer"
    previous_notes = order.get("customer_notes")
    customer_notes = f"{previous_notes} | {note}" if previous_notes else note

    now = utcnow()
    updated = await db[ORDERS].find_one_and_update(
        # status guard so a concurrent admin update wins cleanly
        {"_id": to_object_id(order["id"]), "status": {"$in": list(CANCELLABLE)}},
        {"$set": {"status": "cancelled", "customer_notes": customer_notes, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStateError("Order status changed, it can no longer be cancelled")

    await record_status_change(db, order["id"], "cancelled", notes=f"Customer cancellation: {reason or 'no reason given'}", now=now)
    logger.info("Order %s cancelled by customer %s (was %s)", order_number, customer_id, order["status"])
    return serialize(updated)


# Customer statistics outbox
#
# Every order is created with stats_applied=False. Whoever flips the flag owns
# the increment; on failure the flag is flipped back so reconcile can retry.

async def apply_customer_stats(db: AsyncIOMotorDatabase, order_id: str, now: Optional[datetime] = None) -> bool:
    oid = to_object_id(order_id)
    claimed = await db[ORDERS].find_one_and_update(
        {"_id": oid, "stats_applied": False},
        {"$set": {"stats_applied": True}},
    )
    if claimed is None:
        return False

    total = float(claimed["total_amount"])
    try:
        await db[CUSTOMERS].update_one(
            {"_id": to_object_id(claimed["customer"])},
            {
                "$inc": {
                    "total_orders": 1,
                    "total_spent": total,
                    "loyalty_points": math.floor(total),
                },
                "$set": {"last_order_date": now or utcnow()},
            },
        )
    except PyMongoError:
        await db[ORDERS].update_one({"_id": oid}, {"$set": {"stats_applied": False}})
        raise
    return True


async def reconcile_customer_stats(db: AsyncIOMotorDatabase, limit: int = 500) -> int:
    """Apply statistics for orders whose post-commit update never landed."""
    pending = await get_documents(db, ORDERS, {"stats_applied": False}, sort=[("created_at", ASCENDING)], limit=limit)
    applied = 0
    for order in pending:
        try:
            if await apply_customer_stats(db, order["id"]):
                applied += 1
        except PyMongoError:
            logger.exception("Customer stats still failing for order %s", order["order_number"])
    if applied:
        logger.info("Reconciled customer stats for %d orders", applied)
    return applied


# Projections

async def create_order(db: AsyncIOMotorDatabase, data: dict[str, Any]) -> dict[str, Any]:
    return await create_document(db, ORDERS, data)


async def get_order_by_number(db: AsyncIOMotorDatabase, order_number: str) -> dict[str, Any]:
    order = await find_document(db, ORDERS, {"order_number": order_number})
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def get_order(db: AsyncIOMotorDatabase, order_id: str) -> dict[str, Any]:
    order = await get_document(db, ORDERS, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def _catalog_names(db: AsyncIOMotorDatabase, orders: list[dict[str, Any]]) -> tuple[dict[str, dict], dict[str, str]]:
    product_ids = {to_object_id(line["product"]) for o in orders for line in o.get("items", [])}
    product_ids.discard(None)
    products = {
        p["id"]: p
        for p in await get_documents(db, PRODUCTS, {"_id": {"$in": list(product_ids)}}, limit=len(product_ids) or 1)
    }
    category_ids = {to_object_id(p.get("category")) for p in products.values() if p.get("category")}
    category_ids.discard(None)
    categories = {
        c["id"]: c["name"]
        for c in await get_documents(db, CATEGORIES, {"_id": {"$in": list(category_ids)}}, limit=len(category_ids) or 1)
    }
    return products, categories


def _customer_view(order: dict[str, Any], products: dict[str, dict], categories: dict[str, str]) -> dict[str, Any]:
    items = []
    for line in order.get("items", []):
        product = products.get(line["product"])
        category = "uncategorized"
        if product and product.get("category"):
            category = categories.get(product["category"], "uncategorized")
        items.append(
            {
                "id": line["product"],
                "name": (product or {}).get("name") or line.get("name") or "Unknown Item",
                "price": line["price"],
                "quantity": line["quantity"],
                "category": category,
            }
        )
    return {
        "id": order["id"],
        "order_number": order["order_number"],
        "status": order["status"],
        "service_type": order["service_type"],
        "total_amount": order["total_amount"],
        "booking_date": order["booking_date"],
        "created_at": order.get("created_at"),
        "items": items,
        "delivery_address": order.get("delivery_address"),
        "customer_notes": order.get("customer_notes") or None,
    }


async def customer_order_history(db: AsyncIOMotorDatabase, customer_id: str, limit: int = 100) -> list[dict[str, Any]]:
    orders = await get_documents(
        db, ORDERS, {"customer": customer_id}, sort=[("created_at", DESCENDING)], limit=limit
    )
    products, categories = await _catalog_names(db, orders)
    return [_customer_view(o, products, categories) for o in orders]


async def customer_order(db: AsyncIOMotorDatabase, customer_id: str, order_number: str) -> dict[str, Any]:
    order = await _find_customer_order(db, order_number, customer_id)
    if order is None:
        raise NotFoundError("Order not found")
    products, categories = await _catalog_names(db, [order])
    return _customer_view(order, products, categories)


async def order_stats(db: AsyncIOMotorDatabase) -> dict[str, Any]:
    by_status = {}
    async for row in db[ORDERS].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        by_status[row["_id"]] = row["count"]
    revenue = 0.0
    async for row in db[ORDERS].aggregate(
        [
            {"$match": {"status": {"$ne": "cancelled"}}},
            {"$group": {"_id": None, "revenue": {"$sum": "$total_amount"}}},
        ]
    ):
        revenue = row["revenue"]
    return {
        "total_orders": sum(by_status.values()),
        "orders_by_status": by_status,
        "revenue": round(revenue, 2),
        "customers": await db[CUSTOMERS].count_documents({}),
        "products": await db[PRODUCTS].count_documents({}),
        "pending_stats": await db[ORDERS].count_documents({"stats_applied": False}),
    }
