from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING

from circle_kitchen.database import (
    CATEGORIES,
    PRODUCTS,
    create_document,
    get_document,
    get_documents,
    paginate,
    Page,
    to_object_id,
    update_document,
    utcnow,
)
from circle_kitchen.errors import ItemError, NotFoundError, ValidationError
from circle_kitchen.offers import price_info
from circle_kitchen.pricing import calculate_delivery_fee, calculate_tax, is_store_open, meets_minimum_order
from circle_kitchen.schemas import (
    CartQuote,
    CategoryIn,
    CategoryOut,
    Product,
    ProductIn,
    ProductOut,
    QuoteLine,
    QuoteRequest,
    StoreConfig,
)

logger = logging.getLogger(__name__)


def parse_product(doc: dict[str, Any]) -> Product:
    """Validate a stored product; documents that no longer fit the model become an ItemError."""
    try:
        return Product.model_validate(doc)
    except PydanticValidationError as exc:
        logger.warning("Product %s has invalid stored data: %s", doc.get("id"), exc.errors()[0].get("msg"))
        raise ItemError(f"{doc.get('name') or 'Product'} is currently unavailable", item_id=doc.get("id")) from exc


def with_price_info(doc: dict[str, Any], now: Optional[datetime] = None) -> ProductOut:
    product = parse_product(doc)
    return ProductOut(**product.model_dump(), price_info=price_info(product, now))


def offer_filter(now: datetime, active: bool = True) -> dict[str, Any]:
    """Query form of is_offer_active, so paging and totals see the same products."""
    running = {
        "$and": [
            {"is_on_offer": True},
            {"discount_value": {"$gt": 0}},
            {"$or": [{"offer_start_date": None}, {"offer_start_date": {"$lte": now}}]},
            {"$or": [{"offer_end_date": None}, {"offer_end_date": {"$gte": now}}]},
        ]
    }
    return running if active else {"$nor": [running]}


async def list_products(
    db: AsyncIOMotorDatabase,
    category: Optional[str] = None,
    q: Optional[str] = None,
    vegetarian: Optional[bool] = None,
    on_offer: Optional[bool] = None,
    include_unavailable: bool = False,
    page: int = 1,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> tuple[list[ProductOut], Page]:
    now = now or utcnow()
    filter_dict: dict[str, Any] = {}
    if not include_unavailable:
        filter_dict["is_available"] = True
    if category:
        filter_dict["category"] = category
    if q:
        # Simple case-insensitive name search
        filter_dict["name"] = {"$regex": q, "$options": "i"}
    if vegetarian is not None:
        filter_dict["is_vegetarian"] = vegetarian
    if on_offer is not None:
        filter_dict.update(offer_filter(now, active=on_offer))

    result = await paginate(db, PRODUCTS, filter_dict, sort=[("name", ASCENDING)], page=page, limit=limit)
    products = []
    for doc in result.docs:
        try:
            products.append(with_price_info(doc, now))
        except ItemError:
            continue
    return products, result


async def get_product(db: AsyncIOMotorDatabase, product_id: str, now: Optional[datetime] = None) -> ProductOut:
    doc = await get_document(db, PRODUCTS, product_id)
    if doc is None:
        raise NotFoundError("Product not found")
    return with_price_info(doc, now)


async def _check_category(db: AsyncIOMotorDatabase, category_id: Optional[str]) -> None:
    if category_id and await get_document(db, CATEGORIES, category_id) is None:
        raise ValidationError(f"Category with ID {category_id} not found")


async def refresh_category_count(db: AsyncIOMotorDatabase, category_id: Optional[str]) -> None:
    oid = to_object_id(category_id) if category_id else None
    if oid is None:
        return
    count = await db[PRODUCTS].count_documents({"category": category_id})
    await db[CATEGORIES].update_one({"_id": oid}, {"$set": {"item_count": count}})


async def create_product(db: AsyncIOMotorDatabase, data: ProductIn) -> ProductOut:
    await _check_category(db, data.category)
    doc = await create_document(db, PRODUCTS, data.model_dump())
    await refresh_category_count(db, data.category)
    logger.info("Product created: %s (%s)", doc["name"], doc["id"])
    return with_price_info(doc)


async def update_product(db: AsyncIOMotorDatabase, product_id: str, changes: dict[str, Any]) -> ProductOut:
    """Partial update; the merged product must still pass the discount rules."""
    current = await get_document(db, PRODUCTS, product_id)
    if current is None:
        raise NotFoundError("Product not found")
    merged = {k: v for k, v in current.items() if k not in ("id", "created_at", "updated_at")}
    merged.update(changes)
    try:
        product = ProductIn.model_validate(merged)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc)) from exc

    await _check_category(db, product.category)
    doc = await update_document(db, PRODUCTS, product_id, product.model_dump())
    if current.get("category") != product.category:
        await refresh_category_count(db, current.get("category"))
    await refresh_category_count(db, product.category)
    return with_price_info(doc)


def _first_error(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    return str(error.get("msg", "Invalid product")).removeprefix("Value error, ")


# Categories

async def list_categories(db: AsyncIOMotorDatabase, include_inactive: bool = False) -> list[CategoryOut]:
    filter_dict = {} if include_inactive else {"is_active": True}
    docs = await get_documents(
        db, CATEGORIES, filter_dict, sort=[("display_order", ASCENDING), ("name", ASCENDING)], limit=200
    )
    return [CategoryOut(**d) for d in docs]


async def create_category(db: AsyncIOMotorDatabase, data: CategoryIn) -> CategoryOut:
    doc = await create_document(db, CATEGORIES, {**data.model_dump(), "item_count": 0})
    return CategoryOut(**doc)


# Cart quote

async def quote_cart(
    db: AsyncIOMotorDatabase,
    request: QuoteRequest,
    config: StoreConfig,
    now: Optional[datetime] = None,
) -> CartQuote:
    """Server-side cart totals, priced with the same offer rules checkout uses."""
    now = now or utcnow()
    lines: list[QuoteLine] = []
    for item in request.items:
        doc = await get_document(db, PRODUCTS, item.id) if item.id else None
        if doc is None or not doc.get("is_available", True):
            # dropped silently like a stale cart entry
            continue
        try:
            product = parse_product(doc)
        except ItemError:
            continue
        info = price_info(product, now)
        lines.append(
            QuoteLine(
                id=product.id,
                name=product.name,
                quantity=item.quantity,
                unit_price=round(info.effective_price, 2),
                subtotal=round(info.effective_price * item.quantity, 2),
                price_info=info,
                min_order_quantity=product.min_order_quantity,
                below_minimum_quantity=item.quantity < product.min_order_quantity,
            )
        )

    subtotal = round(sum(line.subtotal for line in lines), 2)
    delivery_fee = calculate_delivery_fee(subtotal, request.service_type, config)
    tax = round(calculate_tax(subtotal, config), 2)
    meets_minimum = meets_minimum_order(subtotal, config)
    has_quantity_issues = any(line.below_minimum_quantity for line in lines)
    return CartQuote(
        items=lines,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        tax=tax,
        total=round(subtotal + delivery_fee + tax, 2),
        min_order_amount=config.min_order_amount,
        meets_minimum_order=meets_minimum,
        has_min_quantity_issues=has_quantity_issues,
        can_checkout=bool(lines) and meets_minimum and not has_quantity_issues,
        store_open=is_store_open(config, now),
    )
