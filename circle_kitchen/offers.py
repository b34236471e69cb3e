"""
Offer evaluation shared by listing, product detail, cart quote and checkout.

Write-time validation lives on ProductIn; everything here clamps so that stale
documents can never produce a price below zero or above the list price.
"""
from __future__ import annotations
import math
from datetime import datetime
from typing import Optional

from circle_kitchen.database import as_utc, utcnow
from circle_kitchen.schemas import PriceInfo, ProductBase


def is_offer_active(product: ProductBase, now: Optional[datetime] = None) -> bool:
    if not product.is_on_offer or not product.discount_value or product.discount_value <= 0:
        return False
    now = as_utc(now) if now else utcnow()
    start = as_utc(product.offer_start_date)
    end = as_utc(product.offer_end_date)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def effective_price(product: ProductBase, now: Optional[datetime] = None) -> float:
    price = product.price
    if not is_offer_active(product, now):
        return price
    value = product.discount_value or 0
    if product.discount_type == "percentage":
        discounted = price - price * value / 100
    elif product.discount_type == "fixed":
        discounted = price - value
    else:
        return price
    return min(price, max(0.0, discounted))


def savings(product: ProductBase, now: Optional[datetime] = None) -> float:
    return product.price - effective_price(product, now)


def savings_percent(product: ProductBase, now: Optional[datetime] = None) -> int:
    if product.price <= 0:
        return 0
    # half-up, not banker's rounding
    return int(math.floor(100 * savings(product, now) / product.price + 0.5))


def price_info(product: ProductBase, now: Optional[datetime] = None) -> PriceInfo:
    now = now or utcnow()
    on_sale = is_offer_active(product, now)
    effective = effective_price(product, now)
    saved = product.price - effective
    return PriceInfo(
        is_on_sale=on_sale,
        original_price=product.price,
        effective_price=effective,
        savings=saved,
        savings_percentage=savings_percent(product, now),
        display_price=effective,
        has_discount=on_sale and saved > 0,
    )
