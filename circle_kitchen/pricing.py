"""
Store pricing policy: delivery fee, tax, minimum order, opening hours.

Pure functions of (input, config, now); every view that shows a total goes
through these so displayed and charged amounts agree.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from circle_kitchen.database import as_utc
from circle_kitchen.schemas import ServiceType, StoreConfig

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "OMR": "ر.ع.",
    "AED": "د.إ",
    "SAR": "﷼",
    "INR": "₹",
    "CAD": "C$",
    "AUD": "A$",
    "JPY": "¥",
    "CNY": "¥",
}


def is_service_enabled(service_type: ServiceType, config: StoreConfig) -> bool:
    options = config.service_options
    return options.enable_delivery if service_type == "delivery" else options.enable_pickup


def available_services(config: StoreConfig) -> List[ServiceType]:
    return [s for s in ("delivery", "pickup") if is_service_enabled(s, config)]


def calculate_delivery_fee(subtotal: float, service_type: ServiceType, config: StoreConfig) -> float:
    options = config.service_options
    if service_type == "pickup" or not options.enable_delivery:
        return 0.0
    if options.free_delivery_threshold > 0 and subtotal >= options.free_delivery_threshold:
        return 0.0
    return options.delivery_fee


def calculate_tax(subtotal: float, config: StoreConfig) -> float:
    return subtotal * config.tax_rate / 100


def meets_minimum_order(subtotal: float, config: StoreConfig) -> bool:
    return subtotal >= config.min_order_amount


def _store_tz(config: StoreConfig):
    if config.store_timezone.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(config.store_timezone)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown store timezone %r, falling back to UTC", config.store_timezone)
        return timezone.utc


def is_store_open(config: StoreConfig, now: Optional[datetime] = None) -> bool:
    hours = config.operating_hours
    # naive datetimes are UTC, like everything read back from Mongo
    now = as_utc(now) or datetime.now(timezone.utc)
    now = now.astimezone(_store_tz(config))
    day = now.strftime("%A").lower()
    if day in {d.lower() for d in hours.closed_days}:
        return False
    current = now.strftime("%H:%M")
    return (hours.open_time or "00:00") <= current <= (hours.close_time or "23:59")


def service_message(service_type: ServiceType, config: StoreConfig) -> str:
    options = config.service_options
    if service_type == "delivery":
        return options.delivery_message or "We deliver to your doorstep"
    return options.pickup_message or "Ready for pickup in 30 minutes"


def estimated_service_time(service_type: ServiceType, config: StoreConfig) -> str:
    options = config.service_options
    if service_type == "delivery":
        return options.estimated_delivery_time or "45-60 minutes"
    return options.estimated_pickup_time or "30 minutes"


def pickup_address(config: StoreConfig) -> str:
    return (
        config.service_options.pickup_address
        or config.contact_info.address
        or "Please contact store for pickup address"
    )


def currency_symbol(currency_code: str) -> str:
    return CURRENCY_SYMBOLS.get(currency_code, "$")


def format_price(amount: float, config: StoreConfig) -> str:
    formatted = f"{amount:.2f}"
    if config.currency_position == "after":
        return f"{formatted}{config.currency_symbol}"
    return f"{config.currency_symbol}{formatted}"
