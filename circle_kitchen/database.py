from __future__ import annotations
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument

from circle_kitchen.settings import settings

CUSTOMERS = "customers"
ORDERS = "orders"
PRODUCTS = "products"
CATEGORIES = "categories"
ORDER_STATUS_HISTORY = "order_status_history"
STORE_CONFIG = "store_config"
USERS = "users"
SESSIONS = "sessions"

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL, tz_aware=True)
        _db = _client[settings.DATABASE_NAME]
    return _db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes unless the client is tz-aware; treat those as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if doc is None:
        return None
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    now = utcnow()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return serialize(inserted) or {}


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    sort: list[tuple[str, int]] | None = None,
    skip: int = 0,
    limit: int = 100,
) -> list[dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    cursor = cursor.limit(limit)
    docs = []
    async for d in cursor:
        docs.append(serialize(d))
    return docs


async def get_document(db: AsyncIOMotorDatabase, collection_name: str, doc_id: Any) -> Optional[dict[str, Any]]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return serialize(await db[collection_name].find_one({"_id": oid}))


async def find_document(db: AsyncIOMotorDatabase, collection_name: str, filter_dict: dict[str, Any]) -> Optional[dict[str, Any]]:
    return serialize(await db[collection_name].find_one(filter_dict))


async def update_document(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    doc_id: Any,
    data: dict[str, Any],
    unset: list[str] | None = None,
) -> Optional[dict[str, Any]]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    update: dict[str, Any] = {"$set": {**data, "updated_at": utcnow()}}
    if unset:
        update["$unset"] = {field: "" for field in unset}
    updated = await db[collection_name].find_one_and_update(
        {"_id": oid}, update, return_document=ReturnDocument.AFTER
    )
    return serialize(updated)


async def count_documents(db: AsyncIOMotorDatabase, collection_name: str, filter_dict: dict[str, Any] | None = None) -> int:
    return await db[collection_name].count_documents(filter_dict or {})


@dataclass
class Page:
    docs: list[dict[str, Any]]
    total_docs: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_docs / self.limit)) if self.limit else 1


async def paginate(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    sort: list[tuple[str, int]] | None = None,
    page: int = 1,
    limit: int = 10,
) -> Page:
    page = max(page, 1)
    limit = max(limit, 1)
    total = await count_documents(db, collection_name, filter_dict)
    docs = await get_documents(db, collection_name, filter_dict, sort=sort, skip=(page - 1) * limit, limit=limit)
    return Page(docs=docs, total_docs=total, page=page, limit=limit)


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db[CUSTOMERS].create_index([("email", ASCENDING)], unique=True)
    await db[USERS].create_index([("email", ASCENDING)], unique=True)
    await db[ORDERS].create_index([("order_number", ASCENDING)], unique=True)
    await db[ORDERS].create_index([("customer", ASCENDING)])
    await db[ORDER_STATUS_HISTORY].create_index([("order", ASCENDING)])
    await db[SESSIONS].create_index([("token_hash", ASCENDING)], unique=True)
    # Mongo drops sessions once expires_at has passed
    await db[SESSIONS].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
