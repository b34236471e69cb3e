from __future__ import annotations
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from circle_kitchen.database import STORE_CONFIG, utcnow
from circle_kitchen.schemas import StoreConfig

logger = logging.getLogger(__name__)

CONFIG_DOC_ID = "store-config"

ConfigLoader = Callable[[AsyncIOMotorDatabase], Awaitable[StoreConfig]]


async def load_store_config(db: AsyncIOMotorDatabase) -> StoreConfig:
    """Read the singleton config; missing fields fall back to the defaults."""
    doc: Optional[dict[str, Any]] = await db[STORE_CONFIG].find_one({"_id": CONFIG_DOC_ID})
    if not doc:
        return StoreConfig()
    doc.pop("_id", None)
    doc.pop("updated_at", None)
    return StoreConfig.model_validate(doc)


async def save_store_config(db: AsyncIOMotorDatabase, config: StoreConfig) -> StoreConfig:
    await db[STORE_CONFIG].update_one(
        {"_id": CONFIG_DOC_ID},
        {"$set": {**config.model_dump(), "updated_at": utcnow()}},
        upsert=True,
    )
    return config


class StoreConfigCache:
    """
    Read-through cache for the store config.

    One instance per application (held on app.state). Writers call
    invalidate(); readers get a copy at most `ttl` old. If the store is
    unreachable the defaults are served but not cached.
    """

    def __init__(
        self,
        loader: ConfigLoader = load_store_config,
        ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl.total_seconds()
        self._clock = clock
        self._value: Optional[StoreConfig] = None
        self._loaded_at = 0.0

    @property
    def is_fresh(self) -> bool:
        return self._value is not None and (self._clock() - self._loaded_at) < self._ttl

    async def get(self, db: AsyncIOMotorDatabase) -> StoreConfig:
        if self.is_fresh:
            return self._value  # type: ignore[return-value]
        try:
            value = await self._loader(db)
        except PyMongoError:
            logger.exception("Error fetching store config, serving defaults")
            return StoreConfig()
        self._value = value
        self._loaded_at = self._clock()
        logger.debug("Store config loaded and cached for %ds", self._ttl)
        return value

    def invalidate(self) -> None:
        self._value = None
        self._loaded_at = 0.0
