from __future__ import annotations
import os
from typing import List, Literal, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "circle_kitchen")

    LOG_LEVEL: str = "INFO"
    PORT: int = 8000
    CORS_ORIGINS: List[str] = ["*"]

    STORE_CONFIG_TTL_SECONDS: int = 300
    BOOKING_LEAD_HOURS: int = 24
    SESSION_TTL_SECONDS: int = 7200

    # "effective" charges the offer price shown in the cart, "list" the raw product price
    CHECKOUT_PRICING: Literal["effective", "list"] = "effective"

    ADMIN_EMAIL: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None


settings = Settings()
