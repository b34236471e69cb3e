from __future__ import annotations
import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from pydantic.alias_generators import to_snake
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from circle_kitchen import auth, catalog, customers, orders
from circle_kitchen.checkout import checkout as run_checkout, default_address
from circle_kitchen.database import CATEGORIES, ORDERS, PRODUCTS, USERS, create_document, ensure_indexes, get_db, paginate
from circle_kitchen.errors import KitchenError, ValidationError
from circle_kitchen.pricing import available_services, is_store_open
from circle_kitchen.schemas import (
    AuthResponse,
    CancelRequest,
    CartQuote,
    CategoryIn,
    CategoryOut,
    CheckoutCustomer,
    CheckoutRequest,
    CheckoutResponse,
    CustomerOrderLookup,
    CustomerOrderView,
    LoginRequest,
    OrderOut,
    OrderSummary,
    ProductIn,
    ProductOut,
    QuoteRequest,
    RegisterRequest,
    StatusHistoryEntry,
    StatusUpdateRequest,
    StoreConfig,
)
from circle_kitchen.settings import Settings, settings as default_settings
from circle_kitchen.store_config import StoreConfigCache, save_store_config

logger = logging.getLogger(__name__)


# Dependencies

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_config_cache(request: Request) -> StoreConfigCache:
    return request.app.state.config_cache


async def get_store_config(
    cache: StoreConfigCache = Depends(get_config_cache),
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> StoreConfig:
    return await cache.get(db)


async def get_principal(
    authorization: Optional[str] = Header(None),
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> auth.Principal:
    return await auth.resolve_principal(db, auth.bearer_token(authorization))


def session_ttl(app_settings: Settings) -> timedelta:
    return timedelta(seconds=app_settings.SESSION_TTL_SECONDS)


# Seed data: a small home-kitchen menu
SEED_CATEGORIES: list[dict] = [
    {"name": "Biryani & Rice", "description": "Slow-cooked rice dishes", "display_order": 1},
    {"name": "Curries", "description": "Family recipes, made fresh", "display_order": 2},
    {"name": "Breads", "description": "Tandoor and tawa breads", "display_order": 3},
    {"name": "Desserts", "description": "Something sweet", "display_order": 4},
]

SEED_PRODUCTS: list[dict] = [
    {"name": "Chicken Biryani", "category": "Biryani & Rice", "price": 4.5, "spice_level": "medium", "preparation_time": 60, "serving_size": "2 persons", "is_on_offer": True, "discount_type": "percentage", "discount_value": 10},
    {"name": "Vegetable Pulao", "category": "Biryani & Rice", "price": 3.0, "is_vegetarian": True, "preparation_time": 40},
    {"name": "Mutton Kuzhambu", "category": "Curries", "price": 5.5, "spice_level": "hot", "preparation_time": 90},
    {"name": "Paneer Butter Masala", "category": "Curries", "price": 3.8, "is_vegetarian": True, "preparation_time": 35, "is_on_offer": True, "discount_type": "fixed", "discount_value": 0.5},
    {"name": "Dal Tadka", "category": "Curries", "price": 2.2, "is_vegetarian": True, "preparation_time": 30},
    {"name": "Butter Naan", "category": "Breads", "price": 0.4, "is_vegetarian": True, "min_order_quantity": 4, "preparation_time": 15},
    {"name": "Malabar Parotta", "category": "Breads", "price": 0.35, "is_vegetarian": True, "min_order_quantity": 5, "preparation_time": 20},
    {"name": "Gulab Jamun", "category": "Desserts", "price": 1.5, "is_vegetarian": True, "serving_size": "4 pieces", "preparation_time": 30},
]


class SeedResponse(BaseModel):
    inserted: int


class StatusUpdateResponse(BaseModel):
    success: bool = True
    order: OrderOut


# Application

def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = await get_db()
        await ensure_indexes(db)
        if app_settings.ADMIN_EMAIL and app_settings.ADMIN_PASSWORD:
            await auth.ensure_admin_user(db, app_settings.ADMIN_EMAIL, app_settings.ADMIN_PASSWORD)
            logger.info("Admin user ensured: %s", app_settings.ADMIN_EMAIL)
        yield

    app = FastAPI(title="Circle Kitchen API", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.config_cache = StoreConfigCache(ttl=timedelta(seconds=app_settings.STORE_CONFIG_TTL_SECONDS))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(KitchenError)
    async def kitchen_error_handler(request: Request, exc: KitchenError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "Invalid request"
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
            message = f"{location}: {errors[0].get('msg')}" if location else str(errors[0].get("msg"))
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    @app.exception_handler(PyMongoError)
    async def store_error_handler(request: Request, exc: PyMongoError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    async def health(db: AsyncIOMotorDatabase = Depends(get_db)):
        try:
            await db.command("ping")
            database = "connected"
        except PyMongoError:
            logger.warning("Health check could not reach the database")
            database = "unavailable"
        return {"status": "ok", "database": database}

    @app.post("/api/seed", response_model=SeedResponse)
    async def seed_menu(db: AsyncIOMotorDatabase = Depends(get_db)):
        # Insert only if products collection is empty
        if await db[PRODUCTS].count_documents({}) > 0:
            return SeedResponse(inserted=0)
        category_ids = {}
        for c in SEED_CATEGORIES:
            doc = await create_document(db, CATEGORIES, {**CategoryIn(**c).model_dump(), "item_count": 0})
            category_ids[doc["name"]] = doc["id"]
        for p in SEED_PRODUCTS:
            data = ProductIn(**{**p, "category": category_ids[p["category"]]})
            await create_document(db, PRODUCTS, data.model_dump())
        for category_id in category_ids.values():
            await catalog.refresh_category_count(db, category_id)
        return SeedResponse(inserted=len(SEED_PRODUCTS))

    # Checkout & cart

    @app.post("/api/checkout", response_model=CheckoutResponse)
    async def checkout(
        payload: CheckoutRequest,
        db: AsyncIOMotorDatabase = Depends(get_db),
        config: StoreConfig = Depends(get_store_config),
        app_settings: Settings = Depends(get_settings),
    ):
        result = await run_checkout(db, payload, config, app_settings)
        order = result.order
        customer = result.customer
        return CheckoutResponse(
            order=OrderSummary(
                id=order["id"],
                order_number=order["order_number"],
                total_amount=order["total_amount"],
                status=order["status"],
                booking_date=order["booking_date"],
            ),
            customer=CheckoutCustomer(
                id=customer["id"],
                email=customer["email"],
                first_name=customer.get("first_name"),
                last_name=customer.get("last_name"),
                phone=customer.get("phone"),
                default_address=default_address(customer),
                is_new_customer=result.is_new_customer,
            ),
            auth_token=result.auth_token,
        )

    @app.post("/api/cart/quote", response_model=CartQuote)
    async def cart_quote(
        payload: QuoteRequest,
        db: AsyncIOMotorDatabase = Depends(get_db),
        config: StoreConfig = Depends(get_store_config),
    ):
        return await catalog.quote_cart(db, payload, config)

    # Customers & admin users

    @app.post("/api/customers/register", response_model=AuthResponse)
    async def register_customer(
        payload: RegisterRequest,
        db: AsyncIOMotorDatabase = Depends(get_db),
        app_settings: Settings = Depends(get_settings),
    ):
        token, user = await customers.register(db, payload, session_ttl(app_settings))
        return AuthResponse(token=token, user=user)

    @app.post("/api/customers/login", response_model=AuthResponse)
    async def login_customer(
        payload: LoginRequest,
        db: AsyncIOMotorDatabase = Depends(get_db),
        app_settings: Settings = Depends(get_settings),
    ):
        token, user = await customers.login(db, payload, session_ttl(app_settings))
        return AuthResponse(token=token, user=user)

    @app.post("/api/customers/logout")
    async def logout_customer(
        authorization: Optional[str] = Header(None),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        token = auth.bearer_token(authorization)
        revoked = await auth.revoke_session(db, token) if token else False
        return {"success": True, "revoked": revoked}

    @app.get("/api/customers/me")
    async def current_customer(
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        me = auth.require_customer(principal)
        return {"success": True, "user": await customers.profile(db, me.customer_id)}

    @app.post("/api/users/login")
    async def login_user(
        payload: LoginRequest,
        db: AsyncIOMotorDatabase = Depends(get_db),
        app_settings: Settings = Depends(get_settings),
    ):
        if not payload.email or not payload.password:
            raise ValidationError("Email and password are required")
        token, user = await auth.login(db, USERS, payload.email, payload.password, session_ttl(app_settings))
        return {"success": True, "token": token, "user": {"id": user["id"], "email": user["email"], "roles": user.get("roles", [])}}

    # Orders

    @app.get("/api/orders")
    async def list_orders(
        order_number: Optional[str] = Query(None, alias="orderNumber"),
        customer_id: Optional[str] = Query(None, alias="customerId"),
        status: Optional[str] = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        if order_number:
            # receipt lookup for the confirmation page
            order = await orders.get_order_by_number(db, order_number)
            return {"success": True, "order": OrderOut.model_validate(order)}

        if isinstance(principal, auth.CustomerPrincipal):
            customer_id = customer_id or principal.customer_id
        if customer_id:
            auth.authorize_customer_access(principal, customer_id)
        else:
            auth.require_admin(principal)

        filter_dict: dict[str, Any] = {}
        if customer_id:
            filter_dict["customer"] = customer_id
        if status:
            filter_dict["status"] = status
        result = await paginate(db, ORDERS, filter_dict, sort=[("created_at", DESCENDING)], page=page, limit=limit)
        return {
            "success": True,
            "orders": [OrderOut.model_validate(d) for d in result.docs],
            "totalDocs": result.total_docs,
            "page": result.page,
            "limit": result.limit,
            "totalPages": result.total_pages,
        }

    @app.patch("/api/orders", response_model=StatusUpdateResponse)
    async def update_order_status(
        payload: StatusUpdateRequest,
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        admin = auth.require_admin(principal)
        if not payload.order_id or not payload.status:
            raise ValidationError("Order ID and status are required")
        order = await orders.update_order_status(
            db, payload.order_id, payload.status, changed_by=admin.user_id, admin_notes=payload.admin_notes
        )
        return StatusUpdateResponse(order=OrderOut.model_validate(order))

    @app.get("/api/orders/cancel")
    async def check_cancellation(
        order_number: Optional[str] = Query(None, alias="orderNumber"),
        customer_id: Optional[str] = Query(None, alias="customerId"),
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        if not order_number or not customer_id:
            raise ValidationError("Order number and customer ID are required")
        auth.authorize_customer_access(principal, customer_id)
        status = await orders.cancellation_status(db, order_number, customer_id)
        return {
            "success": True,
            "canCancel": status["can_cancel"],
            "currentStatus": status["current_status"],
            "message": status["message"],
        }

    @app.post("/api/orders/cancel")
    async def cancel_order(
        payload: CancelRequest,
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        if not payload.order_number or not payload.customer_id:
            raise ValidationError("Order number and customer ID are required")
        auth.authorize_customer_access(principal, payload.customer_id)
        order = await orders.cancel_order(db, payload.order_number, payload.customer_id, payload.reason)
        return {
            "success": True,
            "message": "Order cancelled successfully",
            "order": {"id": order["id"], "orderNumber": order["order_number"], "status": order["status"]},
        }

    @app.get("/api/orders/customer")
    async def customer_orders(
        customer_id: Optional[str] = Query(None, alias="customerId"),
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        if not customer_id:
            raise ValidationError("Customer ID is required")
        auth.authorize_customer_access(principal, customer_id)
        views = await orders.customer_order_history(db, customer_id)
        return {"success": True, "orders": [CustomerOrderView.model_validate(v) for v in views]}

    @app.post("/api/orders/customer")
    async def customer_order(
        payload: CustomerOrderLookup,
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        if not payload.customer_id or not payload.order_number:
            raise ValidationError("Customer ID and order number are required")
        auth.authorize_customer_access(principal, payload.customer_id)
        view = await orders.customer_order(db, payload.customer_id, payload.order_number)
        return {"success": True, "order": CustomerOrderView.model_validate(view)}

    @app.get("/api/orders/{order_id}/history")
    async def order_history(
        order_id: str,
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        auth.require_admin(principal)
        await orders.get_order(db, order_id)
        entries = await orders.list_status_history(db, order_id)
        return {"success": True, "history": [StatusHistoryEntry.model_validate(e) for e in entries]}

    # Store config

    @app.get("/api/store-config")
    async def read_store_config(config: StoreConfig = Depends(get_store_config)):
        return {
            "success": True,
            "config": config,
            "availableServices": available_services(config),
            "isOpen": is_store_open(config),
        }

    @app.post("/api/store-config")
    async def refresh_store_config(
        cache: StoreConfigCache = Depends(get_config_cache),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        cache.invalidate()
        config = await cache.get(db)
        return {"success": True, "message": "Store config cache refreshed", "config": config}

    @app.put("/api/store-config")
    async def write_store_config(
        payload: StoreConfig,
        principal: auth.Principal = Depends(get_principal),
        cache: StoreConfigCache = Depends(get_config_cache),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        admin = auth.require_admin(principal)
        config = await save_store_config(db, payload)
        cache.invalidate()
        logger.info("Store config updated by %s", admin.user_id)
        return {"success": True, "config": config}

    # Catalog

    @app.get("/api/products")
    async def list_products(
        category: Optional[str] = Query(None),
        q: Optional[str] = Query(None),
        vegetarian: Optional[bool] = Query(None),
        on_offer: Optional[bool] = Query(None, alias="onOffer"),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=200),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        products, result = await catalog.list_products(
            db, category=category, q=q, vegetarian=vegetarian, on_offer=on_offer, page=page, limit=limit
        )
        return {
            "success": True,
            "docs": products,
            "totalDocs": result.total_docs,
            "page": result.page,
            "totalPages": result.total_pages,
        }

    @app.get("/api/products/{product_id}", response_model=ProductOut)
    async def product_detail(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
        return await catalog.get_product(db, product_id)

    @app.post("/api/products", response_model=ProductOut, status_code=201)
    async def create_product(
        payload: ProductIn,
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        auth.require_admin(principal)
        return await catalog.create_product(db, payload)

    @app.patch("/api/products/{product_id}", response_model=ProductOut)
    async def update_product(
        product_id: str,
        payload: dict[str, Any],
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        auth.require_admin(principal)
        changes = {to_snake(k): v for k, v in payload.items() if k not in ("id", "createdAt", "updatedAt")}
        return await catalog.update_product(db, product_id, changes)

    @app.get("/api/categories", response_model=list[CategoryOut])
    async def list_categories(db: AsyncIOMotorDatabase = Depends(get_db)):
        return await catalog.list_categories(db)

    @app.post("/api/categories", response_model=CategoryOut, status_code=201)
    async def create_category(
        payload: CategoryIn,
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        auth.require_admin(principal)
        return await catalog.create_category(db, payload)

    # Admin

    @app.get("/api/admin/stats")
    async def admin_stats(
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        auth.require_admin(principal)
        stats = await orders.order_stats(db)
        return {
            "success": True,
            "totalOrders": stats["total_orders"],
            "ordersByStatus": stats["orders_by_status"],
            "revenue": stats["revenue"],
            "customers": stats["customers"],
            "products": stats["products"],
            "pendingStats": stats["pending_stats"],
        }

    @app.post("/api/admin/reconcile-stats")
    async def reconcile_stats(
        principal: auth.Principal = Depends(get_principal),
        db: AsyncIOMotorDatabase = Depends(get_db),
    ):
        auth.require_admin(principal)
        return {"success": True, "applied": await orders.reconcile_customer_stats(db)}


configure_logging(default_settings.LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", default_settings.PORT)))
