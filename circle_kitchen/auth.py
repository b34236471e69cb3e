"""
Authentication & authorization helpers.

Passwords are hashed with werkzeug; sessions are opaque random bearer tokens
whose sha256 digest is stored in the `sessions` collection. A resolved caller
is a Principal: Admin, CustomerPrincipal or Anonymous.
"""
from __future__ import annotations
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from motor.motor_asyncio import AsyncIOMotorDatabase
from werkzeug.security import check_password_hash, generate_password_hash

from circle_kitchen.database import CUSTOMERS, SESSIONS, USERS, as_utc, find_document, get_document, utcnow
from circle_kitchen.errors import AuthenticationError, PermissionDeniedError


@dataclass(frozen=True)
class Admin:
    user_id: str


@dataclass(frozen=True)
class CustomerPrincipal:
    customer_id: str


@dataclass(frozen=True)
class Anonymous:
    pass


Principal = Union[Admin, CustomerPrincipal, Anonymous]


# Passwords

def hash_password(plain: str) -> str:
    return generate_password_hash(plain)


def verify_password(plain: Optional[str], hashed: Optional[str]) -> bool:
    if not plain or not hashed:
        return False
    return check_password_hash(hashed, plain)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# Sessions

def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def issue_session(
    db: AsyncIOMotorDatabase,
    collection: str,
    subject_id: str,
    ttl: timedelta,
    now: Optional[datetime] = None,
) -> str:
    now = now or utcnow()
    token = secrets.token_urlsafe(32)
    await db[SESSIONS].insert_one(
        {
            "token_hash": _digest(token),
            "collection": collection,
            "subject": subject_id,
            "created_at": now,
            "expires_at": now + ttl,
        }
    )
    return token


async def revoke_session(db: AsyncIOMotorDatabase, token: str) -> bool:
    result = await db[SESSIONS].delete_one({"token_hash": _digest(token)})
    return result.deleted_count > 0


async def login(
    db: AsyncIOMotorDatabase,
    collection: str,
    email: str,
    password: str,
    ttl: timedelta,
) -> tuple[str, dict[str, Any]]:
    """Check credentials against `collection`; returns (token, account document)."""
    account = await find_document(db, collection, {"email": normalize_email(email)})
    if account is None or not verify_password(password, account.get("password_hash")):
        raise AuthenticationError("Invalid email or password")
    if account.get("is_active") is False:
        raise AuthenticationError("Account is disabled")
    token = await issue_session(db, collection, account["id"], ttl)
    return token, account


async def resolve_principal(
    db: AsyncIOMotorDatabase,
    token: Optional[str],
    now: Optional[datetime] = None,
) -> Principal:
    if not token:
        return Anonymous()
    session = await db[SESSIONS].find_one({"token_hash": _digest(token)})
    if session is None:
        return Anonymous()
    if as_utc(session["expires_at"]) <= (now or utcnow()):
        await db[SESSIONS].delete_one({"_id": session["_id"]})
        return Anonymous()

    if session["collection"] == CUSTOMERS:
        return CustomerPrincipal(customer_id=session["subject"])
    if session["collection"] == USERS:
        user = await get_document(db, USERS, session["subject"])
        if user and "admin" in (user.get("roles") or []):
            return Admin(user_id=user["id"])
    return Anonymous()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value:
        return None
    return value.strip()


# Authorization

def require_admin(principal: Principal) -> Admin:
    if isinstance(principal, Admin):
        return principal
    if isinstance(principal, Anonymous):
        raise AuthenticationError("Authentication required")
    raise PermissionDeniedError("Admin access required")


def require_customer(principal: Principal) -> CustomerPrincipal:
    if isinstance(principal, CustomerPrincipal):
        return principal
    raise AuthenticationError("Authentication required")


def authorize_customer_access(principal: Principal, customer_id: str) -> None:
    """Admins may act on any customer; a customer only on themselves."""
    if isinstance(principal, Admin):
        return
    if isinstance(principal, Anonymous):
        raise AuthenticationError("Authentication required")
    if principal.customer_id != customer_id:
        raise PermissionDeniedError("You can only access your own orders")


async def ensure_admin_user(db: AsyncIOMotorDatabase, email: str, password: str) -> None:
    email = normalize_email(email)
    await db[USERS].update_one(
        {"email": email},
        {
            "$setOnInsert": {
                "email": email,
                "password_hash": hash_password(password),
                "roles": ["admin"],
                "created_at": utcnow(),
            }
        },
        upsert=True,
    )
