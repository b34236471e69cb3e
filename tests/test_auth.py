from datetime import datetime, timedelta, timezone

import pytest

from circle_kitchen import auth
from circle_kitchen.database import CUSTOMERS, USERS, create_document
from circle_kitchen.errors import AuthenticationError, PermissionDeniedError


async def make_customer(db, email="layla@example.com", password="secret123", **extra):
    return await create_document(
        db,
        CUSTOMERS,
        {"email": email, "password_hash": auth.hash_password(password), "is_active": True, **extra},
    )


def test_password_hashing():
    hashed = auth.hash_password("secret123")
    assert hashed != "secret123"
    assert auth.verify_password("secret123", hashed)
    assert not auth.verify_password("wrong", hashed)
    assert not auth.verify_password(None, hashed)
    assert not auth.verify_password("secret123", None)


def test_bearer_token():
    assert auth.bearer_token("Bearer abc") == "abc"
    assert auth.bearer_token("bearer abc") == "abc"
    assert auth.bearer_token("Basic abc") is None
    assert auth.bearer_token("Bearer") is None
    assert auth.bearer_token(None) is None


async def test_customer_session_resolves(db):
    customer = await make_customer(db)
    token, account = await auth.login(db, CUSTOMERS, " Layla@Example.com", "secret123", timedelta(hours=2))
    assert account["id"] == customer["id"]
    principal = await auth.resolve_principal(db, token)
    assert principal == auth.CustomerPrincipal(customer_id=customer["id"])


async def test_login_rejects_bad_credentials(db):
    await make_customer(db)
    with pytest.raises(AuthenticationError, match="Invalid email or password"):
        await auth.login(db, CUSTOMERS, "layla@example.com", "nope", timedelta(hours=2))
    with pytest.raises(AuthenticationError, match="Invalid email or password"):
        await auth.login(db, CUSTOMERS, "nobody@example.com", "secret123", timedelta(hours=2))


async def test_login_rejects_disabled_account(db):
    await make_customer(db, is_active=False)
    with pytest.raises(AuthenticationError, match="disabled"):
        await auth.login(db, CUSTOMERS, "layla@example.com", "secret123", timedelta(hours=2))


async def test_expired_session_is_anonymous(db):
    customer = await make_customer(db)
    issued = datetime.now(timezone.utc) - timedelta(hours=3)
    token = await auth.issue_session(db, CUSTOMERS, customer["id"], timedelta(hours=2), now=issued)
    assert isinstance(await auth.resolve_principal(db, token), auth.Anonymous)
    assert await db["sessions"].count_documents({}) == 0


async def test_unknown_token_is_anonymous(db):
    assert isinstance(await auth.resolve_principal(db, "made-up"), auth.Anonymous)
    assert isinstance(await auth.resolve_principal(db, None), auth.Anonymous)


async def test_revoked_session(db):
    customer = await make_customer(db)
    token = await auth.issue_session(db, CUSTOMERS, customer["id"], timedelta(hours=2))
    assert await auth.revoke_session(db, token)
    assert isinstance(await auth.resolve_principal(db, token), auth.Anonymous)


async def test_admin_session(db, admin_token):
    principal = await auth.resolve_principal(db, admin_token)
    assert isinstance(principal, auth.Admin)


async def test_user_without_admin_role_is_not_admin(db):
    await create_document(db, USERS, {"email": "staff@example.com", "password_hash": auth.hash_password("pw-123456"), "roles": ["editor"]})
    token, _ = await auth.login(db, USERS, "staff@example.com", "pw-123456", timedelta(hours=1))
    assert isinstance(await auth.resolve_principal(db, token), auth.Anonymous)


async def test_ensure_admin_user_is_idempotent(db):
    await auth.ensure_admin_user(db, "Admin@Example.com", "first-pass")
    await auth.ensure_admin_user(db, "admin@example.com", "second-pass")
    assert await db[USERS].count_documents({}) == 1
    user = await db[USERS].find_one({})
    assert auth.verify_password("first-pass", user["password_hash"])


def test_authorization_rules():
    admin = auth.Admin(user_id="u1")
    me = auth.CustomerPrincipal(customer_id="c1")
    nobody = auth.Anonymous()

    assert auth.require_admin(admin) is admin
    with pytest.raises(PermissionDeniedError):
        auth.require_admin(me)
    with pytest.raises(AuthenticationError):
        auth.require_admin(nobody)

    auth.authorize_customer_access(admin, "c2")
    auth.authorize_customer_access(me, "c1")
    with pytest.raises(PermissionDeniedError):
        auth.authorize_customer_access(me, "c2")
    with pytest.raises(AuthenticationError):
        auth.authorize_customer_access(nobody, "c1")


async def test_sessions_carry_a_ttl_index(db):
    indexes = await db["sessions"].index_information()
    assert indexes["expires_at_1"]["expireAfterSeconds"] == 0
