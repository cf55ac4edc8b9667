"""
Shared fixtures: a fresh SQLite database per test, an ASGI client bound to
it, and helpers to create users and sign tokens for them.
"""
import os
from datetime import datetime, timedelta, timezone
from itertools import count

os.environ.setdefault("JWT_SECRET", "proxa-people-test-signing-secret-0123456789")
os.environ["RATE_LIMIT_ENABLED"] = "0"

import httpx
import jwt
import pytest
import pytest_asyncio

from app.core import config
from app.core.database.engine import build_engine, build_sessionmaker, create_tables, get_db
from app.features.users.models import User, UserRole
from app.features.permissions import service
from app.features.permissions.models import PermissionAction
from app.main import app


_user_counter = count(1)


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def api_url():
    def build(path: str) -> str:
        return f"{config.API_PREFIX}{path}"
    return build


def make_token(subject: str, expires_in: timedelta = timedelta(hours=1), **claims) -> str:
    payload = {
        "sub": subject,
        "exp": datetime.now(timezone.utc) + expires_in,
        **claims,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {make_token(user.external_id)}"}


async def create_user(db, role: UserRole = UserRole.EMPLOYEE, **fields) -> User:
    n = next(_user_counter)
    user = User(
        external_id=fields.pop("external_id", f"idp|{n}"),
        email=fields.pop("email", f"user{n}@proxa.test"),
        first_name=fields.pop("first_name", "Test"),
        last_name=fields.pop("last_name", f"User{n}"),
        role=role,
        **fields,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
def make_user(db):
    async def factory(role: UserRole = UserRole.EMPLOYEE, **fields) -> User:
        return await create_user(db, role, **fields)
    return factory


@pytest_asyncio.fixture
async def goals_catalog(db):
    """A 'goals' resource with every action cataloged; returns action -> Permission."""
    resource = await service.create_resource(db, "goals", "Goal Management", "Individual and team goals")
    permissions = {}
    for action in PermissionAction:
        permissions[action] = await service.create_permission(db, resource.id, action)
    return permissions


@pytest_asyncio.fixture
async def seeded(db):
    """The default permission matrix."""
    from scripts.seed_permissions import seed
    await seed(db)
