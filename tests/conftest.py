"""Pytest configuration and fixtures for permission tests.

Provides an in-memory database with the seeded catalog, two tenant
companies, a user factory, a fakeredis-backed permission cache and a small
FastAPI app exercising the guards.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import jwt
import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core import config
from app.core.database.engine import get_db, init_db
from app.features.companies.models import Company
from app.features.permissions import service
from app.features.permissions.cache import PermissionCache
from app.features.permissions.catalog import seed_catalog
from app.features.permissions.dependencies import (
    require_any_permission,
    require_company_access,
    require_permissions,
)
from app.features.permissions.exceptions import install_exception_handlers
from app.features.permissions.schemas import RoleCreate
from app.features.users.models import User


TEST_JWT_SECRET = "test-secret-with-enough-bytes-for-hs256"


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(bind=engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    async_session = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(db_session: AsyncSession) -> dict:
    """Seeded permission catalog, keyed by permission name."""
    permissions_map, _roles_map = await seed_catalog(db_session)
    return permissions_map


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def company_a(db_session: AsyncSession) -> Company:
    company = Company(name="Company A")
    db_session.add(company)
    await db_session.commit()
    return company


@pytest_asyncio.fixture
async def company_b(db_session: AsyncSession) -> Company:
    company = Company(name="Company B")
    db_session.add(company)
    await db_session.commit()
    return company


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Factory creating committed users; company=None makes a platform user."""
    counter = 0

    async def _make_user(company: Company | None = None, is_active: bool = True) -> User:
        nonlocal counter
        counter += 1
        user = User(
            external_id=f"idp|user-{counter}",
            email=f"user{counter}@example.com",
            name=f"User {counter}",
            company_id=company.id if company else None,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest_asyncio.fixture
async def make_role(db_session: AsyncSession, catalog: dict):
    """Factory creating a platform-created role holding the named permissions."""

    async def _make_role(name: str, permission_names: list[str], company: Company | None = None):
        role = await service.create_role(
            db_session, RoleCreate(name=name, company_id=company.id if company else None)
        )
        await service.replace_role_permissions(
            db_session, role.id, [catalog[n].id for n in permission_names]
        )
        return role

    return _make_role


# ── Redis Fixtures ───────────────────────────────────────────────

@pytest_asyncio.fixture
async def redis_client():
    """In-process Redis for tests."""
    client = FakeAsyncRedis(decode_responses=True)

    yield client

    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(redis_client) -> PermissionCache:
    return PermissionCache(redis_client, ttl=3600, prefix="test-permissions")


# ── Guard App ────────────────────────────────────────────────────

@pytest.fixture
def token_for(monkeypatch):
    """Issue bearer tokens the way the identity provider would."""
    monkeypatch.setattr(config, "JWT_SECRET", TEST_JWT_SECRET)

    def _token_for(user: User, expires_in: timedelta = timedelta(minutes=5)) -> dict:
        token = jwt.encode(
            {"sub": user.external_id, "exp": datetime.now(timezone.utc) + expires_in},
            TEST_JWT_SECRET,
            algorithm=config.JWT_ALGORITHM,
        )
        return {"Authorization": f"Bearer {token}"}

    return _token_for


@pytest.fixture
def guarded_app(db_session: AsyncSession, cache: PermissionCache) -> FastAPI:
    """Minimal app with one route per guard."""
    app = FastAPI()
    install_exception_handlers(app)
    app.state.permission_cache = cache

    @app.get("/teams")
    async def list_teams(user: User = Depends(require_permissions("team.read"))):
        return {"user_id": user.id}

    @app.post("/teams")
    async def create_team(user: User = Depends(require_permissions("team.create", "team.read"))):
        return {"user_id": user.id}

    @app.get("/reports")
    async def reports(user: User = Depends(require_any_permission("system.logs", "team.read"))):
        return {"user_id": user.id}

    @app.get("/companies/{company_id}")
    async def read_company(company_id: str, user: User = Depends(require_company_access)):
        return {"company_id": company_id}

    @app.get("/roles/{role_id}")
    async def read_role(role_id: str, db: AsyncSession = Depends(get_db)):
        role = await service.get_role(db, role_id)
        return {"id": role.id, "name": role.name}

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest_asyncio.fixture
async def client(guarded_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=guarded_app), base_url="http://test") as client:
        yield client
