"""
Allotment - Test Configuration

Pytest fixtures and configuration.

Tests run against in-memory SQLite (aiosqlite) and fakeredis, so no
PostgreSQL or Redis server is needed.
"""

import os

# Must be set before the app settings are first loaded
os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite://")
os.environ.setdefault("INTERNAL_API_KEY", "")

from datetime import datetime
from typing import AsyncGenerator, Callable, Dict, List, Optional
from uuid import uuid4

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base, get_async_session
from app.dependencies import get_webhook_service
from app.models.entitlement import Feature, Package, PackageFeature
from app.models.entitlement_enums import FeatureType, Principal, ResetType, UserTier
from app.models.tenant import Namespace, Workspace
from app.models.user import User
from app.services.cache_service import CacheService, set_cache_service
from app.services.entitlement_service import EntitlementService
from app.services.feature_catalog import FeatureCatalog
from app.services.webhook_service import EntitlementWebhookService
from main import app


# Anchors every fixed-time test; far enough back that real "now" is always later
EPOCH = datetime(2025, 1, 1)


def _create_test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT (begin_nested) works on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    engine = _create_test_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def cache() -> AsyncGenerator[CacheService, None]:
    """CacheService backed by fakeredis, installed as the global instance."""
    service = CacheService(client=fakeredis.aioredis.FakeRedis(decode_responses=True))
    set_cache_service(service)
    yield service
    await service.close()
    set_cache_service(None)


@pytest.fixture
def enqueued() -> List[str]:
    """Delivery ids handed to the queue."""
    return []


@pytest.fixture
def webhooks(db_session: AsyncSession, enqueued: List[str]) -> EntitlementWebhookService:
    return EntitlementWebhookService(db_session, enqueue=enqueued.append)


@pytest.fixture
def entitlements(
    db_session: AsyncSession,
    cache: CacheService,
    webhooks: EntitlementWebhookService,
) -> EntitlementService:
    return EntitlementService(db_session, cache, webhooks)


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    cache: CacheService,
    enqueued: List[str],
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        yield db_session

    async def override_get_webhook_service():
        return EntitlementWebhookService(db_session, enqueue=enqueued.append)

    app.dependency_overrides[get_async_session] = override_get_session
    app.dependency_overrides[get_webhook_service] = override_get_webhook_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# DATA FACTORIES
# ===========================================

@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable:
    async def _make(tier: UserTier = UserTier.FREE, tier_expires_at: Optional[datetime] = None) -> User:
        user = User(
            email=f"user-{uuid4().hex[:8]}@example.com",
            name="Test User",
            tier=tier,
            tier_expires_at=tier_expires_at,
        )
        db_session.add(user)
        await db_session.flush()
        return user
    return _make


@pytest.fixture
def make_workspace(db_session: AsyncSession) -> Callable:
    async def _make(owner: Optional[User] = None, is_active: bool = True) -> Workspace:
        workspace = Workspace(
            name="Acme",
            slug=f"acme-{uuid4().hex[:8]}",
            owner_user_id=owner.id if owner else None,
            is_active=is_active,
        )
        db_session.add(workspace)
        await db_session.flush()
        return workspace
    return _make


@pytest.fixture
def make_namespace(db_session: AsyncSession) -> Callable:
    async def _make(workspace: Optional[Workspace] = None, owner: Optional[User] = None) -> Namespace:
        namespace = Namespace(
            name="Marketing",
            workspace_id=workspace.id if workspace else None,
            owner_user_id=owner.id if owner else None,
        )
        db_session.add(namespace)
        await db_session.flush()
        return namespace
    return _make


@pytest.fixture
def make_feature(db_session: AsyncSession, cache: CacheService) -> Callable:
    async def _make(
        code: str,
        name: Optional[str] = None,
        type: FeatureType = FeatureType.LIMIT,
        reset_type: ResetType = ResetType.NONE,
        **kwargs,
    ) -> Feature:
        return await FeatureCatalog(db_session, cache).create_feature(
            code=code,
            name=name or code.split(".")[-1].replace("_", " ").title(),
            type=type,
            reset_type=reset_type,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_package(db_session: AsyncSession) -> Callable:
    async def _make(code: str, grants: Dict[str, Optional[int]], is_base: bool = False) -> Package:
        package = Package(
            code=code,
            name=code.title(),
            is_base_package=is_base,
            features=[
                PackageFeature(feature_code=feature_code, limit_value=limit)
                for feature_code, limit in grants.items()
            ],
        )
        db_session.add(package)
        await db_session.flush()
        return package
    return _make


@pytest.fixture
def provision(entitlements: EntitlementService) -> Callable:
    """Assign a package, started well in the past so fixed-time queries see it."""
    async def _provision(principal: Principal, package_code: str, **kwargs):
        kwargs.setdefault("starts_at", EPOCH)
        return await entitlements.grants.provision_package(principal, package_code, **kwargs)
    return _provision
