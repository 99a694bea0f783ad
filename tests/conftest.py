"""Pytest configuration and fixtures for InfraLens tests.

Provides an in-memory database session, tenant/plan ids, actors and small
builders for detection payloads.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from infralens.config import reset_config
from infralens.db.models import Base
from infralens.geometry import Geometry
from infralens.models import Actor, DetectionPayload, ObjectCreate


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("DEFAULT_ORG_ID", "test-org")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture()
async def db_session() -> AsyncSession:
    """Create in-memory database for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@pytest.fixture
def org_id() -> str:
    """Test organization ID."""
    return "test-org"


@pytest.fixture
def plan_id() -> str:
    """Test floor plan ID."""
    return "plan-ground-floor"


@pytest.fixture
def editor() -> Actor:
    return Actor(id="editor@example.com", can_edit=True, can_review=False)


@pytest.fixture
def reviewer() -> Actor:
    return Actor(id="reviewer@example.com", can_edit=True, can_review=True)


def _detection(
    plan_id: str,
    *,
    x: float = 0,
    y: float = 0,
    width: float = 10,
    height: float = 10,
    category: str = "FURNITURE",
    type_: str = "TABLE",
    confidence: float = 0.95,
    **extra,
) -> DetectionPayload:
    """AI detection payload for a box anchored at (x, y)."""
    return DetectionPayload(
        plan_id=plan_id,
        category=category,
        type=type_,
        geometry=Geometry.from_box(x, y, width, height),
        confidence=confidence,
        **extra,
    )


def _manual(
    plan_id: str,
    *,
    x: float = 0,
    y: float = 0,
    width: float = 10,
    height: float = 10,
    category: str = "FURNITURE",
    type_: str = "TABLE",
    **extra,
) -> ObjectCreate:
    """Manual creation payload for a box anchored at (x, y)."""
    return ObjectCreate(
        plan_id=plan_id,
        category=category,
        type=type_,
        geometry=Geometry.from_box(x, y, width, height),
        **extra,
    )


def _centered(cx: float, cy: float, size: float = 10) -> dict:
    return {"x": cx - size / 2, "y": cy - size / 2, "width": size, "height": size}


@pytest.fixture
def make_detection(plan_id: str):
    """Builder for detection payloads on the test plan."""

    def build(plan: str | None = None, **kwargs) -> DetectionPayload:
        return _detection(plan or plan_id, **kwargs)

    return build


@pytest.fixture
def make_manual(plan_id: str):
    """Builder for manual creation payloads on the test plan."""

    def build(plan: str | None = None, **kwargs) -> ObjectCreate:
        return _manual(plan or plan_id, **kwargs)

    return build


@pytest.fixture
def centered():
    """Box keyword arguments for an object centered on (cx, cy)."""
    return _centered
