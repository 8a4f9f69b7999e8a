"""Pytest configuration and fixtures for ProgressCalc tests.

Every test gets an in-memory SQLite configuration and fresh singletons.
Database fixtures build their own engine so tests never share state.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from progresscalc import config as config_module
from progresscalc.core import locking
from progresscalc.db.models import Base, ComponentModel
from progresscalc.models import Actor
from progresscalc.templates.seed import seed_system_templates


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """Isolated configuration and lock singletons per test."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("RECALC_CHUNK_SIZE", raising=False)
    monkeypatch.delenv("TEMPLATE_EDITOR_ROLES", raising=False)
    monkeypatch.delenv("SYSTEM_TEMPLATES_PATH", raising=False)
    config_module.reset_config()
    monkeypatch.setattr(locking, "_template_lock", None)
    yield
    config_module.reset_config()


@pytest.fixture
def test_project_id() -> str:
    """Test project ID."""
    return "proj-alpha"


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id="pm@acme.ie", role="project_manager")


@pytest.fixture
def foreman() -> Actor:
    return Actor(user_id="foreman@acme.ie", role="foreman")


@pytest_asyncio.fixture()
async def db_session() -> AsyncSession:
    """Create in-memory database for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def seeded_session(db_session: AsyncSession) -> AsyncSession:
    """Database with the packaged system templates loaded."""
    await seed_system_templates(db_session, config_module.get_config().seed_templates_path)
    await db_session.commit()
    return db_session


async def _add_components(
    session: AsyncSession,
    project_id: str,
    component_type: str,
    states: Iterable[Mapping[str, Any]],
    percent_complete: int = 0,
) -> list[ComponentModel]:
    """Insert components directly, bypassing progress calculation."""
    components = [
        ComponentModel(
            project_id=project_id,
            component_type=component_type,
            milestone_state=dict(state),
            percent_complete=percent_complete,
        )
        for state in states
    ]
    session.add_all(components)
    await session.commit()
    return components


async def _read_percents(session: AsyncSession, project_id: str, component_type: str) -> dict:
    """Stored percent_complete by component id, read straight from the table."""
    stmt = select(ComponentModel.id, ComponentModel.percent_complete).where(
        ComponentModel.project_id == project_id,
        ComponentModel.component_type == component_type,
    )
    return {row.id: row.percent_complete for row in (await session.execute(stmt)).all()}


@pytest.fixture
def add_components():
    return _add_components


@pytest.fixture
def read_percents():
    return _read_percents
