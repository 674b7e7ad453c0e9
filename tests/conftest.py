"""Shared test fixtures for the PR Assigner."""

from __future__ import annotations

import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
import pytest

from pr_assigner.config_schema import StoreConfig
from pr_assigner.db import AppContext, ensure_schema, open_store
from pr_assigner.engine import AssignmentEngine
from pr_assigner.models import Team, TeamMember
from pr_assigner.pool import open_connection
from pr_assigner.store import EntityStore


@dataclass
class _MockFastMCP:
    """Stands in for the FastMCP instance so ctx.fastmcp._lifespan_result works."""

    _lifespan_result: AppContext


@dataclass
class MockContext:
    """Minimal mock for fastmcp.Context that provides fastmcp._lifespan_result."""

    fastmcp: _MockFastMCP

    @property
    def lifespan_context(self) -> AppContext:
        """Backwards-compat alias used by tests that access ctx.lifespan_context directly."""
        return self.fastmcp._lifespan_result


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """File-backed SQLite path; pooled connections cannot share :memory:."""
    return tmp_path / "assigner.sqlite3"


@pytest.fixture
def store_config() -> StoreConfig:
    return StoreConfig(pool_size=4, pool_timeout_seconds=1.0, busy_timeout_ms=5000)


@pytest.fixture
async def db(db_path: Path) -> AsyncIterator[aiosqlite.Connection]:
    """Single raw connection with the schema applied, for schema-level tests."""
    conn = await open_connection(db_path)
    await ensure_schema(conn)
    yield conn
    await conn.close()


@pytest.fixture
async def store(store_config: StoreConfig, db_path: Path) -> AsyncIterator[EntityStore]:
    entity_store = await open_store(store_config, db_path)
    yield entity_store
    await entity_store.pool.close()


@pytest.fixture
def engine(store: EntityStore) -> AssignmentEngine:
    """Engine with a seeded RNG so runs are repeatable."""
    return AssignmentEngine(store, rng=random.Random(42), default_timeout=10.0)


@pytest.fixture
def ctx(store: EntityStore, engine: AssignmentEngine, store_config: StoreConfig) -> MockContext:
    """Create a MockContext wrapping the store and engine fixtures."""
    app = AppContext(store=store, engine=engine, config=store_config)
    return MockContext(fastmcp=_MockFastMCP(_lifespan_result=app))


@pytest.fixture
def seed_team(store: EntityStore) -> Callable[..., Awaitable[Team]]:
    """Create a team from (user_id, is_active) pairs or plain user ids."""

    async def _seed(team_name: str, *members: str | tuple[str, bool]) -> Team:
        parsed = []
        for member in members:
            user_id, is_active = member if isinstance(member, tuple) else (member, True)
            parsed.append(TeamMember(user_id=user_id, username=user_id.title(), is_active=is_active))
        return await store.create_team(team_name, parsed, actor="test")

    return _seed
