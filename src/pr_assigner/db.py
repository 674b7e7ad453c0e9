"""Database schema management, application context and lifespan for the PR Assigner."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
from fastmcp import FastMCP

from pr_assigner.config_schema import StoreConfig, load_store_config
from pr_assigner.engine import AssignmentEngine
from pr_assigner.pool import ConnectionPool
from pr_assigner.store import EntityStore

DB_FILENAME = "pr_assigner.sqlite3"
DB_CONFIG_DIRNAME = "pr-assigner"
DB_PATH_ENV_VAR = "ASSIGNER_DB_PATH"
CONFIG_PATH_ENV_VAR = "ASSIGNER_CONFIG_PATH"
logger = logging.getLogger("pr_assigner")

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS teams (
    name        TEXT PRIMARY KEY,
    created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS users (
    id          TEXT PRIMARY KEY,
    username    TEXT NOT NULL,
    is_active   INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0, 1)),
    team_name   TEXT REFERENCES teams(name),
    created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_users_team ON users(team_name, is_active);

CREATE TABLE IF NOT EXISTS pull_requests (
    id                  TEXT PRIMARY KEY,
    pull_request_name   TEXT NOT NULL,
    author_id           TEXT NOT NULL REFERENCES users(id),
    status              TEXT NOT NULL DEFAULT 'OPEN'
                        CHECK(status IN ('OPEN', 'MERGED')),
    created_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    merged_at           TEXT,
    CHECK ((status = 'MERGED') = (merged_at IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS idx_pull_requests_author ON pull_requests(author_id);
CREATE INDEX IF NOT EXISTS idx_pull_requests_status ON pull_requests(status);

CREATE TABLE IF NOT EXISTS pull_request_reviewers (
    pr_id       TEXT NOT NULL REFERENCES pull_requests(id),
    user_id     TEXT NOT NULL REFERENCES users(id),
    assigned_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    PRIMARY KEY (pr_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_pr_reviewers_user ON pull_request_reviewers(user_id);

CREATE TABLE IF NOT EXISTS audit_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    pull_request_id TEXT,
    event_type      TEXT NOT NULL,
    actor           TEXT,
    old_status      TEXT,
    new_status      TEXT,
    metadata        TEXT,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_audit_pull_request ON audit_events(pull_request_id);
CREATE INDEX IF NOT EXISTS idx_audit_type ON audit_events(event_type);
"""

SCHEMA_MIGRATIONS: list[str] = [
    # Reviewer assignment timestamps (databases created before assigned_at existed)
    "ALTER TABLE pull_request_reviewers ADD COLUMN assigned_at TEXT",
    # Authors can never review their own pull request
    """CREATE TRIGGER IF NOT EXISTS trg_reviewer_not_author_insert
       BEFORE INSERT ON pull_request_reviewers
       WHEN NEW.user_id = (SELECT author_id FROM pull_requests WHERE id = NEW.pr_id)
       BEGIN
           SELECT RAISE(ABORT, 'reviewer cannot be the pull request author');
       END""",
    """CREATE TRIGGER IF NOT EXISTS trg_reviewer_not_author_update
       BEFORE UPDATE OF user_id ON pull_request_reviewers
       WHEN NEW.user_id = (SELECT author_id FROM pull_requests WHERE id = NEW.pr_id)
       BEGIN
           SELECT RAISE(ABORT, 'reviewer cannot be the pull request author');
       END""",
]


@dataclass
class AppContext:
    """Application context holding the store and the assignment engine."""

    store: EntityStore
    engine: AssignmentEngine
    config: StoreConfig


async def ensure_schema(db: aiosqlite.Connection) -> None:
    """Create tables and indexes if they don't exist, then apply migrations."""
    await db.executescript(SCHEMA_SQL)
    for migration in SCHEMA_MIGRATIONS:
        try:
            await db.execute(migration)
        except aiosqlite.OperationalError as exc:
            # Idempotent migration: ignore only duplicate-column errors.
            if "duplicate column name" not in str(exc).lower():
                raise


def _default_user_config_dir() -> Path:
    """Resolve a cross-platform user config directory for assigner state."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / DB_CONFIG_DIRNAME

    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata).expanduser() / DB_CONFIG_DIRNAME
        return Path.home() / "AppData" / "Roaming" / DB_CONFIG_DIRNAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / DB_CONFIG_DIRNAME

    return Path.home() / ".config" / DB_CONFIG_DIRNAME


def resolve_db_path(config: StoreConfig) -> Path:
    """Resolve the database path.

    Priority:
    1) Explicit ASSIGNER_DB_PATH environment variable
    2) ``db_path`` from the store config
    3) Standard user config directory (~/.config, APPDATA, or Application Support)
    """
    configured_path = os.environ.get(DB_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()
    if config.db_path:
        return Path(config.db_path).expanduser()
    return _default_user_config_dir() / DB_FILENAME


def _config_path() -> Path:
    configured_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()
    return _default_user_config_dir() / "config.json"


def load_config() -> StoreConfig:
    """Load store config, falling back to defaults when no config file exists."""
    config_path = _config_path()
    try:
        config = load_store_config(config_path)
    except FileNotFoundError:
        logger.info("No config file, using store defaults (%s)", config_path)
        return StoreConfig()
    logger.info("Loaded store config from %s", config_path)
    return config


async def open_store(config: StoreConfig, db_path: Path | str) -> EntityStore:
    """Open a connection pool on ``db_path`` and make sure the schema exists."""
    pool = ConnectionPool(
        db_path,
        size=config.pool_size,
        acquire_timeout=config.pool_timeout_seconds,
        busy_timeout_ms=config.busy_timeout_ms,
        journal_mode=config.journal_mode,
    )
    await pool.open()
    try:
        async with pool.acquire() as db:
            await ensure_schema(db)
    except BaseException:
        await pool.close()
        raise
    return EntityStore(pool)


@asynccontextmanager
async def assigner_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the connection pool at server startup, close it on shutdown."""
    del server
    config = load_config()
    db_path = resolve_db_path(config)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = await open_store(config, db_path)
    engine = AssignmentEngine(store, default_timeout=config.operation_timeout_seconds)

    logger.info("Assigner ready - db=%s, pool=%s", db_path, config.pool_size)
    try:
        yield AppContext(store=store, engine=engine, config=config)
    finally:
        await store.pool.close()
