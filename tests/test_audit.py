"""Tests for the audit event recording helpers."""

from __future__ import annotations

import json
import re

import aiosqlite

from pr_assigner.audit import fetch_events, record_event


async def test_record_event_basic(db: aiosqlite.Connection) -> None:
    """record_event inserts a row with all fields populated."""
    meta = {"reviewers": ["bob", "carol"]}

    await db.execute("BEGIN IMMEDIATE")
    await record_event(
        db,
        pull_request_id="pr-1",
        event_type="pull_request_created",
        actor="alice",
        old_status=None,
        new_status="OPEN",
        metadata=meta,
    )
    await db.execute("COMMIT")

    cursor = await db.execute(
        "SELECT * FROM audit_events WHERE pull_request_id = ?", ("pr-1",)
    )
    row = await cursor.fetchone()
    assert row is not None
    assert row["event_type"] == "pull_request_created"
    assert row["actor"] == "alice"
    assert row["old_status"] is None
    assert row["new_status"] == "OPEN"
    assert json.loads(row["metadata"]) == meta


async def test_record_event_minimal(db: aiosqlite.Connection) -> None:
    """record_event works with only required fields (optional fields None)."""
    await db.execute("BEGIN IMMEDIATE")
    await record_event(db, pull_request_id=None, event_type="team_created")
    await db.execute("COMMIT")

    cursor = await db.execute("SELECT * FROM audit_events")
    row = await cursor.fetchone()
    assert row is not None
    assert row["pull_request_id"] is None
    assert row["actor"] is None
    assert row["metadata"] is None


async def test_record_event_timestamps_iso8601(db: aiosqlite.Connection) -> None:
    """created_at column value matches ISO 8601 pattern."""
    await db.execute("BEGIN IMMEDIATE")
    await record_event(db, pull_request_id="pr-1", event_type="pull_request_merged")
    await db.execute("COMMIT")

    cursor = await db.execute("SELECT created_at FROM audit_events")
    ts = (await cursor.fetchone())["created_at"]
    assert re.match(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d+Z", ts)


async def test_record_event_rolled_back_with_transaction(db: aiosqlite.Connection) -> None:
    await db.execute("BEGIN IMMEDIATE")
    await record_event(db, pull_request_id="pr-1", event_type="pull_request_created")
    await db.execute("ROLLBACK")

    assert await fetch_events(db) == []


async def test_fetch_events_oldest_first_and_scoped(db: aiosqlite.Connection) -> None:
    await db.execute("BEGIN IMMEDIATE")
    await record_event(db, "pr-1", "pull_request_created", new_status="OPEN")
    await record_event(db, "pr-2", "pull_request_created", new_status="OPEN")
    await record_event(
        db, "pr-1", "reviewer_reassigned",
        metadata={"old_reviewer_id": "bob", "new_reviewer_id": "carol"},
    )
    await record_event(db, "pr-1", "pull_request_merged", old_status="OPEN", new_status="MERGED")
    await db.execute("COMMIT")

    events = await fetch_events(db, pull_request_id="pr-1")
    assert [e["event_type"] for e in events] == [
        "pull_request_created",
        "reviewer_reassigned",
        "pull_request_merged",
    ]
    assert events[1]["metadata"] == {"old_reviewer_id": "bob", "new_reviewer_id": "carol"}
    ids = [e["id"] for e in events]
    assert ids == sorted(ids)

    assert len(await fetch_events(db)) == 4
    assert len(await fetch_events(db, limit=2)) == 2


async def test_fetch_events_keeps_undecodable_metadata(db: aiosqlite.Connection) -> None:
    await db.execute(
        "INSERT INTO audit_events (pull_request_id, event_type, metadata) VALUES ('pr-1', 'x', 'not json')"
    )
    events = await fetch_events(db, pull_request_id="pr-1")
    assert events[0]["metadata"] == "not json"
