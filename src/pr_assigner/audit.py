"""Audit event recording helpers for the PR Assigner."""

from __future__ import annotations

import json

import aiosqlite


async def record_event(
    db: aiosqlite.Connection,
    pull_request_id: str | None,
    event_type: str,
    actor: str | None = None,
    old_status: str | None = None,
    new_status: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Record an audit event within the current transaction.

    Must be called INSIDE an existing BEGIN IMMEDIATE...COMMIT block.
    The caller is responsible for transaction management.
    """
    metadata_json = json.dumps(metadata) if metadata else None
    await db.execute(
        """INSERT INTO audit_events
           (pull_request_id, event_type, actor, old_status, new_status, metadata, created_at)
           VALUES (?, ?, ?, ?, ?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))""",
        (pull_request_id, event_type, actor, old_status, new_status, metadata_json),
    )


async def fetch_events(
    db: aiosqlite.Connection,
    pull_request_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """Return audit events oldest first, optionally scoped to one pull request."""
    where_clause = "WHERE pull_request_id = ?" if pull_request_id is not None else ""
    params: tuple = (pull_request_id, limit) if pull_request_id is not None else (limit,)
    cursor = await db.execute(
        f"""SELECT id, pull_request_id, event_type, actor, old_status, new_status,
                   metadata, created_at
            FROM audit_events
            {where_clause}
            ORDER BY id ASC
            LIMIT ?""",
        params,
    )
    events = []
    for row in await cursor.fetchall():
        event = dict(row)
        if event["metadata"] is not None:
            try:
                event["metadata"] = json.loads(event["metadata"])
            except (json.JSONDecodeError, TypeError):
                event["metadata"] = row["metadata"]
        events.append(event)
    return events
