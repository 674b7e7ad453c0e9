"""Entity store: users, teams, pull requests and reviewer assignments on SQLite.

Every multi-statement mutation runs inside ``EntityStore.transaction()``,
which opens ``BEGIN IMMEDIATE`` on a pooled connection and commits on normal
exit. Any exception, cancellation included, rolls the transaction back
before the connection goes back to the pool. SQLite errors are translated
into the error kinds from ``pr_assigner.errors`` at this layer so callers
never see driver exceptions.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Iterator

import aiosqlite

from pr_assigner.audit import fetch_events, record_event
from pr_assigner.errors import (
    ConflictError,
    InactiveAuthorError,
    InvalidStateError,
    NoAvailableReviewerError,
    NotAssignedError,
    NotFoundError,
    StoreUnavailableError,
)
from pr_assigner.models import (
    AuditEventType,
    MergeResult,
    PullRequest,
    PullRequestShort,
    PullRequestStatus,
    ReviewStatistics,
    Team,
    TeamMember,
    User,
)
from pr_assigner.pool import ConnectionPool
from pr_assigner.state_machine import can_reassign, validate_transition
from pr_assigner.stats import collect_review_statistics

logger = logging.getLogger("pr_assigner")

NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


async def _commit(db: aiosqlite.Connection) -> None:
    await db.execute("COMMIT")


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    with contextlib.suppress(Exception):
        await db.execute("ROLLBACK")


@contextlib.contextmanager
def translate_db_errors() -> Iterator[None]:
    """Map driver exceptions onto store error kinds."""
    try:
        yield
    except aiosqlite.IntegrityError as exc:
        message = str(exc)
        if "FOREIGN KEY" in message.upper():
            raise NotFoundError(f"Referenced record does not exist ({message})") from exc
        raise ConflictError(message) from exc
    except aiosqlite.OperationalError as exc:
        raise StoreUnavailableError(f"Database unavailable: {exc}") from exc


def _user_from_row(row: aiosqlite.Row) -> User:
    return User(
        user_id=row["id"],
        username=row["username"],
        is_active=bool(row["is_active"]),
        team_name=row["team_name"],
    )


async def _fetch_user(db: aiosqlite.Connection, user_id: str) -> User | None:
    cursor = await db.execute(
        "SELECT id, username, is_active, team_name FROM users WHERE id = ?",
        (user_id,),
    )
    row = await cursor.fetchone()
    return _user_from_row(row) if row is not None else None


async def _fetch_active_teammates(
    db: aiosqlite.Connection,
    team_name: str,
    exclude_id: str,
) -> list[User]:
    cursor = await db.execute(
        """SELECT id, username, is_active, team_name
           FROM users
           WHERE team_name = ? AND is_active = 1 AND id != ?
           ORDER BY username, id""",
        (team_name, exclude_id),
    )
    return [_user_from_row(row) for row in await cursor.fetchall()]


async def _fetch_pull_request(db: aiosqlite.Connection, pull_request_id: str) -> PullRequest | None:
    cursor = await db.execute(
        """SELECT id, pull_request_name, author_id, status, created_at, merged_at
           FROM pull_requests
           WHERE id = ?""",
        (pull_request_id,),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    cursor = await db.execute(
        "SELECT user_id FROM pull_request_reviewers WHERE pr_id = ? ORDER BY rowid",
        (pull_request_id,),
    )
    reviewers = [r["user_id"] for r in await cursor.fetchall()]
    return PullRequest(
        pull_request_id=row["id"],
        pull_request_name=row["pull_request_name"],
        author_id=row["author_id"],
        status=PullRequestStatus(row["status"]),
        assigned_reviewers=reviewers,
        created_at=row["created_at"],
        merged_at=row["merged_at"],
    )


class EntityStore:
    """Durable storage for the review-assignment domain.

    Usage:
        store = EntityStore(pool)
        user = await store.get_user("u1")
        async with store.transaction() as db:
            await db.execute(...)
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    @contextlib.asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Pooled connection in autocommit mode, for single-statement work."""
        with translate_db_errors():
            async with self.pool.acquire() as db:
                yield db

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """BEGIN IMMEDIATE ... COMMIT on a pooled connection.

        Rolls back on any exception (including CancelledError) and re-raises.

        COMMIT is shielded. Once it has been handed to the connection thread
        it cannot be stopped, so a cancellation that arrives mid-COMMIT waits
        for it to land and is re-raised afterwards. The write is then durable
        even though the caller sees the cancellation (or the engine's
        StoreUnavailableError for a deadline); re-read before retrying.
        """
        with translate_db_errors():
            async with self.pool.acquire() as db:
                try:
                    await db.execute("BEGIN IMMEDIATE")
                    yield db
                except BaseException:
                    await _rollback_quietly(db)
                    raise
                commit = asyncio.ensure_future(_commit(db))
                try:
                    await asyncio.shield(commit)
                except asyncio.CancelledError:
                    await asyncio.wait([commit])
                    if commit.cancelled() or commit.exception() is not None:
                        await _rollback_quietly(db)
                    else:
                        logger.warning("transaction cancelled after COMMIT landed; write is durable")
                    raise
                except BaseException:
                    await _rollback_quietly(db)
                    raise

    # ---- Users ----

    async def get_user(self, user_id: str) -> User | None:
        async with self.connection() as db:
            return await _fetch_user(db, user_id)

    async def upsert_user(self, user: User, actor: str | None = None) -> User:
        """Insert a user or update name/active flag (and team, when given)."""
        async with self.transaction() as db:
            if user.team_name is not None:
                await self._require_team(db, user.team_name)
            await db.execute(
                f"""INSERT INTO users (id, username, is_active, team_name, created_at, updated_at)
                    VALUES (?, ?, ?, ?, {NOW_SQL}, {NOW_SQL})
                    ON CONFLICT(id) DO UPDATE SET
                        username = excluded.username,
                        is_active = excluded.is_active,
                        team_name = COALESCE(excluded.team_name, users.team_name),
                        updated_at = {NOW_SQL}""",
                (user.user_id, user.username, 1 if user.is_active else 0, user.team_name),
            )
            await record_event(
                db, None, AuditEventType.USER_UPSERTED,
                actor=actor or user.user_id,
                metadata={
                    "user_id": user.user_id,
                    "is_active": user.is_active,
                    "team_name": user.team_name,
                },
            )
            stored = await _fetch_user(db, user.user_id)
        logger.info("upsert_user -> %s active=%s team=%s", user.user_id, user.is_active, user.team_name)
        return stored

    async def set_user_active(self, user_id: str, is_active: bool, actor: str | None = None) -> User:
        async with self.transaction() as db:
            cursor = await db.execute(
                f"UPDATE users SET is_active = ?, updated_at = {NOW_SQL} WHERE id = ?",
                (1 if is_active else 0, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"User not found: {user_id}")
            await record_event(
                db, None, AuditEventType.USER_ACTIVITY_CHANGED,
                actor=actor or user_id,
                metadata={"user_id": user_id, "is_active": is_active},
            )
            stored = await _fetch_user(db, user_id)
        logger.info("set_user_active -> %s active=%s", user_id, is_active)
        return stored

    async def get_users_by_team(self, team_name: str) -> list[User]:
        async with self.connection() as db:
            cursor = await db.execute(
                """SELECT id, username, is_active, team_name
                   FROM users
                   WHERE team_name = ?
                   ORDER BY username, id""",
                (team_name,),
            )
            return [_user_from_row(row) for row in await cursor.fetchall()]

    async def get_active_team_members(self, team_name: str, exclude_id: str) -> list[User]:
        """Active members of a team, minus ``exclude_id`` (normally the author)."""
        async with self.connection() as db:
            return await _fetch_active_teammates(db, team_name, exclude_id)

    # ---- Teams ----

    async def _require_team(self, db: aiosqlite.Connection, team_name: str) -> None:
        cursor = await db.execute("SELECT 1 FROM teams WHERE name = ?", (team_name,))
        if await cursor.fetchone() is None:
            raise NotFoundError(f"Team not found: {team_name}")

    async def create_team(
        self,
        team_name: str,
        members: Iterable[TeamMember],
        actor: str | None = None,
    ) -> Team:
        """Create a team and upsert its members in one transaction."""
        members = list(members)
        async with self.transaction() as db:
            cursor = await db.execute("SELECT 1 FROM teams WHERE name = ?", (team_name,))
            if await cursor.fetchone() is not None:
                raise ConflictError(f"Team already exists: {team_name}")
            await db.execute(
                f"INSERT INTO teams (name, created_at) VALUES (?, {NOW_SQL})",
                (team_name,),
            )
            for member in members:
                await db.execute(
                    f"""INSERT INTO users (id, username, is_active, team_name, created_at, updated_at)
                        VALUES (?, ?, ?, ?, {NOW_SQL}, {NOW_SQL})
                        ON CONFLICT(id) DO UPDATE SET
                            username = excluded.username,
                            is_active = excluded.is_active,
                            team_name = excluded.team_name,
                            updated_at = {NOW_SQL}""",
                    (member.user_id, member.username, 1 if member.is_active else 0, team_name),
                )
            await record_event(
                db, None, AuditEventType.TEAM_CREATED,
                actor=actor,
                metadata={"team_name": team_name, "members": [m.user_id for m in members]},
            )
        logger.info("create_team -> %s members=%s", team_name, len(members))
        return await self.get_team(team_name)

    async def get_team(self, team_name: str) -> Team:
        async with self.connection() as db:
            await self._require_team(db, team_name)
        return Team(team_name=team_name, members=await self.get_users_by_team(team_name))

    # ---- Pull requests ----

    async def create_pull_request(
        self,
        pull_request: PullRequest,
        reviewer_ids: Iterable[str],
    ) -> PullRequest:
        """Insert a pull request and its reviewer rows atomically."""
        async with self.transaction() as db:
            return await self._insert_pull_request(db, pull_request, list(reviewer_ids))

    async def open_pull_request(
        self,
        pull_request_id: str,
        pull_request_name: str,
        author_id: str,
        choose_reviewers: Callable[[list[str]], list[str]],
    ) -> tuple[PullRequest, int]:
        """Check the author, pick reviewers and insert, all in one transaction.

        ``choose_reviewers`` receives the ids of the author's active teammates
        as read under the write lock. Returns the created pull request and the
        size of the candidate pool.
        """
        async with self.transaction() as db:
            author = await _fetch_user(db, author_id)
            if author is None:
                raise NotFoundError(f"Author not found: {author_id}")
            if not author.is_active:
                raise InactiveAuthorError(f"Author {author_id} is not active")
            candidates: list[str] = []
            if author.team_name is not None:
                teammates = await _fetch_active_teammates(db, author.team_name, author_id)
                candidates = [teammate.user_id for teammate in teammates]
            created = await self._insert_pull_request(
                db,
                PullRequest(
                    pull_request_id=pull_request_id,
                    pull_request_name=pull_request_name,
                    author_id=author_id,
                    status=PullRequestStatus.OPEN,
                ),
                list(choose_reviewers(candidates)),
            )
        return created, len(candidates)

    async def _insert_pull_request(
        self,
        db: aiosqlite.Connection,
        pull_request: PullRequest,
        reviewer_ids: list[str],
    ) -> PullRequest:
        cursor = await db.execute(
            "SELECT 1 FROM pull_requests WHERE id = ?",
            (pull_request.pull_request_id,),
        )
        if await cursor.fetchone() is not None:
            raise ConflictError(f"Pull request already exists: {pull_request.pull_request_id}")
        await db.execute(
            f"""INSERT INTO pull_requests (id, pull_request_name, author_id, status, created_at)
                VALUES (?, ?, ?, ?, {NOW_SQL})""",
            (
                pull_request.pull_request_id,
                pull_request.pull_request_name,
                pull_request.author_id,
                PullRequestStatus.OPEN,
            ),
        )
        for reviewer_id in reviewer_ids:
            await db.execute(
                f"""INSERT INTO pull_request_reviewers (pr_id, user_id, assigned_at)
                    VALUES (?, ?, {NOW_SQL})""",
                (pull_request.pull_request_id, reviewer_id),
            )
        await record_event(
            db, pull_request.pull_request_id, AuditEventType.PULL_REQUEST_CREATED,
            actor=pull_request.author_id,
            new_status=PullRequestStatus.OPEN,
            metadata={"reviewers": reviewer_ids},
        )
        return await _fetch_pull_request(db, pull_request.pull_request_id)

    async def get_pull_request(self, pull_request_id: str) -> PullRequest:
        async with self.connection() as db:
            pull_request = await _fetch_pull_request(db, pull_request_id)
        if pull_request is None:
            raise NotFoundError(f"Pull request not found: {pull_request_id}")
        return pull_request

    async def get_pull_requests_by_reviewer(self, reviewer_id: str) -> list[PullRequestShort]:
        async with self.connection() as db:
            cursor = await db.execute(
                """SELECT pr.id, pr.pull_request_name, pr.author_id, pr.status
                   FROM pull_requests pr
                   JOIN pull_request_reviewers prr ON prr.pr_id = pr.id
                   WHERE prr.user_id = ?
                   ORDER BY pr.created_at DESC, pr.id""",
                (reviewer_id,),
            )
            rows = await cursor.fetchall()
        return [
            PullRequestShort(
                pull_request_id=row["id"],
                pull_request_name=row["pull_request_name"],
                author_id=row["author_id"],
                status=PullRequestStatus(row["status"]),
            )
            for row in rows
        ]

    async def merge_pull_request(self, pull_request_id: str, actor: str | None = None) -> MergeResult:
        """Move a pull request to MERGED. Merging a merged pull request is a no-op."""
        async with self.transaction() as db:
            cursor = await db.execute(
                "SELECT status FROM pull_requests WHERE id = ?",
                (pull_request_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"Pull request not found: {pull_request_id}")
            current_status = PullRequestStatus(row["status"])
            already_merged = current_status == PullRequestStatus.MERGED
            if not already_merged:
                validate_transition(current_status, PullRequestStatus.MERGED)
                await db.execute(
                    f"""UPDATE pull_requests
                        SET status = ?, merged_at = {NOW_SQL}
                        WHERE id = ? AND status = ?""",
                    (PullRequestStatus.MERGED, pull_request_id, current_status),
                )
                await record_event(
                    db, pull_request_id, AuditEventType.PULL_REQUEST_MERGED,
                    actor=actor,
                    old_status=current_status,
                    new_status=PullRequestStatus.MERGED,
                )
            merged = await _fetch_pull_request(db, pull_request_id)
        return MergeResult(pull_request=merged, already_merged=already_merged)

    async def reassign_reviewer(
        self,
        pull_request_id: str,
        old_reviewer_id: str,
        actor: str | None = None,
    ) -> str:
        """Replace one assigned reviewer with a random eligible teammate.

        The replacement is drawn by the database from active members of the
        outgoing reviewer's team, minus the author and current assignees, in
        random order. The draw happens inside the same write transaction that
        updates the row. Returns the new reviewer id.
        """
        async with self.transaction() as db:
            cursor = await db.execute(
                "SELECT status, author_id FROM pull_requests WHERE id = ?",
                (pull_request_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"Pull request not found: {pull_request_id}")
            author_id = row["author_id"]
            if not can_reassign(PullRequestStatus(row["status"])):
                raise InvalidStateError(
                    f"Cannot reassign on a merged pull request: {pull_request_id}"
                )

            cursor = await db.execute(
                "SELECT 1 FROM pull_request_reviewers WHERE pr_id = ? AND user_id = ?",
                (pull_request_id, old_reviewer_id),
            )
            if await cursor.fetchone() is None:
                raise NotAssignedError(
                    f"Reviewer {old_reviewer_id} is not assigned to pull request {pull_request_id}"
                )

            cursor = await db.execute(
                "SELECT team_name FROM users WHERE id = ?",
                (old_reviewer_id,),
            )
            team_row = await cursor.fetchone()
            team_name = team_row["team_name"] if team_row is not None else None
            if team_name is None:
                raise NoAvailableReviewerError(
                    f"Reviewer {old_reviewer_id} has no team to draw a replacement from"
                )

            cursor = await db.execute(
                """SELECT id FROM users
                   WHERE team_name = ?
                     AND is_active = 1
                     AND id NOT IN (?, ?)
                     AND id NOT IN (
                         SELECT user_id FROM pull_request_reviewers WHERE pr_id = ?
                     )
                   ORDER BY RANDOM()
                   LIMIT 1""",
                (team_name, old_reviewer_id, author_id, pull_request_id),
            )
            candidate = await cursor.fetchone()
            if candidate is None:
                raise NoAvailableReviewerError(
                    f"No available reviewers in team {team_name} for pull request {pull_request_id}"
                )
            new_reviewer_id = candidate["id"]

            await db.execute(
                f"""UPDATE pull_request_reviewers
                    SET user_id = ?, assigned_at = {NOW_SQL}
                    WHERE pr_id = ? AND user_id = ?""",
                (new_reviewer_id, pull_request_id, old_reviewer_id),
            )
            await record_event(
                db, pull_request_id, AuditEventType.REVIEWER_REASSIGNED,
                actor=actor,
                metadata={
                    "old_reviewer_id": old_reviewer_id,
                    "new_reviewer_id": new_reviewer_id,
                    "team_name": team_name,
                },
            )
        return new_reviewer_id

    # ---- Read-only views ----

    async def get_review_statistics(self) -> ReviewStatistics:
        async with self.connection() as db:
            return await collect_review_statistics(db)

    async def get_audit_log(
        self,
        pull_request_id: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        async with self.connection() as db:
            return await fetch_events(db, pull_request_id=pull_request_id, limit=limit)
