"""Assignment engine: create, merge and reassign pull request reviewers.

The engine keeps no state of its own. Each mutating operation makes its
reads and its writes inside one store transaction, so decisions are taken
on data no concurrent writer can change underneath them and a failed
operation never leaves partial state behind.

Every operation takes an optional ``timeout`` in seconds. When it expires the
running transaction is cancelled and rolled back, and the caller receives
StoreUnavailableError. A deadline that fires while COMMIT is already in
flight lets the COMMIT finish, so that write is durable.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import AsyncIterator

from pr_assigner.errors import InactiveAuthorError, NotFoundError, StoreUnavailableError
from pr_assigner.models import (
    MergeResult,
    PullRequest,
    PullRequestShort,
    ReviewStatistics,
)
from pr_assigner.selector import MAX_REVIEWERS, select_reviewers
from pr_assigner.store import EntityStore

logger = logging.getLogger("pr_assigner")


class AssignmentEngine:
    """Pull request review-assignment rules on top of an EntityStore.

    Usage:
        engine = AssignmentEngine(store, default_timeout=10.0)
        pr = await engine.create_pull_request("pr-1", "Fix login", "alice")
        await engine.reassign_reviewer("pr-1", pr.assigned_reviewers[0])
        await engine.merge_pull_request("pr-1")
    """

    def __init__(
        self,
        store: EntityStore,
        rng: random.Random | None = None,
        default_timeout: float | None = None,
    ) -> None:
        self._store = store
        self._rng = rng or random.Random()
        self._default_timeout = default_timeout

    @property
    def store(self) -> EntityStore:
        return self._store

    @contextlib.asynccontextmanager
    async def _deadline(self, operation: str, timeout: float | None) -> AsyncIterator[None]:
        effective = timeout if timeout is not None else self._default_timeout
        try:
            async with asyncio.timeout(effective):
                yield
        except TimeoutError as exc:
            logger.warning("%s -> timed out after %ss", operation, effective)
            raise StoreUnavailableError(f"{operation} timed out after {effective}s") from exc

    async def create_pull_request(
        self,
        pull_request_id: str,
        pull_request_name: str,
        author_id: str,
        *,
        timeout: float | None = None,
    ) -> PullRequest:
        """Create an OPEN pull request with up to two reviewers from the author's team."""
        async with self._deadline("create_pull_request", timeout):
            try:
                created, pool_size = await self._store.open_pull_request(
                    pull_request_id,
                    pull_request_name,
                    author_id,
                    lambda candidates: select_reviewers(candidates, MAX_REVIEWERS, rng=self._rng),
                )
            except (NotFoundError, InactiveAuthorError) as exc:
                logger.info("create_pull_request -> %s rejected: %s", pull_request_id, exc)
                raise
        logger.info(
            "create_pull_request -> %s OPEN author=%s reviewers=%s (pool=%s)",
            pull_request_id,
            author_id,
            created.assigned_reviewers,
            pool_size,
        )
        return created

    async def merge_pull_request(
        self,
        pull_request_id: str,
        *,
        actor: str | None = None,
        timeout: float | None = None,
    ) -> MergeResult:
        """Merge a pull request. A repeated merge succeeds without changes."""
        async with self._deadline("merge_pull_request", timeout):
            result = await self._store.merge_pull_request(pull_request_id, actor=actor)
        if result.already_merged:
            logger.info("merge_pull_request -> %s already MERGED", pull_request_id)
        else:
            logger.info("merge_pull_request -> %s MERGED", pull_request_id)
        return result

    async def reassign_reviewer(
        self,
        pull_request_id: str,
        old_reviewer_id: str,
        *,
        actor: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Swap ``old_reviewer_id`` for a random eligible teammate; returns the new id."""
        async with self._deadline("reassign_reviewer", timeout):
            new_reviewer_id = await self._store.reassign_reviewer(
                pull_request_id, old_reviewer_id, actor=actor
            )
        logger.info(
            "reassign_reviewer -> %s %s => %s",
            pull_request_id,
            old_reviewer_id,
            new_reviewer_id,
        )
        return new_reviewer_id

    async def get_pull_request(
        self,
        pull_request_id: str,
        *,
        timeout: float | None = None,
    ) -> PullRequest:
        async with self._deadline("get_pull_request", timeout):
            return await self._store.get_pull_request(pull_request_id)

    async def get_pull_requests_by_reviewer(
        self,
        reviewer_id: str,
        *,
        timeout: float | None = None,
    ) -> list[PullRequestShort]:
        async with self._deadline("get_pull_requests_by_reviewer", timeout):
            return await self._store.get_pull_requests_by_reviewer(reviewer_id)

    async def get_review_statistics(self, *, timeout: float | None = None) -> ReviewStatistics:
        async with self._deadline("get_review_statistics", timeout):
            stats = await self._store.get_review_statistics()
        logger.info(
            "get_review_statistics -> total=%s open=%s merged=%s",
            stats.total_prs,
            stats.open_prs,
            stats.merged_prs,
        )
        return stats
