"""Review statistics aggregation.

Each figure comes from its own aggregate query against current store state.
The queries are not wrapped in one transaction, so under concurrent writes the
result is a best-effort point-in-time view rather than a consistent snapshot.
"""

from __future__ import annotations

from datetime import UTC, datetime

import aiosqlite

from pr_assigner.models import ReviewerStatistics, ReviewStatistics, TeamStatistics


async def collect_review_statistics(db: aiosqlite.Connection) -> ReviewStatistics:
    # Query 1: Status counts (COALESCE ensures 0 instead of NULL on empty table)
    cursor = await db.execute(
        """
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(CASE WHEN status = 'OPEN' THEN 1 ELSE 0 END), 0) AS open,
            COALESCE(SUM(CASE WHEN status = 'MERGED' THEN 1 ELSE 0 END), 0) AS merged
        FROM pull_requests
    """
    )
    counts = dict(await cursor.fetchone())

    # Query 2: Per active reviewer assignment load
    cursor = await db.execute(
        """
        SELECT
            u.id AS reviewer_id,
            u.username AS reviewer_name,
            COUNT(prr.pr_id) AS assigned_prs_count,
            MAX(COALESCE(prr.assigned_at, pr.created_at)) AS last_assigned_at
        FROM users u
        LEFT JOIN pull_request_reviewers prr ON prr.user_id = u.id
        LEFT JOIN pull_requests pr ON pr.id = prr.pr_id
        WHERE u.is_active = 1
        GROUP BY u.id, u.username
        ORDER BY assigned_prs_count DESC, u.id ASC
    """
    )
    reviewer_stats = [ReviewerStatistics(**dict(row)) for row in await cursor.fetchall()]

    # Query 3: Per team membership and authored PRs. The PR count is a
    # correlated subquery so it is not multiplied by the member join.
    cursor = await db.execute(
        """
        SELECT
            t.name AS team_name,
            COUNT(u.id) AS member_count,
            COALESCE(SUM(CASE WHEN u.is_active = 1 THEN 1 ELSE 0 END), 0) AS active_member_count,
            (
                SELECT COUNT(*)
                FROM pull_requests pr
                JOIN users author ON author.id = pr.author_id
                WHERE author.team_name = t.name
            ) AS prs_created
        FROM teams t
        LEFT JOIN users u ON u.team_name = t.name
        GROUP BY t.name
        ORDER BY t.name
    """
    )
    team_stats = [TeamStatistics(**dict(row)) for row in await cursor.fetchall()]

    return ReviewStatistics(
        total_prs=counts["total"],
        open_prs=counts["open"],
        merged_prs=counts["merged"],
        reviewer_stats=reviewer_stats,
        team_stats=team_stats,
        generated_at=datetime.now(UTC),
    )
