"""Pydantic models and enums for the PR Assigner."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class PullRequestStatus(StrEnum):
    """Pull request lifecycle states."""

    OPEN = "OPEN"
    MERGED = "MERGED"


class AuditEventType(StrEnum):
    """Audit event types for the append-only audit_events table."""

    TEAM_CREATED = "team_created"
    USER_UPSERTED = "user_upserted"
    USER_ACTIVITY_CHANGED = "user_activity_changed"
    PULL_REQUEST_CREATED = "pull_request_created"
    PULL_REQUEST_MERGED = "pull_request_merged"
    REVIEWER_REASSIGNED = "reviewer_reassigned"


class User(BaseModel):
    """A person who can author pull requests and review them."""

    user_id: str
    username: str
    is_active: bool = True
    team_name: str | None = None


class TeamMember(BaseModel):
    """Team member payload used when creating a team."""

    user_id: str
    username: str
    is_active: bool = True


class Team(BaseModel):
    """A named team and its current members."""

    team_name: str
    members: list[User] = Field(default_factory=list)


class PullRequest(BaseModel):
    """A pull request and the reviewers currently assigned to it."""

    pull_request_id: str
    pull_request_name: str
    author_id: str
    status: PullRequestStatus = PullRequestStatus.OPEN
    assigned_reviewers: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    merged_at: datetime | None = None


class MergeResult(BaseModel):
    """Outcome of a merge; ``already_merged`` marks the idempotent no-op."""

    pull_request: PullRequest
    already_merged: bool = False


class PullRequestShort(BaseModel):
    """Compact pull request view used for reviewer listings."""

    pull_request_id: str
    pull_request_name: str
    author_id: str
    status: PullRequestStatus


class ReviewerStatistics(BaseModel):
    reviewer_id: str
    reviewer_name: str
    assigned_prs_count: int = 0
    last_assigned_at: datetime | None = None


class TeamStatistics(BaseModel):
    team_name: str
    member_count: int = 0
    active_member_count: int = 0
    prs_created: int = 0


class ReviewStatistics(BaseModel):
    """Point-in-time aggregate view of pull requests, reviewers and teams."""

    total_prs: int = 0
    open_prs: int = 0
    merged_prs: int = 0
    reviewer_stats: list[ReviewerStatistics] = Field(default_factory=list)
    team_stats: list[TeamStatistics] = Field(default_factory=list)
    generated_at: datetime
