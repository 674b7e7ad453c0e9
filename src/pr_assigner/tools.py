"""MCP tool definitions for the PR Assigner."""

from __future__ import annotations

import logging

from fastmcp import Context
from pydantic import ValidationError

from pr_assigner.db import AppContext
from pr_assigner.errors import AssignmentError
from pr_assigner.models import TeamMember, User
from pr_assigner.server import caller_tag, mcp

logger = logging.getLogger("pr_assigner")

MAX_AUDIT_LIMIT = 1000


def mcp_tool(*args, **kwargs):
    """FastMCP tool decorator with legacy `.fn` compatibility for tests/internal calls."""
    raw_tool = mcp.tool

    # Bare decorator usage: @mcp_tool
    if args and callable(args[0]) and len(args) == 1 and not kwargs:
        fn = args[0]
        registered = raw_tool(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    decorator = raw_tool(*args, **kwargs)

    def _decorate(fn):
        registered = decorator(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    return _decorate


def _app_ctx(ctx: Context) -> AppContext:
    """Resolve the assigner AppContext from a FastMCP Context, across versions."""
    if ctx is None:
        raise RuntimeError("Missing MCP context")
    if hasattr(ctx, "lifespan_context"):
        return ctx.lifespan_context
    rc = getattr(ctx, "request_context", None)
    if rc is not None and hasattr(rc, "lifespan_context"):
        return rc.lifespan_context
    fm = getattr(ctx, "fastmcp", None)
    if fm is not None and hasattr(fm, "_lifespan_result"):
        return fm._lifespan_result
    raise RuntimeError("Unable to resolve assigner lifespan context")


def _error_result(tool_name: str, exc: Exception) -> dict:
    if isinstance(exc, AssignmentError):
        logger.info("%s -> %s: %s", tool_name, exc.code, exc)
        return {"error": str(exc), "code": exc.code}
    logger.exception("%s -> unexpected error: %s", tool_name, exc)
    return {"error": f"{tool_name} failed: {exc}", "code": "internal"}


def _validation_error(tool_name: str, message: str) -> dict:
    logger.info("%s -> validation_error: %s", tool_name, message)
    return {"error": message, "code": "validation_error"}


def _missing(value: str | None) -> bool:
    """Treat None/empty/whitespace-only as missing."""
    return value is None or value.strip() == ""


def _missing_fields(**values: str | None) -> list[str]:
    return [name for name, value in values.items() if _missing(value)]


def _resolve_caller(caller_id: str | None) -> str:
    if _missing(caller_id):
        return "assigner"
    return caller_id.strip()


# ---- Teams and users ----


@mcp_tool
async def create_team(
    team_name: str,
    members: list[dict] | None = None,
    caller_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Create a team and add (or move) its members.

    Each member is an object with `user_id`, `username` and optional
    `is_active` (default true). Existing users are updated and moved into
    this team. Fails with code `conflict` if the team already exists.
    """
    caller_tag.set(_resolve_caller(caller_id))
    if _missing(team_name):
        return _validation_error("create_team", "team_name is required")
    try:
        parsed = [TeamMember.model_validate(member) for member in members or []]
    except ValidationError as exc:
        return _validation_error("create_team", f"Invalid team member: {exc}")
    if any(_missing(m.user_id) or _missing(m.username) for m in parsed):
        return _validation_error("create_team", "members require non-empty user_id and username")
    if len({m.user_id for m in parsed}) != len(parsed):
        return _validation_error("create_team", "duplicate user_id in members")

    app: AppContext = _app_ctx(ctx)
    try:
        team = await app.store.create_team(team_name.strip(), parsed, actor=caller_id)
    except Exception as exc:
        return _error_result("create_team", exc)
    return team.model_dump(mode="json")


@mcp_tool
async def get_team(team_name: str, caller_id: str | None = None, ctx: Context = None) -> dict:
    """Get a team and all of its members."""
    caller_tag.set(_resolve_caller(caller_id))
    if _missing(team_name):
        return _validation_error("get_team", "team_name is required")
    app: AppContext = _app_ctx(ctx)
    try:
        team = await app.store.get_team(team_name.strip())
    except Exception as exc:
        return _error_result("get_team", exc)
    logger.info("get_team -> %s members=%s", team.team_name, len(team.members))
    return team.model_dump(mode="json")


@mcp_tool
async def register_user(
    user_id: str,
    username: str,
    is_active: bool = True,
    team_name: str | None = None,
    caller_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Register a user, or update name/active flag/team of an existing one.

    Omitting team_name keeps the user's current team.
    """
    caller_tag.set(_resolve_caller(caller_id))
    missing = _missing_fields(user_id=user_id, username=username)
    if missing:
        return _validation_error("register_user", f"Required fields missing: {', '.join(missing)}")
    app: AppContext = _app_ctx(ctx)
    user = User(
        user_id=user_id.strip(),
        username=username.strip(),
        is_active=is_active,
        team_name=None if _missing(team_name) else team_name.strip(),
    )
    try:
        stored = await app.store.upsert_user(user, actor=caller_id)
    except Exception as exc:
        return _error_result("register_user", exc)
    return stored.model_dump(mode="json")


@mcp_tool
async def set_user_active(
    user_id: str,
    is_active: bool,
    caller_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Activate or deactivate a user. Inactive users are never picked as reviewers."""
    caller_tag.set(_resolve_caller(caller_id))
    if _missing(user_id):
        return _validation_error("set_user_active", "user_id is required")
    app: AppContext = _app_ctx(ctx)
    try:
        stored = await app.store.set_user_active(user_id.strip(), is_active, actor=caller_id)
    except Exception as exc:
        return _error_result("set_user_active", exc)
    return stored.model_dump(mode="json")


@mcp_tool
async def get_user(user_id: str, caller_id: str | None = None, ctx: Context = None) -> dict:
    """Get a single user by id."""
    caller_tag.set(_resolve_caller(caller_id))
    if _missing(user_id):
        return _validation_error("get_user", "user_id is required")
    app: AppContext = _app_ctx(ctx)
    try:
        user = await app.store.get_user(user_id.strip())
    except Exception as exc:
        return _error_result("get_user", exc)
    if user is None:
        logger.info("get_user -> %s not found", user_id)
        return {"error": f"User not found: {user_id}", "code": "not_found"}
    return user.model_dump(mode="json")


# ---- Pull requests ----


@mcp_tool
async def create_pull_request(
    pull_request_id: str,
    pull_request_name: str,
    author_id: str,
    ctx: Context = None,
) -> dict:
    """Open a pull request and assign up to two reviewers from the author's team.

    Reviewers are active teammates of the author, chosen at random. A team
    with no other active members yields a pull request with no reviewers.
    """
    caller_tag.set(_resolve_caller(author_id))
    missing = _missing_fields(
        pull_request_id=pull_request_id,
        pull_request_name=pull_request_name,
        author_id=author_id,
    )
    if missing:
        return _validation_error(
            "create_pull_request", f"Required fields missing: {', '.join(missing)}"
        )
    app: AppContext = _app_ctx(ctx)
    try:
        pull_request = await app.engine.create_pull_request(
            pull_request_id.strip(),
            pull_request_name.strip(),
            author_id.strip(),
        )
    except Exception as exc:
        return _error_result("create_pull_request", exc)
    return pull_request.model_dump(mode="json")


@mcp_tool
async def merge_pull_request(
    pull_request_id: str,
    caller_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Mark a pull request as MERGED.

    Merging an already merged pull request succeeds and reports
    `already_merged: true`; the original merge timestamp is kept.
    """
    caller_tag.set(_resolve_caller(caller_id))
    if _missing(pull_request_id):
        return _validation_error("merge_pull_request", "pull_request_id is required")
    app: AppContext = _app_ctx(ctx)
    try:
        result = await app.engine.merge_pull_request(pull_request_id.strip(), actor=caller_id)
    except Exception as exc:
        return _error_result("merge_pull_request", exc)
    payload = result.pull_request.model_dump(mode="json")
    payload["already_merged"] = result.already_merged
    return payload


@mcp_tool
async def reassign_reviewer(
    pull_request_id: str,
    old_reviewer_id: str,
    caller_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Replace an assigned reviewer with another active member of that reviewer's team.

    Fails with `invalid_state` on merged pull requests, `not_assigned` if the
    reviewer is not on the pull request, and `no_available_reviewer` if the
    team has nobody else to offer.
    """
    caller_tag.set(_resolve_caller(caller_id))
    missing = _missing_fields(pull_request_id=pull_request_id, old_reviewer_id=old_reviewer_id)
    if missing:
        return _validation_error(
            "reassign_reviewer", f"Required fields missing: {', '.join(missing)}"
        )
    app: AppContext = _app_ctx(ctx)
    try:
        new_reviewer_id = await app.engine.reassign_reviewer(
            pull_request_id.strip(),
            old_reviewer_id.strip(),
            actor=caller_id,
        )
    except Exception as exc:
        return _error_result("reassign_reviewer", exc)
    return {
        "pull_request_id": pull_request_id.strip(),
        "old_reviewer_id": old_reviewer_id.strip(),
        "new_reviewer_id": new_reviewer_id,
    }


@mcp_tool
async def get_pull_request(
    pull_request_id: str,
    caller_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Get a pull request with its status, timestamps and assigned reviewers."""
    caller_tag.set(_resolve_caller(caller_id))
    if _missing(pull_request_id):
        return _validation_error("get_pull_request", "pull_request_id is required")
    app: AppContext = _app_ctx(ctx)
    try:
        pull_request = await app.engine.get_pull_request(pull_request_id.strip())
    except Exception as exc:
        return _error_result("get_pull_request", exc)
    return pull_request.model_dump(mode="json")


@mcp_tool
async def get_user_reviews(user_id: str, caller_id: str | None = None, ctx: Context = None) -> dict:
    """List pull requests where the user is an assigned reviewer, newest first."""
    caller_tag.set(_resolve_caller(caller_id))
    if _missing(user_id):
        return _validation_error("get_user_reviews", "user_id is required")
    app: AppContext = _app_ctx(ctx)
    try:
        pull_requests = await app.engine.get_pull_requests_by_reviewer(user_id.strip())
    except Exception as exc:
        return _error_result("get_user_reviews", exc)
    logger.info("get_user_reviews -> %s count=%s", user_id, len(pull_requests))
    return {
        "user_id": user_id.strip(),
        "pull_requests": [pr.model_dump(mode="json") for pr in pull_requests],
    }


# ---- Observability ----


@mcp_tool
async def get_review_statistics(caller_id: str | None = None, ctx: Context = None) -> dict:
    """Get pull request counts, per-reviewer load and per-team summaries.

    Figures are gathered by independent queries and may be slightly out of
    step with each other while writes are in flight.
    """
    caller_tag.set(_resolve_caller(caller_id))
    app: AppContext = _app_ctx(ctx)
    try:
        stats = await app.engine.get_review_statistics()
    except Exception as exc:
        return _error_result("get_review_statistics", exc)
    return stats.model_dump(mode="json")


@mcp_tool
async def get_audit_log(
    pull_request_id: str | None = None,
    limit: int = 100,
    caller_id: str | None = None,
    ctx: Context = None,
) -> dict:
    """Get audit events oldest first, optionally for one pull request only."""
    caller_tag.set(_resolve_caller(caller_id))
    if limit < 1 or limit > MAX_AUDIT_LIMIT:
        return _validation_error("get_audit_log", f"limit must be between 1 and {MAX_AUDIT_LIMIT}")
    app: AppContext = _app_ctx(ctx)
    scope = None if _missing(pull_request_id) else pull_request_id.strip()
    try:
        events = await app.store.get_audit_log(pull_request_id=scope, limit=limit)
    except Exception as exc:
        return _error_result("get_audit_log", exc)
    logger.info("get_audit_log -> %s events=%s", scope or "all", len(events))
    return {"pull_request_id": scope, "events": events, "event_count": len(events)}
