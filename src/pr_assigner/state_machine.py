"""State machine for pull request lifecycle transitions."""

from __future__ import annotations

from pr_assigner.errors import InvalidStateError
from pr_assigner.models import PullRequestStatus

VALID_TRANSITIONS: dict[PullRequestStatus, set[PullRequestStatus]] = {
    PullRequestStatus.OPEN: {PullRequestStatus.MERGED},
    PullRequestStatus.MERGED: set(),  # terminal
}


def validate_transition(current: PullRequestStatus, target: PullRequestStatus) -> None:
    """Validate a state transition. Raises InvalidStateError if invalid."""
    allowed = VALID_TRANSITIONS.get(current)
    if allowed is None:
        raise InvalidStateError(f"Unknown state: {current}")
    if target not in allowed:
        raise InvalidStateError(
            f"Invalid transition: {current} -> {target}. "
            f"Valid targets from {current}: {sorted(allowed)}"
        )


def can_reassign(status: PullRequestStatus) -> bool:
    """Reviewer changes are only allowed while a pull request is open."""
    return status == PullRequestStatus.OPEN
