"""Error kinds raised by the store and the assignment engine."""

from __future__ import annotations


class AssignmentError(Exception):
    """Base exception for all PR Assigner errors."""

    code = "assignment_error"


class NotFoundError(AssignmentError):
    """A referenced user, team or pull request does not exist."""

    code = "not_found"


class InactiveAuthorError(AssignmentError):
    """The author exists but is not allowed to open a reviewable pull request."""

    code = "inactive_author"


class InvalidStateError(AssignmentError, ValueError):
    """The operation is not permitted in the pull request's current state."""

    code = "invalid_state"


class NotAssignedError(AssignmentError):
    """The reviewer is not currently assigned to the pull request."""

    code = "not_assigned"


class NoAvailableReviewerError(AssignmentError):
    """No eligible replacement reviewer exists."""

    code = "no_available_reviewer"


class ConflictError(AssignmentError):
    """A uniqueness constraint was violated."""

    code = "conflict"


class StoreUnavailableError(AssignmentError):
    """The database could not be reached, was busy, or the operation timed out."""

    code = "store_unavailable"
