"""Error taxonomy for cluster lifecycle calls.

Every error carries an Outcome telling the caller what it may assume
about the remote side effect:

- NOT_DONE: nothing was changed remotely; retrying is safe.
- MAYBE_DONE: a mutation was submitted and its result is unknown; the
  caller must read remote state before retrying.
- FAILED: the remote operation finished and reported failure.
"""

from __future__ import annotations

from enum import Enum


class Outcome(str, Enum):
    """What the caller may assume about the remote side effect."""

    NOT_DONE = "not_done"
    MAYBE_DONE = "maybe_done"
    FAILED = "failed"


class ClusterError(Exception):
    """Base class for all lifecycle failures."""

    default_outcome = Outcome.NOT_DONE

    def __init__(self, message: str, *, outcome: Outcome | None = None) -> None:
        super().__init__(message)
        self.outcome = outcome or self.default_outcome
        # Set by the reconciler to the lifecycle phase the call ended in
        self.phase: str | None = None

    @property
    def may_have_completed(self) -> bool:
        return self.outcome is Outcome.MAYBE_DONE


class ClusterValidationError(ClusterError):
    """Raised for malformed input, before any remote call."""

    pass


class ImmutableFieldError(ClusterValidationError):
    """Raised when a change touches a field that forces replacement."""

    def __init__(self, fields: list[str]) -> None:
        super().__init__(
            f"cannot update {', '.join(fields)} in place; the cluster must be replaced"
        )
        self.fields = fields


class NotFoundError(ClusterError):
    """Raised when the remote resource does not exist."""

    pass


class ConflictError(ClusterError):
    """Raised when a resource with the same identity already exists."""

    pass


class ClientRequestError(ClusterError):
    """Raised when the control plane rejects a request as invalid."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientError(ClusterError):
    """Raised for network blips and retryable control plane responses."""

    pass


class OperationTimeoutError(ClusterError, TimeoutError):
    """Raised when a deadline passes while an operation is still running."""

    default_outcome = Outcome.MAYBE_DONE


class OperationCancelledError(ClusterError):
    """Raised when the caller cancels a call before it completes."""

    default_outcome = Outcome.MAYBE_DONE


class RemoteFailureError(ClusterError):
    """Raised when a remote operation reaches a failed terminal state."""

    default_outcome = Outcome.FAILED

    def __init__(self, message: str, *, reason: str = "", operation_id: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.operation_id = operation_id
