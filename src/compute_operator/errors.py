"""Error taxonomy shared by the provisioners and mutation operations.

Reconcile passes distinguish three outcomes:
- success: the object has converged for now
- Yield: an asynchronous dependency is still settling, try again later
- any other exception: a genuine failure, surfaced in status and retried
  with backoff by the scheduler

Mutation operations (create, update, delete, evict) return their failures
synchronously to the caller using the request-level errors below.
"""

from __future__ import annotations


class Yield(Exception):
    """Signal that a pass made what progress it could and must be re-run.

    Raised when a dependency has not reached a terminal state, or when a
    destructive rebuild was just triggered and state must be re-observed.
    Never logged or reported as a failure.
    """

    def __init__(self, reason: str = "awaiting asynchronous operation") -> None:
        super().__init__(reason)
        self.reason = reason


class ConsistencyError(Exception):
    """Raised when backend data already violates an ownership invariant.

    Examples are two security groups claiming the same pool, or a resource
    tagged with the cluster but missing its pool tag.
    """

    pass


class DependencyStatusError(Exception):
    """Raised when an upstream dependency reports an unrecognized status."""

    def __init__(self, kind: str, status: str) -> None:
        super().__init__(f"{kind} has unhandled provisioning status {status!r}")
        self.kind = kind
        self.status = status


class BackendStatusError(Exception):
    """Raised when a backend response falls outside the status-code contract."""

    def __init__(self, status_code: int, message: str = "") -> None:
        detail = f": {message}" if message else ""
        super().__init__(f"unexpected backend status {status_code}{detail}")
        self.status_code = status_code
        self.message = message


class ConflictError(Exception):
    """Raised when a mutation conflicts with the object's current state."""

    pass


class InvalidRequestError(Exception):
    """Raised when a mutation request references things that do not exist."""

    pass


class NotFoundError(Exception):
    """Raised when the object a mutation targets does not exist."""

    pass


class EvictionError(Exception):
    """Raised when an eviction fails after the protocol started mutating.

    The cluster spec has been reverted and the pause flag cleared by the time
    this is raised. ``deleted_ids`` lists servers whose backend delete was
    already accepted; the reconciler will recreate them against the restored
    replica counts.
    """

    def __init__(self, cause: Exception, deleted_ids: list[str]) -> None:
        super().__init__(f"eviction failed: {cause}")
        self.cause = cause
        self.deleted_ids = deleted_ids
