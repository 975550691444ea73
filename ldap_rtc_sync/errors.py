"""
Exception taxonomy for LDAP RTC Sync.

Construct- and identity-level errors are captured into results rather than
propagated; only connection-level failures end a server's pass.
"""

from typing import Any, Iterable, Optional, Tuple


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class DirectoryLookupError(SyncError):
    """Raised when the directory cannot resolve a group or user."""
    pass


class ServerQueryError(SyncError):
    """Raised when current state cannot be read from a target server."""
    pass


class ServerConnectionError(SyncError):
    """Raised when a target server session cannot be established."""
    pass


class ApplyError(SyncError):
    """A single grant or revoke rejected by the target server."""

    def __init__(self, construct: Any, identity: str, cause: Exception, operation: str = 'grant'):
        self.construct = construct
        self.identity = identity
        self.cause = cause
        self.operation = operation
        super().__init__(f"Failed to {operation} {construct} for {identity}: {cause}")


class CapacityExceededError(SyncError):
    """License pool too small for every desired identity; partial, not fatal."""

    def __init__(self, construct: Any, capacity: int, excluded: Iterable[str]):
        self.construct = construct
        self.capacity = capacity
        self.excluded: Tuple[str, ...] = tuple(excluded)
        super().__init__(
            f"Capacity {capacity} of {construct} exceeded; "
            f"{len(self.excluded)} not assigned: {', '.join(self.excluded)}"
        )


class UnsafeEmptyDesiredSetError(SyncError):
    """Refusal to revoke every current holder because the directory returned nobody."""

    def __init__(self, construct: Any, revocations: Iterable[str]):
        self.construct = construct
        self.revocations: Tuple[str, ...] = tuple(revocations)
        super().__init__(
            f"Refusing to revoke all {len(self.revocations)} holders of {construct}: "
            f"directory returned an empty set and allow_empty_desired is not set"
        )


class NodeSkippedError(SyncError):
    """A construct on a process area that was not reconciled because that area or an ancestor failed."""

    def __init__(self, node_path: Tuple[str, ...], failed_path: Tuple[str, ...],
                 cause: Optional[Exception] = None):
        self.node_path = node_path
        self.failed_path = failed_path
        self.cause = cause
        reason = f"{'/'.join(failed_path)} failed"
        if cause is not None:
            reason += f": {cause}"
        super().__init__(f"Skipped {'/'.join(node_path)}: {reason}")
