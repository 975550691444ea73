"""
Data model shared by the reconcilers, the runner and the configuration loader.

Configuration-derived types are frozen; result types are filled in while a
server is being reconciled and handed back to the caller.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ldap_rtc_sync.errors import ApplyError, CapacityExceededError

# A directory user id; stable for the duration of a sync pass.
Identity = str

PERMISSION = 'permission'
LICENSE = 'license'
ADMINISTRATOR = 'administrator'
MEMBER = 'member'
ROLE = 'role'

CONSTRUCT_KINDS = (PERMISSION, LICENSE, ADMINISTRATOR, MEMBER, ROLE)

STATUS_SUCCESS = 'success'
STATUS_PARTIAL = 'partial'
STATUS_FAILED = 'failed'


@dataclass(frozen=True)
class Construct:
    """The server-side thing being reconciled."""

    kind: str
    name: str
    node_path: Tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.node_path:
            return f"{self.kind} '{self.name}' in {'/'.join(self.node_path)}"
        return f"{self.kind} '{self.name}'"


@dataclass(frozen=True)
class GroupMapping:
    """One directory group feeding one server construct."""

    ldap_group: str
    construct: Construct
    # None defers to the server-level setting
    allow_empty: Optional[bool] = None


@dataclass(frozen=True)
class LicensePool:
    license: str
    capacity: Optional[int] = None
    priority: Tuple[Identity, ...] = ()


@dataclass(frozen=True)
class RoleHierarchyNode:
    """A project area (root) or team area with its configured mappings."""

    name: str
    path: Tuple[str, ...]
    mappings: Tuple[GroupMapping, ...] = ()
    children: Tuple['RoleHierarchyNode', ...] = ()

    @property
    def depth(self) -> int:
        return len(self.path) - 1

    @property
    def is_project(self) -> bool:
        return len(self.path) == 1


@dataclass(frozen=True)
class ServerConfig:
    """
    Immutable connection and mapping configuration for one target server.

    ``connection`` carries the raw settings the target client needs (base_url,
    auth, TLS options) as a read-only mapping.
    """

    name: str
    module: str
    connection: Mapping[str, Any]
    permissions: Tuple[GroupMapping, ...] = ()
    licenses: Tuple[GroupMapping, ...] = ()
    license_pools: Tuple[LicensePool, ...] = ()
    projects: Tuple[RoleHierarchyNode, ...] = ()
    allow_empty_desired: bool = False

    def __post_init__(self):
        if not isinstance(self.connection, MappingProxyType):
            object.__setattr__(self, 'connection', MappingProxyType(dict(self.connection)))

    def license_pool(self, license_name: str) -> LicensePool:
        for pool in self.license_pools:
            if pool.license == license_name:
                return pool
        return LicensePool(license=license_name)


@dataclass(frozen=True)
class DeltaSet:
    to_add: Tuple[Identity, ...] = ()
    to_remove: Tuple[Identity, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove

    def __len__(self) -> int:
        return len(self.to_add) + len(self.to_remove)


@dataclass
class ConstructResult:
    """What happened to one construct during a server pass."""

    construct: Construct
    delta: Optional[DeltaSet] = None
    granted: List[Identity] = field(default_factory=list)
    revoked: List[Identity] = field(default_factory=list)
    apply_errors: List[ApplyError] = field(default_factory=list)
    capacity_error: Optional[CapacityExceededError] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.apply_errors and self.capacity_error is None

    def problems(self) -> List[str]:
        messages = []
        if self.error is not None:
            messages.append(str(self.error))
        messages.extend(str(e) for e in self.apply_errors)
        if self.capacity_error is not None:
            messages.append(str(self.capacity_error))
        return messages


@dataclass
class SyncOutcome:
    """Per-server result of a reconciliation pass."""

    server: str
    status: str = STATUS_SUCCESS
    error: Optional[Exception] = None
    results: List[ConstructResult] = field(default_factory=list)
    runtime_seconds: float = 0.0
    dry_run: bool = False

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def finalize(self) -> 'SyncOutcome':
        """Derive status from the collected results unless the pass already failed."""
        if self.status != STATUS_FAILED:
            self.status = STATUS_SUCCESS if all(r.ok for r in self.results) else STATUS_PARTIAL
        return self

    def problems(self) -> List[str]:
        messages = []
        if self.error is not None:
            messages.append(str(self.error))
        for result in self.results:
            messages.extend(result.problems())
        return messages

    def counts(self) -> Dict[str, int]:
        return {
            'constructs': len(self.results),
            'constructs_failed': sum(1 for r in self.results if not r.ok),
            'granted': sum(len(r.granted) for r in self.results),
            'revoked': sum(len(r.revoked) for r in self.results),
            'apply_errors': sum(len(r.apply_errors) for r in self.results),
        }
