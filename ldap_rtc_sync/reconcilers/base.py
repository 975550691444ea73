"""
Shared reconciliation cycle.

Every construct goes through the same steps: resolve the desired set from the
directory, read the actual set from the server, diff, guard against a full
revocation, then revoke and grant one identity at a time.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ldap_rtc_sync.differ import diff, guard_full_revocation
from ldap_rtc_sync.errors import (
    ApplyError, DirectoryLookupError, ServerConnectionError, ServerQueryError, UnsafeEmptyDesiredSetError
)
from ldap_rtc_sync.logging_setup import security_logger
from ldap_rtc_sync.models import (
    Construct, ConstructResult, DeltaSet, GroupMapping, Identity, ServerConfig
)
from ldap_rtc_sync.retry import call_with_config
from ldap_rtc_sync.targets.base import TargetAuthenticationError, TargetConnectionError

logger = logging.getLogger(__name__)

# Failures that end the session with the server, not just one call
SESSION_ERRORS = (TargetConnectionError, TargetAuthenticationError)


class Plan:
    """Desired and actual state of one construct with the delta between them."""

    def __init__(self, construct: Construct, desired: List[Identity], actual: List[Identity],
                 delta: DeltaSet, result: ConstructResult):
        self.construct = construct
        self.desired = desired
        self.actual = actual
        self.delta = delta
        self.result = result


class ReconcilerBase:
    """
    Base class for the permission, license and role reconcilers.

    Args:
        server: Configuration of the server being reconciled
        directory: Object with resolve_group_members(group) and
            resolve_user_attributes(identity)
        target: Connected TargetServerBase for the server
        error_config: error_handling configuration section (retry settings)
        dry_run: Compute and report deltas without granting or revoking
        describe_users: Look up user attributes for the audit log
    """

    def __init__(self, server: ServerConfig, directory: Any, target: Any,
                 error_config: Optional[Dict[str, Any]] = None, dry_run: bool = False,
                 describe_users: bool = False):
        self.server = server
        self.directory = directory
        self.target = target
        self.error_config = error_config if error_config is not None else {}
        self.dry_run = dry_run
        self.describe_users = describe_users
        self.results: List[ConstructResult] = []

    def reconcile(self) -> List[ConstructResult]:
        raise NotImplementedError

    @staticmethod
    def group_by_construct(mappings: Iterable[GroupMapping]) -> 'OrderedDict[Construct, List[GroupMapping]]':
        """Collect mappings per construct, keeping configuration order."""
        grouped = OrderedDict()
        for mapping in mappings:
            grouped.setdefault(mapping.construct, []).append(mapping)
        return grouped

    def allow_empty(self, mappings: Sequence[GroupMapping]) -> bool:
        """A full revocation is allowed only if every mapping for the construct allows it."""
        return all(
            self.server.allow_empty_desired if m.allow_empty is None else m.allow_empty
            for m in mappings
        )

    def resolve_desired(self, mappings: Sequence[GroupMapping]) -> List[Identity]:
        """
        Union of the members of every mapped directory group, in listing order.

        Raises:
            DirectoryLookupError: If any group cannot be resolved
        """
        desired = []
        seen = set()
        for mapping in mappings:
            try:
                members = self.directory.resolve_group_members(mapping.ldap_group)
            except DirectoryLookupError:
                raise
            except Exception as e:
                raise DirectoryLookupError(f"Failed to resolve {mapping.ldap_group}: {e}")
            for identity in members:
                if identity not in seen:
                    seen.add(identity)
                    desired.append(identity)
        return desired

    def read_actual(self, construct: Construct) -> List[Identity]:
        """
        Current holders of the construct on the server.

        Raises:
            ServerQueryError: If the server state cannot be read
            ServerConnectionError: If the session with the server is lost
        """
        try:
            return list(self.target.current_members(construct))
        except (ServerQueryError, ServerConnectionError):
            raise
        except SESSION_ERRORS as e:
            raise self.session_lost(e) from e
        except Exception as e:
            raise ServerQueryError(f"Failed to read {construct} on {self.server.name}: {e}")

    def plan(self, construct: Construct, mappings: Sequence[GroupMapping]) -> Optional[Plan]:
        """
        Compute the delta for one construct.

        Lookup, read and guard failures are recorded on the returned result's
        error and None is returned in their place, except ServerQueryError
        which callers may need to treat as a node failure and
        ServerConnectionError which ends the server's pass. Both are
        re-raised after being recorded.
        """
        result = ConstructResult(construct=construct)
        self.results.append(result)

        try:
            desired = self.resolve_desired(mappings)
        except DirectoryLookupError as e:
            logger.error(f"[{self.server.name}] Cannot determine desired state of {construct}: {e}")
            result.error = e
            return None

        try:
            actual = self.read_actual(construct)
        except (ServerQueryError, ServerConnectionError) as e:
            logger.error(f"[{self.server.name}] Cannot read {construct}: {e}")
            result.error = e
            raise

        delta = diff(desired, actual, construct)
        result.delta = delta

        try:
            guard_full_revocation(delta, len(desired), construct, self.allow_empty(mappings))
        except UnsafeEmptyDesiredSetError as e:
            logger.error(f"[{self.server.name}] {e}")
            result.error = e
            return None

        logger.info(f"[{self.server.name}] {construct}: {len(desired)} desired, {len(actual)} actual, "
                    f"{len(delta.to_add)} to add, {len(delta.to_remove)} to remove")
        return Plan(construct, desired, actual, delta, result)

    def revoke_all(self, plan: Plan, identities: Iterable[Identity]) -> None:
        for identity in identities:
            self._apply('revoke', plan.construct, identity, plan.result)

    def grant_all(self, plan: Plan, identities: Iterable[Identity]) -> None:
        for identity in identities:
            self._apply('grant', plan.construct, identity, plan.result)

    def _apply(self, operation: str, construct: Construct, identity: Identity,
               result: ConstructResult) -> bool:
        """
        Grant or revoke for one identity.

        A failure is recorded on the result. Losing the session is re-raised
        as ServerConnectionError since no further call can succeed.
        """
        if self.dry_run:
            logger.info(f"[{self.server.name}] Dry run: would {operation} {construct} "
                        f"{'to' if operation == 'grant' else 'from'} {identity}")
            return True

        call = self.target.grant if operation == 'grant' else self.target.revoke
        try:
            call_with_config(lambda: call(construct, identity), self.error_config,
                             f"{operation} {construct} for {identity} on {self.server.name}")
        except Exception as e:
            error = ApplyError(construct, identity, e, operation)
            result.apply_errors.append(error)
            logger.error(f"[{self.server.name}] {error}")
            security_logger.log_user_operation(f"{operation} {construct}", self._describe(identity),
                                               self.server.name, False)
            if isinstance(e, SESSION_ERRORS):
                raise self.session_lost(e) from e
            return False

        if operation == 'grant':
            result.granted.append(identity)
        else:
            result.revoked.append(identity)
        security_logger.log_user_operation(f"{operation} {construct}", self._describe(identity),
                                           self.server.name, True)
        return True

    def session_lost(self, error: Exception) -> ServerConnectionError:
        return ServerConnectionError(f"Lost session with {self.server.name}: {error}")

    def _describe(self, identity: Identity) -> str:
        """Audit label for a user; attribute lookup failures are not fatal."""
        if not self.describe_users:
            return identity
        try:
            attributes = self.directory.resolve_user_attributes(identity)
        except Exception as e:
            logger.debug(f"No attributes for {identity}: {e}")
            return identity
        label = attributes.get('display_name') or attributes.get('common_name')
        email = attributes.get('email')
        details = ', '.join(v for v in (label, email) if v)
        return f"{identity} ({details})" if details else identity

