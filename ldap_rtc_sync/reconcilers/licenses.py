"""
Client access license reconciliation.

License pools have a fixed number of seats. Removals always run first and
additions are capped by the seats left afterwards, so the number of assigned
users never exceeds capacity, not even between two calls.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from ldap_rtc_sync.errors import CapacityExceededError, ServerConnectionError, ServerQueryError
from ldap_rtc_sync.models import ConstructResult, Identity, LicensePool
from .base import SESSION_ERRORS, Plan, ReconcilerBase

logger = logging.getLogger(__name__)


def prioritize(candidates: Sequence[Identity], priority: Sequence[Identity]) -> List[Identity]:
    """
    Order candidates for seat assignment.

    Identities named in the priority list come first in that list's order,
    the rest follow in their given (directory listing) order.
    """
    candidate_set = set(candidates)
    first = [i for i in dict.fromkeys(priority) if i in candidate_set]
    placed = set(first)
    return first + [i for i in candidates if i not in placed]


def split_by_capacity(candidates: Sequence[Identity], available: int) -> Tuple[List[Identity], List[Identity]]:
    """(assignable, excluded) given the number of free seats."""
    available = max(0, available)
    return list(candidates[:available]), list(candidates[available:])


class LicenseReconciler(ReconcilerBase):
    """Aligns client access license assignments with their directory groups."""

    def reconcile(self) -> List[ConstructResult]:
        for construct, mappings in self.group_by_construct(self.server.licenses).items():
            try:
                plan = self.plan(construct, mappings)
            except ServerQueryError:
                continue
            if plan is None:
                continue
            self._apply_plan(plan, self.server.license_pool(construct.name))

        logger.info(f"[{self.server.name}] License pools reconciled: {len(self.results)}")
        return self.results

    def _capacity(self, pool: LicensePool) -> Optional[int]:
        if pool.capacity is not None:
            return pool.capacity
        try:
            return self.target.license_capacity(pool.license)
        except (ServerQueryError, ServerConnectionError):
            raise
        except SESSION_ERRORS as e:
            raise self.session_lost(e) from e
        except Exception as e:
            raise ServerQueryError(f"Cannot read capacity of {pool.license}: {e}")

    def _apply_plan(self, plan: Plan, pool: LicensePool) -> None:
        # Unassignment is always attempted; it frees seats for this or a later pass
        self.revoke_all(plan, plan.delta.to_remove)

        try:
            capacity = self._capacity(pool)
        except ServerQueryError as e:
            logger.error(f"[{self.server.name}] Cannot read capacity of {plan.construct}, "
                         f"skipping {len(plan.delta.to_add)} assignments: {e}")
            plan.result.error = e
            return

        candidates = prioritize(plan.delta.to_add, pool.priority)
        if capacity is None:
            logger.warning(f"[{self.server.name}] No capacity known for {plan.construct}, "
                           f"assigning without a limit")
            self.grant_all(plan, candidates)
            return

        released = len(plan.delta.to_remove) if self.dry_run else len(plan.result.revoked)
        still_assigned = len(plan.actual) - released
        available = capacity - still_assigned

        assignable, excluded = split_by_capacity(candidates, available)
        logger.info(f"[{self.server.name}] {plan.construct}: capacity {capacity}, "
                    f"{still_assigned} assigned after removals, {max(0, available)} seats free")

        if excluded:
            error = CapacityExceededError(plan.construct, capacity, excluded)
            plan.result.capacity_error = error
            logger.warning(f"[{self.server.name}] {error}")

        self.grant_all(plan, assignable)
