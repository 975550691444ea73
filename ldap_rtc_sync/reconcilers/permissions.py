"""
Repository permission group reconciliation (JazzAdmins, JazzUsers, ...).
"""

import logging
from typing import List

from ldap_rtc_sync.errors import ServerQueryError
from ldap_rtc_sync.models import ConstructResult
from .base import ReconcilerBase

logger = logging.getLogger(__name__)


class PermissionReconciler(ReconcilerBase):
    """
    Aligns repository permission groups with their directory groups.

    All deltas are computed first; every revoke across all permission groups
    is then applied before any grant, so a user moved from one group to
    another never holds both at once.
    """

    def reconcile(self) -> List[ConstructResult]:
        plans = []
        for construct, mappings in self.group_by_construct(self.server.permissions).items():
            try:
                plan = self.plan(construct, mappings)
            except ServerQueryError:
                continue
            if plan is not None:
                plans.append(plan)

        for plan in plans:
            self.revoke_all(plan, plan.delta.to_remove)
        for plan in plans:
            self.grant_all(plan, plan.delta.to_add)

        logger.info(f"[{self.server.name}] Permission groups reconciled: {len(self.results)}")
        return self.results
