"""
Project and team area reconciliation: administrators, members and process roles.

Areas are walked breadth-first from each project area so that an area is fully
reconciled before any of its team areas starts. When an area cannot be read
(for example it was deleted on the server) its remaining constructs and all
of its descendants are reported as skipped; sibling areas carry on.
"""

import logging
from collections import deque
from typing import Dict, List, Optional, Sequence, Tuple

from ldap_rtc_sync.errors import NodeSkippedError, ServerQueryError
from ldap_rtc_sync.models import ConstructResult, GroupMapping, RoleHierarchyNode
from .base import ReconcilerBase

logger = logging.getLogger(__name__)


def traversal_order(root: RoleHierarchyNode) -> List[RoleHierarchyNode]:
    """Breadth-first order: every node appears after its parent and after all shallower nodes."""
    ordered = []
    queue = deque([root])
    while queue:
        node = queue.popleft()
        ordered.append(node)
        queue.extend(node.children)
    return ordered


class RoleReconciler(ReconcilerBase):
    """
    Aligns process area administrators, members and process roles.

    Only constructs with a configured mapping are touched; a process role that
    is not configured for an area is left as it is on the server.
    """

    def reconcile(self) -> List[ConstructResult]:
        for project in self.server.projects:
            self._reconcile_project(project)

        logger.info(f"[{self.server.name}] Process area constructs reconciled: {len(self.results)}")
        return self.results

    def _reconcile_project(self, project: RoleHierarchyNode) -> None:
        logger.info(f"[{self.server.name}] Reconciling project area {project.name}")
        # failed node path -> the error that failed it
        failed: Dict[Tuple[str, ...], Exception] = {}

        for node in traversal_order(project):
            ancestor = self._failed_ancestor(node.path, failed)
            if ancestor is not None:
                failed[node.path] = failed[ancestor]
                self._skip(node, ancestor, failed[ancestor], node.mappings)
                continue

            error = self._reconcile_node(node)
            if error is not None:
                failed[node.path] = error

    @staticmethod
    def _failed_ancestor(path: Tuple[str, ...], failed: Dict[Tuple[str, ...], Exception]) -> Optional[Tuple[str, ...]]:
        for depth in range(1, len(path)):
            if path[:depth] in failed:
                return path[:depth]
        return None

    def _reconcile_node(self, node: RoleHierarchyNode) -> Optional[Exception]:
        """Reconcile one area; returns the error that failed it, if any."""
        logger.debug(f"[{self.server.name}] Reconciling area {'/'.join(node.path)}")
        grouped = list(self.group_by_construct(node.mappings).items())

        for index, (construct, mappings) in enumerate(grouped):
            try:
                plan = self.plan(construct, mappings)
            except ServerQueryError as e:
                logger.error(f"[{self.server.name}] Area {'/'.join(node.path)} failed, "
                             f"skipping it and its team areas: {e}")
                remaining = [m for _, ms in grouped[index + 1:] for m in ms]
                self._skip(node, node.path, e, remaining)
                return e
            if plan is None:
                continue
            self.revoke_all(plan, plan.delta.to_remove)
            self.grant_all(plan, plan.delta.to_add)

        return None

    def _skip(self, node: RoleHierarchyNode, failed_path: Tuple[str, ...], cause: Exception,
              mappings: Sequence[GroupMapping]) -> None:
        for construct in self.group_by_construct(mappings):
            self.results.append(ConstructResult(
                construct=construct,
                error=NodeSkippedError(node.path, failed_path, cause)
            ))
        logger.warning(f"[{self.server.name}] Skipped area {'/'.join(node.path)}")
