"""
Membership differ.

Computes the add/remove operations that turn the server's actual membership of
a construct into the directory's desired membership.
"""

import logging
from typing import Collection, Iterable, List, Optional

from ldap_rtc_sync.errors import UnsafeEmptyDesiredSetError
from ldap_rtc_sync.models import Construct, DeltaSet, Identity

logger = logging.getLogger(__name__)


def _unique(identities: Iterable[Identity]) -> List[Identity]:
    seen = set()
    ordered = []
    for identity in identities:
        if identity not in seen:
            seen.add(identity)
            ordered.append(identity)
    return ordered


def diff(desired: Iterable[Identity], actual: Iterable[Identity],
         construct: Optional[Construct] = None) -> DeltaSet:
    """
    Compute the delta between desired and actual membership.

    Both inputs are treated as sets. ``to_add`` keeps the iteration order of
    ``desired`` and ``to_remove`` keeps the order of ``actual``, so the result
    is stable for a given input.

    Args:
        desired: Identities the directory says should hold the construct
        actual: Identities the server currently reports
        construct: Optional construct, used only for logging

    Returns:
        DeltaSet with disjoint to_add and to_remove
    """
    desired_list = _unique(desired)
    actual_list = _unique(actual)
    desired_set = set(desired_list)
    actual_set = set(actual_list)

    delta = DeltaSet(
        to_add=tuple(i for i in desired_list if i not in actual_set),
        to_remove=tuple(i for i in actual_list if i not in desired_set),
    )

    label = str(construct) if construct is not None else 'construct'
    if is_full_revocation(desired_list, actual_list):
        logger.warning(f"Full revocation computed for {label}: directory returned no members, "
                       f"{len(actual_list)} current holders would be removed")
    else:
        logger.debug(f"Delta for {label}: {len(delta.to_add)} to add, {len(delta.to_remove)} to remove")

    return delta


def is_full_revocation(desired: Collection[Identity], actual: Collection[Identity]) -> bool:
    """True when desired is empty and actual is not."""
    return len(desired) == 0 and len(actual) > 0


def guard_full_revocation(delta: DeltaSet, desired_count: int, construct: Construct,
                          allow_empty: bool) -> None:
    """
    Refuse a delta that strips every holder of a construct.

    Raises:
        UnsafeEmptyDesiredSetError: If the desired set was empty, the delta
            removes somebody, and allow_empty is not set
    """
    if desired_count == 0 and delta.to_remove and not allow_empty:
        raise UnsafeEmptyDesiredSetError(construct, delta.to_remove)
    if desired_count == 0 and delta.to_remove:
        logger.warning(f"Applying full revocation of {construct} "
                       f"({len(delta.to_remove)} holders): allow_empty_desired is set")
