"""
Reconcilers, run per server in this order: permissions, licenses, roles.
"""

from .base import ReconcilerBase
from .permissions import PermissionReconciler
from .licenses import LicenseReconciler
from .roles import RoleReconciler, traversal_order

DEFAULT_RECONCILERS = (PermissionReconciler, LicenseReconciler, RoleReconciler)

__all__ = [
    'ReconcilerBase',
    'PermissionReconciler',
    'LicenseReconciler',
    'RoleReconciler',
    'traversal_order',
    'DEFAULT_RECONCILERS',
]
