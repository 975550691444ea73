"""
Target server integrations.

``create_target`` loads ``ldap_rtc_sync.targets.<module>`` and instantiates the
TargetServerBase subclass it defines.
"""

import importlib
import logging
from typing import Any, Dict, Mapping

from ldap_rtc_sync.errors import SyncError
from .base import TargetServerBase

logger = logging.getLogger(__name__)


def load_target_class(module_name: str) -> type:
    """
    Import a target module and find its TargetServerBase subclass.

    Raises:
        SyncError: If the module cannot be imported or defines no subclass
    """
    try:
        target_module = importlib.import_module(f"ldap_rtc_sync.targets.{module_name}")
    except ImportError as e:
        raise SyncError(f"Failed to import target module {module_name}: {e}")

    for attr_name in dir(target_module):
        attr = getattr(target_module, attr_name)
        if (isinstance(attr, type) and
                issubclass(attr, TargetServerBase) and
                attr is not TargetServerBase and
                attr.__module__ == target_module.__name__):
            return attr

    raise SyncError(f"No TargetServerBase subclass found in module {module_name}")


def create_target(name: str, module_name: str, connection: Mapping[str, Any]) -> TargetServerBase:
    """Instantiate the client for one configured server."""
    target_class = load_target_class(module_name)
    settings: Dict[str, Any] = dict(connection)
    settings.setdefault('name', name)
    try:
        return target_class(settings)
    except SyncError:
        raise
    except Exception as e:
        raise SyncError(f"Failed to initialize server {name}: {e}")
