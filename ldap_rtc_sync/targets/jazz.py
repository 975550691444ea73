"""
Jazz (RTC) server integration module.

This module implements the TargetServerBase interface for a Jazz Team Server
administration REST API: repository permission groups, client access license
assignments, and project/team area administrators, members and process roles.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ldap_rtc_sync.errors import ServerQueryError
from ldap_rtc_sync.models import (
    ADMINISTRATOR, LICENSE, MEMBER, PERMISSION, ROLE, Construct, Identity
)
from .base import TargetServerBase, TargetAPIError, TargetAuthenticationError, TargetConnectionError

logger = logging.getLogger(__name__)


class JazzServerAPI(TargetServerBase):
    """
    Jazz server client.

    Every construct maps to a collection resource; membership is read with GET
    on the collection and changed with PUT/DELETE on ``<collection>/<user>``.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.user_id_field = config.get('user_id_field', 'userId')
        self.session_check_path = config.get('session_check_path', '/admin/permissions')
        logger.info(f"Initialized Jazz server client for {self.name}")

    def collection_path(self, construct: Construct) -> str:
        """REST collection holding the identities assigned to a construct."""
        name = quote(construct.name, safe='')

        if construct.kind == PERMISSION:
            return f'/admin/permissions/{name}/members'
        if construct.kind == LICENSE:
            return f'/admin/licenses/{name}/assignments'

        area = quote('/'.join(construct.node_path), safe='')
        if construct.kind == ADMINISTRATOR:
            return f'/process/areas/{area}/administrators'
        if construct.kind == MEMBER:
            return f'/process/areas/{area}/members'
        if construct.kind == ROLE:
            return f'/process/areas/{area}/roles/{name}/members'

        raise ValueError(f"Unknown construct kind: {construct.kind}")

    def verify_session(self):
        self.request('GET', self.session_check_path)

    def current_members(self, construct: Construct) -> List[Identity]:
        """
        Get the user ids currently holding a construct.

        Raises:
            ServerQueryError: If the resource cannot be read (a 404 on a
                process area means it was deleted)
            TargetConnectionError, TargetAuthenticationError: If the session is lost
        """
        path = self.collection_path(construct)
        try:
            logger.debug(f"Fetching holders of {construct} from {self.name}")
            response = self.request('GET', path)
        except (TargetConnectionError, TargetAuthenticationError):
            raise
        except TargetAPIError as e:
            if e.status_code == 404:
                raise ServerQueryError(f"{construct} not found on {self.name}")
            raise ServerQueryError(f"Failed to read {construct} on {self.name}: {e}")

        members = self._parse_members(response)
        logger.info(f"Retrieved {len(members)} holders of {construct} from {self.name}")
        return members

    def _parse_members(self, response: Any) -> List[Identity]:
        if isinstance(response, dict):
            entries = response.get('members', response.get('assigned', response.get('users', [])))
        else:
            entries = response or []

        members = []
        for entry in entries:
            if isinstance(entry, dict):
                user_id = entry.get(self.user_id_field, entry.get('id'))
            else:
                user_id = entry
            if not user_id:
                logger.warning(f"Entry without {self.user_id_field} skipped on {self.name}: {entry}")
                continue
            members.append(str(user_id))
        return members

    def grant(self, construct: Construct, identity: Identity) -> bool:
        """
        Assign the construct to a user.

        An HTTP 409 means the user already holds it and counts as success.

        Raises:
            TargetAPIError: If the server rejects the assignment
        """
        path = f"{self.collection_path(construct)}/{quote(identity, safe='')}"
        try:
            self.request('PUT', path, body={self.user_id_field: identity})
        except TargetAPIError as e:
            if e.status_code == 409:
                logger.debug(f"{identity} already holds {construct} on {self.name}")
                return True
            raise
        logger.info(f"Granted {construct} to {identity} on {self.name}")
        return True

    def revoke(self, construct: Construct, identity: Identity) -> bool:
        """
        Remove the construct from a user.

        An HTTP 404 means the user does not hold it and counts as success.

        Raises:
            TargetAPIError: If the server rejects the removal
        """
        path = f"{self.collection_path(construct)}/{quote(identity, safe='')}"
        try:
            self.request('DELETE', path)
        except TargetAPIError as e:
            if e.status_code == 404:
                logger.warning(f"{identity} does not hold {construct} on {self.name}, "
                               f"considering removal successful")
                return True
            raise
        logger.info(f"Revoked {construct} from {identity} on {self.name}")
        return True

    def license_capacity(self, license_name: str) -> Optional[int]:
        """
        Seat count reported for a license, None if the server does not say.

        Raises:
            ServerQueryError: If the license cannot be read
        """
        try:
            response = self.request('GET', f"/admin/licenses/{quote(license_name, safe='')}")
        except (TargetConnectionError, TargetAuthenticationError):
            raise
        except TargetAPIError as e:
            raise ServerQueryError(f"Failed to read license {license_name} on {self.name}: {e}")

        capacity = response.get('capacity') if isinstance(response, dict) else None
        return int(capacity) if capacity is not None else None
