"""
LDAP client for connecting to and querying LDAP directories.

This module resolves directory groups to the user ids of their members and
user ids to their attributes. It is the only place that talks to the directory.
"""

import logging
import ssl
import threading
import time
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from ldap_rtc_sync.errors import DirectoryLookupError, SyncError
from ldap_rtc_sync.models import Identity

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'


class LDAPConnectionError(SyncError):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(DirectoryLookupError):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for connecting to and querying LDAP directories.

    Supports both memberOf reverse lookup and reading the group's member
    attribute. A lock serializes searches so one client can be shared by
    parallel server workers.
    """

    ATTRIBUTE_MAPPING = {
        'cn': 'common_name',
        'displayName': 'display_name',
        'givenName': 'first_name',
        'sn': 'last_name',
        'mail': 'email',
        'sAMAccountName': 'username',
        'uid': 'username'
    }

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.user_id_attribute = config.get('user_id_attribute', 'uid')
        self.member_lookup = config.get('member_lookup', 'memberof').lower()
        self.verify_groups = config.get('verify_groups', True)

        attributes = list(config.get('attributes', ['cn', 'displayName', 'givenName', 'sn', 'mail']))
        for attr in (self.user_id_attribute, 'sAMAccountName'):
            if attr not in attributes:
                attributes.append(attr)
        self.attributes = attributes

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False
        self._lock = threading.RLock()

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = self.retry_wait if retry_wait is None else retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                self.connection.open()

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPBindError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind failure on broken connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def resolve_group_members(self, group_dn: str) -> List[Identity]:
        """
        Resolve a directory group to the user ids of its members.

        The result is in directory listing order without duplicates. A group
        that does not exist is an error, never an empty result.

        Args:
            group_dn: Distinguished name of the group

        Returns:
            Ordered list of user ids

        Raises:
            LDAPQueryError: If the group is missing or the query fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        logger.info(f"Retrieving members of group: {group_dn}")

        with self._lock:
            try:
                if self.verify_groups and not self._entry_exists(group_dn):
                    raise LDAPQueryError(f"Group not found: {group_dn}")

                if self.member_lookup == 'member':
                    entries = self._get_member_entries_by_group_attribute(group_dn)
                else:
                    entries = self._get_member_entries_by_memberof(group_dn)
            except LDAPQueryError:
                raise
            except LDAPException as e:
                raise LDAPQueryError(f"LDAP query failed for {group_dn}: {e}")

        members = []
        seen = set()
        for entry in entries:
            identity = self._get_user_identifier(entry)
            if identity is None:
                logger.warning(f"User entry has no {self.user_id_attribute}: {entry.get('dn')}")
                continue
            if identity not in seen:
                seen.add(identity)
                members.append(identity)

        logger.info(f"Group {group_dn} resolved to {len(members)} members")
        return members

    def resolve_user_attributes(self, identity: Identity) -> Dict[str, Any]:
        """
        Look up display attributes of a user.

        Returns:
            Mapping of standard attribute names to values

        Raises:
            LDAPQueryError: If the user cannot be found or the query fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_filter = (f"(&{self.user_filter}"
                         f"({self.user_id_attribute}={escape_filter_chars(identity)}))")
        with self._lock:
            try:
                success = self.connection.search(
                    search_base=self.user_base_dn or self._get_domain_base(),
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=self.attributes,
                    size_limit=1
                )
            except LDAPException as e:
                raise LDAPQueryError(f"LDAP query failed for user {identity}: {e}")

            if not success or not self.connection.entries:
                raise LDAPQueryError(f"User not found: {identity}")
            return self._extract_user_attributes(self.connection.entries[0])

    def _entry_exists(self, dn: str) -> bool:
        try:
            success = self.connection.search(
                search_base=dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['objectClass']
            )
        except LDAPException as e:
            # noSuchObject surfaces as an exception when raise_exceptions is on
            logger.debug(f"Base search on {dn} failed: {e}")
            return False
        return bool(success and self.connection.entries)

    def _get_member_entries_by_memberof(self, group_dn: str) -> List[Dict[str, Any]]:
        """Get group members using memberOf reverse lookup (Active Directory style)."""
        search_filter = f"(&{self.user_filter}(memberOf={escape_filter_chars(group_dn)}))"
        search_base = self.user_base_dn or self._get_domain_base()

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        cookie = None
        page_count = 0
        while True:
            success = self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=self.attributes,
                paged_size=self.page_size,
                paged_cookie=cookie
            )
            if not success and self.connection.result.get('result') not in (0, None):
                raise LDAPQueryError(f"Search failed: {self.connection.result}")

            page_count += 1
            page_entries = [self._extract_user_attributes(e) for e in self.connection.entries]
            entries.extend(page_entries)
            logger.debug(f"Page {page_count}: Retrieved {len(page_entries)} entries")

            controls = self.connection.result.get('controls') or {}
            cookie = controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
            if not cookie:
                break

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    def _get_member_entries_by_group_attribute(self, group_dn: str) -> List[Dict[str, Any]]:
        """Get group members by reading the group's member attribute."""
        success = self.connection.search(
            search_base=group_dn,
            search_filter='(objectClass=*)',
            search_scope=BASE,
            attributes=['member', 'uniqueMember']
        )
        if not success or not self.connection.entries:
            raise LDAPQueryError(f"Group not found: {group_dn}")

        group_attrs = self.connection.entries[0].entry_attributes_as_dict
        member_dns = list(group_attrs.get('member', [])) + list(group_attrs.get('uniqueMember', []))
        if not member_dns:
            logger.info(f"No members found in group {group_dn}")
            return []

        logger.debug(f"Found {len(member_dns)} member DNs in group")

        entries = []
        for member_dn in member_dns:
            success = self.connection.search(
                search_base=member_dn,
                search_filter=self.user_filter,
                search_scope=BASE,
                attributes=self.attributes
            )
            if success and self.connection.entries:
                entries.append(self._extract_user_attributes(self.connection.entries[0]))
            else:
                # Nested groups and non-person entries do not match user_filter
                logger.debug(f"Member {member_dn} is not a user entry, skipped")
        return entries

    def _extract_user_attributes(self, entry) -> Dict[str, Any]:
        """Map an LDAP entry to a flat dictionary of standard attribute names."""
        raw = entry.entry_attributes_as_dict
        user_data = {'dn': str(entry.entry_dn)}

        for ldap_attr, values in raw.items():
            value = values[0] if isinstance(values, list) and values else values
            if value in (None, [], ''):
                continue
            user_data[ldap_attr] = value
            std_attr = self.ATTRIBUTE_MAPPING.get(ldap_attr)
            if std_attr and std_attr not in user_data:
                user_data[std_attr] = value

        return user_data

    def _get_user_identifier(self, user_data: Dict[str, Any]) -> Optional[Identity]:
        """User id from the configured attribute, falling back to sAMAccountName."""
        value = user_data.get(self.user_id_attribute) or user_data.get('sAMAccountName')
        return str(value) if value else None

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if self.user_base_dn:
            return self.user_base_dn

        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def validate_group_dn(self, group_dn: str) -> bool:
        """
        Validate that a group DN exists and is accessible.

        Returns:
            True if group exists and is accessible
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        with self._lock:
            exists = self._entry_exists(group_dn)
        if exists:
            logger.debug(f"Group DN validated: {group_dn}")
        else:
            logger.warning(f"Group DN not found or inaccessible: {group_dn}")
        return exists

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get connection statistics and status."""
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'user_base_dn': self.user_base_dn,
            'member_lookup': self.member_lookup,
            'page_size': self.page_size
        }
