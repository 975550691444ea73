#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

Covers initialization, connection retries, group resolution with both member
lookup strategies and paging, user attribute lookup and error mapping. The
ldap3 connection is replaced by a scripted fake.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_rtc_sync.errors import DirectoryLookupError
from ldap_rtc_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError, PAGED_RESULTS_OID


def make_entry(dn, **attributes):
    entry = Mock()
    entry.entry_dn = dn
    entry.entry_attributes_as_dict = {k: v if isinstance(v, list) else [v] for k, v in attributes.items()}
    return entry


class ScriptedConnection:
    """Stands in for ldap3.Connection; each search consumes the next scripted response."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.searches = []
        self.entries = []
        self.result = {}

    def search(self, **kwargs):
        self.searches.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        success, entries, cookie = response
        self.entries = entries
        controls = {PAGED_RESULTS_OID: {'value': {'cookie': cookie}}} if cookie is not None else {}
        self.result = {'result': 0 if success else 32, 'controls': controls}
        return success

    def unbind(self):
        return True


class TestLDAPClientInit(unittest.TestCase):
    """Test cases for LDAPClient configuration handling."""

    def test_basic_configuration(self):
        client = LDAPClient({
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123'
        })

        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertTrue(client.verify_ssl)
        self.assertEqual(client.user_id_attribute, 'uid')
        self.assertEqual(client.member_lookup, 'memberof')
        self.assertIn('uid', client.attributes)
        self.assertIn('sAMAccountName', client.attributes)

    def test_advanced_configuration(self):
        client = LDAPClient({
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123',
            'start_tls': True,
            'verify_ssl': False,
            'page_size': 500,
            'member_lookup': 'MEMBER',
            'user_id_attribute': 'employeeID',
            'error_handling': {'max_retries': 5, 'retry_wait_seconds': 10}
        })

        self.assertFalse(client.use_ssl)
        self.assertTrue(client.start_tls)
        self.assertEqual(client.page_size, 500)
        self.assertEqual(client.member_lookup, 'member')
        self.assertIn('employeeID', client.attributes)
        self.assertEqual(client.max_retries, 5)
        self.assertEqual(client.retry_wait, 10)

    def test_no_tls_config_for_plain_ldap(self):
        client = LDAPClient({
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123'
        })

        self.assertIsNone(client._create_tls_config())

    def test_domain_base_from_bind_dn(self):
        client = LDAPClient({
            'server_url': 'ldap://ldap.example.com',
            'bind_dn': 'CN=svc,OU=Services,DC=corp,DC=example',
            'bind_password': 'x'
        })

        self.assertEqual(client._get_domain_base(), 'DC=corp,DC=example')


class TestLDAPClientConnect(unittest.TestCase):
    """Test cases for connect() and disconnect()."""

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123'
        }

    @patch('ldap_rtc_sync.ldap_client.Connection')
    @patch('ldap_rtc_sync.ldap_client.Server')
    def test_connect_success(self, mock_server, mock_connection):
        mock_conn = Mock()
        mock_conn.bind.return_value = True
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config)

        self.assertTrue(client.connect())
        self.assertTrue(client._connected)
        mock_conn.open.assert_called_once()
        mock_conn.bind.assert_called_once()

        client.disconnect()
        mock_conn.unbind.assert_called_once()
        self.assertFalse(client._connected)

    @patch('ldap_rtc_sync.ldap_client.time.sleep')
    @patch('ldap_rtc_sync.ldap_client.Connection')
    @patch('ldap_rtc_sync.ldap_client.Server')
    def test_connect_retries_then_fails(self, mock_server, mock_connection, mock_sleep):
        mock_conn = Mock()
        mock_conn.open.side_effect = LDAPSocketOpenError("unreachable")
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config)

        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect(max_retries=2, retry_wait=0)

        self.assertIn("after 2 attempts", str(ctx.exception))
        self.assertEqual(mock_conn.open.call_count, 2)
        self.assertEqual(mock_sleep.call_count, 1)

    @patch('ldap_rtc_sync.ldap_client.Connection')
    @patch('ldap_rtc_sync.ldap_client.Server')
    def test_bind_failure(self, mock_server, mock_connection):
        mock_conn = Mock()
        mock_conn.bind.return_value = False
        mock_conn.result = {'description': 'invalidCredentials'}
        mock_connection.return_value = mock_conn

        client = LDAPClient(self.config)

        with self.assertRaises(LDAPConnectionError):
            client.connect(max_retries=1, retry_wait=0)


class TestGroupResolution(unittest.TestCase):
    """Test cases for resolve_group_members() and resolve_user_attributes()."""

    GROUP = 'cn=G-Admins,ou=groups,dc=example,dc=com'

    def make_client(self, responses, **overrides):
        config = {
            'server_url': 'ldap://ldap.example.com',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'x',
            'user_base_dn': 'ou=people,dc=example,dc=com'
        }
        config.update(overrides)
        client = LDAPClient(config)
        client.connection = ScriptedConnection(responses)
        client._connected = True
        return client

    def test_memberof_lookup_with_paging(self):
        client = self.make_client([
            (True, [make_entry(self.GROUP, objectClass='group')], None),
            (True, [make_entry('uid=alice', uid='alice'), make_entry('uid=bob', uid='bob')], b'page2'),
            (True, [make_entry('uid=bob', uid='bob'), make_entry('uid=carol', uid='carol')], b''),
        ])

        members = client.resolve_group_members(self.GROUP)

        self.assertEqual(members, ['alice', 'bob', 'carol'])
        searches = client.connection.searches
        self.assertEqual(len(searches), 3)
        self.assertIn('memberOf=', searches[1]['search_filter'])
        self.assertIsNone(searches[1]['paged_cookie'])
        self.assertEqual(searches[2]['paged_cookie'], b'page2')

    def test_member_attribute_lookup(self):
        group = make_entry(self.GROUP, member=['uid=alice,dc=x', 'cn=Nested,dc=x'], uniqueMember=['uid=bob,dc=x'])
        client = self.make_client([
            (True, [group], None),
            (True, [group], None),
            (True, [make_entry('uid=alice,dc=x', uid='alice')], None),
            (False, [], None),
            (True, [make_entry('uid=bob,dc=x', uid='bob')], None),
        ], member_lookup='member')

        self.assertEqual(client.resolve_group_members(self.GROUP), ['alice', 'bob'])

    def test_empty_group_resolves_to_empty_list(self):
        client = self.make_client([
            (True, [make_entry(self.GROUP, objectClass='group')], None),
            (True, [], None),
        ])

        self.assertEqual(client.resolve_group_members(self.GROUP), [])

    def test_missing_group_is_an_error(self):
        client = self.make_client([(False, [], None)])

        with self.assertRaises(LDAPQueryError) as ctx:
            client.resolve_group_members(self.GROUP)

        self.assertIsInstance(ctx.exception, DirectoryLookupError)
        self.assertIn('Group not found', str(ctx.exception))

    def test_query_failure_is_lookup_error(self):
        client = self.make_client([
            (True, [make_entry(self.GROUP, objectClass='group')], None),
            LDAPException("server down"),
        ])

        with self.assertRaises(LDAPQueryError):
            client.resolve_group_members(self.GROUP)

    def test_identifier_fallback_and_skip(self):
        client = self.make_client([
            (True, [make_entry(self.GROUP, objectClass='group')], None),
            (True, [make_entry('cn=ad-user', sAMAccountName='aduser'), make_entry('cn=no-id', cn='No Id')], None),
        ])

        self.assertEqual(client.resolve_group_members(self.GROUP), ['aduser'])

    def test_not_connected(self):
        client = self.make_client([])
        client._connected = False

        with self.assertRaises(LDAPQueryError):
            client.resolve_group_members(self.GROUP)

    def test_resolve_user_attributes(self):
        client = self.make_client([
            (True, [make_entry('uid=alice', uid='alice', displayName='Alice Smith', mail='alice@example.com')], None),
        ])

        attributes = client.resolve_user_attributes('alice')

        self.assertEqual(attributes['display_name'], 'Alice Smith')
        self.assertEqual(attributes['email'], 'alice@example.com')
        self.assertEqual(attributes['username'], 'alice')
        self.assertEqual(client.connection.searches[0]['size_limit'], 1)

    def test_user_filter_escapes_identity(self):
        client = self.make_client([(True, [make_entry('uid=x', uid='a*b')], None)])

        client.resolve_user_attributes('a*b')

        self.assertIn('(uid=a\\2ab)', client.connection.searches[0]['search_filter'])

    def test_unknown_user(self):
        client = self.make_client([(True, [], None)])

        with self.assertRaises(LDAPQueryError):
            client.resolve_user_attributes('nobody')

    def test_validate_group_dn(self):
        client = self.make_client([
            (True, [make_entry(self.GROUP, objectClass='group')], None),
            LDAPException("noSuchObject"),
        ])

        self.assertTrue(client.validate_group_dn(self.GROUP))
        self.assertFalse(client.validate_group_dn('cn=gone,dc=example,dc=com'))

    def test_connection_stats(self):
        client = self.make_client([])

        stats = client.get_connection_stats()

        self.assertTrue(stats['connected'])
        self.assertEqual(stats['member_lookup'], 'memberof')


if __name__ == '__main__':
    unittest.main()
