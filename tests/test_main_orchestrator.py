#!/usr/bin/env python3
"""
Unit tests for the main sync orchestrator.

Tests exit code mapping, notifications and the health check with mock LDAP
and runner objects.
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path to import ldap_rtc_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_rtc_sync.main import SyncOrchestrator, encrypt_password, main
from ldap_rtc_sync.config import ConfigurationError
from ldap_rtc_sync.credentials import CredentialError
from ldap_rtc_sync.ldap_client import LDAPConnectionError
from ldap_rtc_sync.models import STATUS_FAILED, STATUS_PARTIAL, SyncOutcome


class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_config = {
            'ldap': {
                'server_url': 'ldaps://test.example.com',
                'bind_dn': 'CN=service,DC=test,DC=com',
                'bind_password': 'test_password',
                'user_base_dn': 'OU=Users,DC=test,DC=com'
            },
            'servers': [
                {
                    'name': 'ccm',
                    'module': 'jazz',
                    'base_url': 'https://jazz.test.com/ccm',
                    'auth': {'method': 'basic', 'username': 'test', 'password': 'test'},
                    'permissions': [
                        {'ldap_group': 'CN=Admins,OU=Groups,DC=test,DC=com', 'permission_group': 'JazzAdmins'}
                    ]
                }
            ],
            'sync': {'max_parallel_servers': 2, 'dry_run': False, 'describe_users': False},
            'logging': {'level': 'INFO', 'log_dir': 'test_logs', 'retention_days': 7},
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 1},
            'notifications': {'enable_email': False}
        }

        patcher = patch('ldap_rtc_sync.main.setup_logging')
        self.mock_setup_logging = patcher.start()
        self.addCleanup(patcher.stop)

    @patch('ldap_rtc_sync.main.ReconciliationRunner')
    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_successful_sync(self, mock_load_config, mock_ldap_client, mock_runner_class):
        """Test successful synchronization run."""
        mock_load_config.return_value = self.test_config
        mock_ldap = Mock()
        mock_ldap_client.return_value = mock_ldap
        mock_runner_class.return_value.run.return_value = [SyncOutcome('ccm')]

        orchestrator = SyncOrchestrator()
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, 0)
        mock_ldap.connect.assert_called_once_with(max_retries=2, retry_wait=1)
        mock_ldap.disconnect.assert_called_once()

        args, kwargs = mock_runner_class.call_args
        self.assertIs(args[0], mock_ldap)
        self.assertEqual(kwargs['max_workers'], 2)
        self.assertFalse(kwargs['dry_run'])

        servers = mock_runner_class.return_value.run.call_args[0][0]
        self.assertEqual([s.name for s in servers], ['ccm'])

    @patch('ldap_rtc_sync.main.ReconciliationRunner')
    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_command_line_overrides(self, mock_load_config, mock_ldap_client, mock_runner_class):
        mock_load_config.return_value = self.test_config
        mock_runner_class.return_value.run.return_value = [SyncOutcome('ccm', dry_run=True)]

        orchestrator = SyncOrchestrator(dry_run=True, max_workers=4)
        orchestrator.run()

        kwargs = mock_runner_class.call_args[1]
        self.assertTrue(kwargs['dry_run'])
        self.assertEqual(kwargs['max_workers'], 4)

    @patch('ldap_rtc_sync.main.send_server_failure_notification')
    @patch('ldap_rtc_sync.main.ReconciliationRunner')
    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_failed_server_gives_exit_code_1(self, mock_load_config, mock_ldap_client,
                                             mock_runner_class, mock_notify):
        mock_load_config.return_value = self.test_config
        outcomes = [
            SyncOutcome('one'),
            SyncOutcome('two', status=STATUS_FAILED, error=RuntimeError("down")),
            SyncOutcome('three', status=STATUS_PARTIAL),
        ]
        mock_runner_class.return_value.run.return_value = outcomes

        orchestrator = SyncOrchestrator()
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, 1)
        notified = [c[0][0].server for c in mock_notify.call_args_list]
        self.assertEqual(notified, ['two', 'three'])

    @patch('ldap_rtc_sync.main.load_config')
    def test_configuration_error(self, mock_load_config):
        """Test handling of configuration errors."""
        mock_load_config.side_effect = ConfigurationError("Invalid config")

        orchestrator = SyncOrchestrator()
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, 2)

    @patch('ldap_rtc_sync.main.load_config')
    def test_unreadable_configuration(self, mock_load_config):
        mock_load_config.side_effect = OSError("Permission denied")

        self.assertEqual(SyncOrchestrator().run(), 2)

    @patch('ldap_rtc_sync.main.send_ldap_connection_failure')
    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_ldap_connection_error(self, mock_load_config, mock_ldap_client, mock_notify):
        """Test handling of LDAP connection errors."""
        mock_load_config.return_value = self.test_config
        mock_ldap = Mock()
        mock_ldap.connect.side_effect = LDAPConnectionError("LDAP server unreachable")
        mock_ldap_client.return_value = mock_ldap

        orchestrator = SyncOrchestrator()
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, 3)
        mock_notify.assert_called_once()
        self.assertIsNone(orchestrator.ldap_client)

    @patch('ldap_rtc_sync.main.send_failure_notification')
    @patch('ldap_rtc_sync.main.ReconciliationRunner')
    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_unexpected_error(self, mock_load_config, mock_ldap_client, mock_runner_class, mock_notify):
        mock_load_config.return_value = self.test_config
        mock_runner_class.return_value.run.side_effect = RuntimeError("unexpected")

        exit_code = SyncOrchestrator().run()

        self.assertEqual(exit_code, 4)
        mock_notify.assert_called_once()
        mock_ldap_client.return_value.disconnect.assert_called_once()

    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_health_check(self, mock_load_config, mock_ldap_client):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value.get_connection_stats.return_value = {'connected': True, 'page_size': 1000}

        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['configuration']['status'], 'pass')
        self.assertEqual(health['checks']['ldap']['status'], 'pass')
        self.assertEqual(health['checks']['ldap']['details']['page_size'], 1000)
        self.assertEqual(health['checks']['servers']['ccm']['status'], 'pass')
        self.assertEqual(health['checks']['notifications']['status'], 'skip')

    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_health_check_missing_group(self, mock_load_config, mock_ldap_client):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value.validate_group_dn.return_value = False

        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['ldap']['status'], 'fail')
        self.assertIn('CN=Admins,OU=Groups,DC=test,DC=com', health['checks']['ldap']['message'])
        mock_ldap_client.return_value.disconnect.assert_called_once()

    @patch('ldap_rtc_sync.main.LDAPClient')
    @patch('ldap_rtc_sync.main.load_config')
    def test_health_check_unknown_module(self, mock_load_config, mock_ldap_client):
        self.test_config['servers'][0]['module'] = 'does_not_exist'
        mock_load_config.return_value = self.test_config

        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['servers']['ccm']['status'], 'fail')

    @patch('ldap_rtc_sync.main.load_config')
    def test_health_check_bad_configuration(self, mock_load_config):
        mock_load_config.side_effect = ConfigurationError("broken")

        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertNotIn('ldap', health['checks'])


class TestCommandLine(unittest.TestCase):
    """Test cases for the command line entry point."""

    @patch('ldap_rtc_sync.main.SyncOrchestrator')
    def test_main_passes_arguments(self, mock_orchestrator_class):
        mock_orchestrator_class.return_value.run.return_value = 0

        with patch.object(sys, 'argv', ['ldap-rtc-sync', '-c', 'sync.yaml', '--dry-run', '--max-workers', '3']):
            with self.assertRaises(SystemExit) as ctx:
                main()

        self.assertEqual(ctx.exception.code, 0)
        mock_orchestrator_class.assert_called_once_with(config_path='sync.yaml', dry_run=True, max_workers=3)

    @patch('ldap_rtc_sync.main.SyncOrchestrator')
    def test_main_exit_code_from_run(self, mock_orchestrator_class):
        mock_orchestrator_class.return_value.run.return_value = 1

        with patch.object(sys, 'argv', ['ldap-rtc-sync']):
            with self.assertRaises(SystemExit) as ctx:
                main()

        self.assertEqual(ctx.exception.code, 1)
        mock_orchestrator_class.assert_called_once_with(config_path=None, dry_run=None, max_workers=None)

    @patch('ldap_rtc_sync.main.encrypt_secret', return_value='enc:token')
    @patch('getpass.getpass', side_effect=['s3cret', 's3cret'])
    def test_encrypt_password(self, mock_getpass, mock_encrypt):
        with patch('builtins.print') as mock_print:
            self.assertEqual(encrypt_password(), 0)

        mock_encrypt.assert_called_once_with('s3cret')
        mock_print.assert_called_once_with('enc:token')

    @patch('getpass.getpass', side_effect=['one', 'two'])
    def test_encrypt_password_mismatch(self, mock_getpass):
        with patch('builtins.print'):
            self.assertEqual(encrypt_password(), 1)

    @patch('ldap_rtc_sync.main.encrypt_secret', side_effect=CredentialError("No encryption key"))
    @patch('getpass.getpass', side_effect=['s3cret', 's3cret'])
    def test_encrypt_password_without_key(self, mock_getpass, mock_encrypt):
        with patch('builtins.print'):
            self.assertEqual(encrypt_password(), 2)


if __name__ == '__main__':
    unittest.main()
