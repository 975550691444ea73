"""
Main orchestrator for LDAP RTC Sync.

Loads the configuration, connects to the directory, reconciles every
configured server and maps the outcomes to a process exit code.
"""

import sys
import time
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from ldap_rtc_sync.config import load_config, build_server_configs, mapped_groups, ConfigurationError
from ldap_rtc_sync.credentials import CredentialError, encrypt_secret
from ldap_rtc_sync.ldap_client import LDAPClient, LDAPConnectionError
from ldap_rtc_sync.logging_setup import setup_logging, get_logging_stats, security_logger
from ldap_rtc_sync.models import SyncOutcome
from ldap_rtc_sync.notifications import (
    send_failure_notification,
    send_server_failure_notification,
    send_ldap_connection_failure,
    send_success_summary,
    send_test_notification
)
from ldap_rtc_sync.runner import ReconciliationRunner, overall_status
from ldap_rtc_sync.targets import load_target_class

logger = logging.getLogger(__name__)

EXIT_CONFIGURATION_ERROR = 2
EXIT_LDAP_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class SyncOrchestrator:
    """
    Runs one reconciliation pass from a configuration file.

    Args:
        config_path: Path to configuration file
        dry_run: Overrides sync.dry_run when not None
        max_workers: Overrides sync.max_parallel_servers when not None
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: Optional[bool] = None,
                 max_workers: Optional[int] = None):
        self.config = None
        self.ldap_client = None
        self.config_path = config_path
        self.dry_run = dry_run
        self.max_workers = max_workers
        self.outcomes: List[SyncOutcome] = []
        self.runtime_seconds = 0.0

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 success, 1 server failures, 2 configuration,
            3 LDAP connection, 4 unexpected error)
        """
        start_time = time.monotonic()
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info("Starting LDAP RTC Sync")

            servers = build_server_configs(self.config)
            self._connect_ldap()

            sync_config = self.config.get('sync', {})
            runner = ReconciliationRunner(
                self.ldap_client,
                error_config=self.config.get('error_handling', {}),
                max_workers=self._setting(self.max_workers, sync_config.get('max_parallel_servers', 1)),
                dry_run=bool(self._setting(self.dry_run, sync_config.get('dry_run', False))),
                describe_users=sync_config.get('describe_users', True)
            )
            self.outcomes = runner.run(servers)
            self.runtime_seconds = time.monotonic() - start_time

            self._log_sync_summary()
            self._send_outcome_notifications()

            exit_code = overall_status(self.outcomes)
            if exit_code:
                failed = sum(1 for o in self.outcomes if not o.ok)
                logger.warning(f"Sync completed with {failed} server(s) failed or incomplete")
            else:
                logger.info("Sync completed successfully")
            return exit_code

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_ldap_connection_failure(str(e))
            return EXIT_LDAP_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    @staticmethod
    def _setting(override: Any, configured: Any) -> Any:
        return configured if override is None else override

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        security_logger.log_configuration_access(self.config_path or 'default')
        logger.debug("Configuration loaded successfully")

    def _connect_ldap(self):
        """Establish LDAP connection."""
        error_config = self.config.get('error_handling', {})

        self.ldap_client = LDAPClient(self.config['ldap'])
        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            security_logger.log_authentication_attempt(
                'LDAP', self.config['ldap'].get('bind_dn', ''), False)
            self.ldap_client = None
            raise
        security_logger.log_authentication_attempt('LDAP', self.config['ldap'].get('bind_dn', ''), True)

    def _notifications_config(self) -> Dict[str, Any]:
        return (self.config or {}).get('notifications', {})

    def _send_outcome_notifications(self):
        """Mail every failed or partial server, then the summary."""
        for outcome in self.outcomes:
            if outcome.ok:
                continue
            try:
                send_server_failure_notification(outcome, self._notifications_config())
            except Exception as e:
                logger.error(f"Failed to send notification for {outcome.server}: {e}")

        try:
            send_success_summary(self.outcomes, self._notifications_config(), self.runtime_seconds)
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _send_failure_notification(self, title: str, error_message: str):
        try:
            send_failure_notification(title, error_message, self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_ldap_connection_failure(self, error_message: str):
        try:
            retry_count = (self.config or {}).get('error_handling', {}).get('max_retries', 3)
            send_ldap_connection_failure(error_message, self._notifications_config(), retry_count)
        except Exception as e:
            logger.error(f"Failed to send LDAP failure notification: {e}")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        runtime_str = f"{self.runtime_seconds:.2f} seconds"
        if self.runtime_seconds > 60:
            minutes = int(self.runtime_seconds // 60)
            seconds = self.runtime_seconds % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Servers processed: {len(self.outcomes)}")
        logger.info(f"Servers failed: {sum(1 for o in self.outcomes if o.failed)}")
        logger.info(f"Servers incomplete: {sum(1 for o in self.outcomes if not o.ok and not o.failed)}")

        for outcome in self.outcomes:
            counts = outcome.counts()
            logger.info(f"--- {outcome.server}: {outcome.status} ---")
            logger.info(f"  Runtime: {outcome.runtime_seconds:.2f}s")
            logger.info(f"  Constructs: {counts['constructs']} ({counts['constructs_failed']} with problems)")
            logger.info(f"  Granted: {counts['granted']}")
            logger.info(f"  Revoked: {counts['revoked']}")
            logger.info(f"  Apply errors: {counts['apply_errors']}")
            for problem in outcome.problems():
                logger.info(f"  Problem: {problem}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if not self.config:
            return health_status

        try:
            test_client = LDAPClient(self.config['ldap'])
            test_client.connect(max_retries=1, retry_wait=1)
            try:
                missing_groups = [group for group in mapped_groups(build_server_configs(self.config))
                                  if not test_client.validate_group_dn(group)]
                connection_stats = test_client.get_connection_stats()
            finally:
                test_client.disconnect()
            if missing_groups:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': f'Mapped groups not found: {missing_groups}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful',
                    'details': connection_stats
                }
        except Exception as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        server_checks = {}
        for server in self.config.get('servers', []):
            try:
                load_target_class(server.get('module', 'jazz'))
                server_checks[server['name']] = {
                    'status': 'pass',
                    'message': 'Module loaded successfully'
                }
            except Exception as e:
                server_checks[server['name']] = {
                    'status': 'fail',
                    'message': f'Module loading failed: {e}'
                }
                health_status['status'] = 'unhealthy'
        health_status['checks']['servers'] = server_checks

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        health_status['checks']['logging'] = {'status': 'info', 'details': get_logging_stats()}
        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None


def encrypt_password() -> int:
    """Prompt for a password and print its ``enc:`` form for the configuration file."""
    import getpass

    password = getpass.getpass("Password to encrypt: ")
    confirm = getpass.getpass("Confirm password: ")
    if password != confirm:
        print("Passwords do not match", file=sys.stderr)
        return 1
    if not password:
        print("Password must not be empty", file=sys.stderr)
        return 1

    try:
        print(encrypt_secret(password))
    except CredentialError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR
    return 0


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Synchronize LDAP groups to Jazz/RTC servers')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--encrypt', action='store_true',
                        help='Encrypt a password for the configuration file')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Report changes without applying them')
    parser.add_argument('--max-workers', type=int, default=None,
                        help='Number of servers reconciled in parallel')

    args = parser.parse_args()

    if args.encrypt:
        sys.exit(encrypt_password())

    if args.max_workers is not None and args.max_workers < 1:
        parser.error("--max-workers must be at least 1")

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run,
                                    max_workers=args.max_workers)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIGURATION_ERROR)

        if send_test_notification(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
