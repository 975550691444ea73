"""
Per-server reconciliation pass.

For every configured server the runner opens a session, runs the permission,
license and role reconcilers in that order, and closes the session again. A
server that fails is recorded as a failed SyncOutcome and the next server is
still attempted.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence

from ldap_rtc_sync.config import ConfigurationError
from ldap_rtc_sync.logging_setup import security_logger
from ldap_rtc_sync.models import STATUS_FAILED, ServerConfig, SyncOutcome
from ldap_rtc_sync.reconcilers import DEFAULT_RECONCILERS
from ldap_rtc_sync.targets import create_target

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_SYNC_FAILURES = 1


class ReconciliationRunner:
    """
    Reconciles a sequence of servers against one directory.

    Args:
        directory: Connected directory client (resolve_group_members,
            resolve_user_attributes)
        target_factory: Callable (name, module, connection) -> target client
        error_config: error_handling configuration section
        max_workers: Servers reconciled at the same time; 1 is sequential
        dry_run: Report deltas without changing any server
        describe_users: Include directory attributes in the audit log
        reconcilers: Reconciler classes run for every server, in order
    """

    def __init__(self, directory: Any, target_factory: Callable = create_target,
                 error_config: Optional[Dict[str, Any]] = None, max_workers: int = 1,
                 dry_run: bool = False, describe_users: bool = False,
                 reconcilers: Sequence[type] = DEFAULT_RECONCILERS):
        self.directory = directory
        self.target_factory = target_factory
        self.error_config = error_config if error_config is not None else {}
        self.max_workers = max(1, int(max_workers or 1))
        self.dry_run = dry_run
        self.describe_users = describe_users
        self.reconcilers = tuple(reconcilers)

    def run(self, servers: Sequence[ServerConfig]) -> List[SyncOutcome]:
        """
        Reconcile every server and return their outcomes in listed order.

        Raises:
            ConfigurationError: If no servers are given
        """
        servers = list(servers)
        if not servers:
            raise ConfigurationError("No servers configured")

        logger.info(f"Reconciling {len(servers)} server(s)"
                    f"{' in dry-run mode' if self.dry_run else ''}")

        if self.max_workers == 1 or len(servers) == 1:
            return [self.run_server(server) for server in servers]

        workers = min(self.max_workers, len(servers))
        logger.info(f"Using {workers} parallel workers")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='sync') as executor:
            return list(executor.map(self.run_server, servers))

    def run_server(self, server: ServerConfig) -> SyncOutcome:
        """Run one server's pass; never raises."""
        outcome = SyncOutcome(server=server.name, dry_run=self.dry_run)
        start_time = time.monotonic()
        target = None
        logger.info(f"Processing server: {server.name}")

        try:
            target = self.target_factory(server.name, server.module, server.connection)
            self._connect(server, target)

            for reconciler_class in self.reconcilers:
                reconciler = reconciler_class(
                    server, self.directory, target,
                    error_config=self.error_config,
                    dry_run=self.dry_run,
                    describe_users=self.describe_users
                )
                try:
                    outcome.results.extend(reconciler.reconcile())
                except Exception:
                    # constructs finished before the failure are still reported
                    outcome.results.extend(reconciler.results)
                    raise

        except Exception as e:
            logger.error(f"Server {server.name} failed: {e}", exc_info=True)
            outcome.status = STATUS_FAILED
            outcome.error = e

        finally:
            if target is not None:
                try:
                    target.disconnect()
                except Exception as e:
                    logger.warning(f"Error disconnecting from {server.name}: {e}")
            outcome.runtime_seconds = time.monotonic() - start_time

        outcome.finalize()
        logger.info(f"Completed server: {server.name} ({outcome.status}) "
                    f"in {outcome.runtime_seconds:.2f} seconds")
        return outcome

    def _connect(self, server: ServerConfig, target: Any) -> None:
        username = server.connection.get('auth', {}).get('username', 'n/a')
        try:
            target.connect()
        except Exception:
            security_logger.log_authentication_attempt(server.name, username, False)
            raise
        security_logger.log_authentication_attempt(server.name, username, True)


def overall_status(outcomes: Sequence[SyncOutcome]) -> int:
    """Exit status for a run: non-zero when any server failed or completed partially."""
    if all(outcome.ok for outcome in outcomes):
        return EXIT_SUCCESS
    return EXIT_SYNC_FAILURES
