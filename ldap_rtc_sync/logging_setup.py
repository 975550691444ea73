"""
Logging setup and configuration for LDAP RTC Sync.

This module provides centralized logging configuration: a daily rotated log
file with a retention window, optional console output, scrubbing of secrets,
and an audit logger for every grant and revoke.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'api_key', 'client_secret', 'access_token', 'refresh_token'
    ]

    _PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value and 'key': 'value' (Python reprs and JSON)
        _PATTERNS.append((re.compile(rf'({_keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
        _PATTERNS.append((re.compile(rf'([\'"]{_keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE),
                          r'\1****\2'))
    _PATTERNS.append((re.compile(r'(Authorization[\'"]?\s*:?\s*[\'"]?\s*(?:Bearer|Basic)\s+)[^\s,\'"}\]]+',
                                 re.IGNORECASE), r'\1****'))
    _PATTERNS.append((re.compile(r'(enc:)[A-Za-z0-9_\-=]+'), r'\1****'))
    del _keyword

    def filter(self, record):
        """Filter out sensitive data from log records."""
        try:
            msg = record.getMessage()
        except (TypeError, ValueError):
            msg = str(record.msg)

        for pattern, replacement in self._PATTERNS:
            msg = pattern.sub(replacement, msg)

        record.msg = msg
        record.args = ()
        return True


class LoggingManager:
    """
    Manages logging configuration for the application.

    Provides file-based logging with rotation, retention policies, and
    console output for interactive and container runs.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()

        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists, falling back to the current directory."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'app.log')

        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in glob.glob(os.path.join(self.log_dir, 'app.log.*')):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> list:
        """List current log files."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, 'app.log*')))

    def get_log_stats(self) -> Dict[str, Any]:
        """
        Get statistics about current logging setup.

        Returns:
            Dictionary with logging statistics
        """
        log_files = self.get_log_files()
        total_size = 0
        for log_file in log_files:
            try:
                total_size += os.path.getsize(log_file)
            except OSError:
                continue

        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(log_files),
            'total_size_bytes': total_size
        }


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    """Logging statistics for the health check."""
    return _logging_manager.get_log_stats()


class SecurityAuditLogger:
    """Audit trail of authentication attempts and access changes."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        """Log authentication attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} user={username}")

    def log_user_operation(self, operation: str, user_id: str, server: str, success: bool):
        """Log a grant or revoke."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"User operation {status}: {operation} user={user_id} server={server}")

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")


security_logger = SecurityAuditLogger()
