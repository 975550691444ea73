"""
Email notifications for LDAP RTC Sync.

Sends mail for server failures, partial passes, LDAP connection failures and,
when enabled, a summary after a clean run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional, Sequence
from datetime import datetime

from ldap_rtc_sync.models import SyncOutcome

logger = logging.getLogger(__name__)

# Longest problem list quoted in a single email
MAX_LISTED_PROBLEMS = 10


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for sync failures.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "LDAP RTC Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from LDAP RTC Sync."
    ])

    return send_email(f"LDAP RTC Sync Alert: {title}", '\n'.join(body_lines), config)


def send_server_failure_notification(outcome: SyncOutcome, config: Dict[str, Any]) -> bool:
    """
    Report a server whose pass failed or completed only partially.

    Args:
        outcome: The server's SyncOutcome
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    problems: List[str] = outcome.problems()
    counts = outcome.counts()

    lines = [f"Status: {outcome.status}", f"Problems: {len(problems)}", "", "Details:"]
    for i, problem in enumerate(problems[:MAX_LISTED_PROBLEMS], 1):
        lines.append(f"  {i}. {problem}")
    if len(problems) > MAX_LISTED_PROBLEMS:
        lines.append(f"  ... and {len(problems) - MAX_LISTED_PROBLEMS} more")

    additional_info = {
        'Server': outcome.server,
        'Constructs reconciled': counts['constructs'],
        'Constructs with problems': counts['constructs_failed'],
        'Granted': counts['granted'],
        'Revoked': counts['revoked'],
        'Runtime': _format_runtime(outcome.runtime_seconds),
    }

    title = f"Server Sync {'Failed' if outcome.failed else 'Incomplete'}: {outcome.server}"
    return send_failure_notification(title, '\n'.join(lines), config, additional_info)


def send_success_summary(
    outcomes: Sequence[SyncOutcome],
    config: Dict[str, Any],
    runtime_seconds: float = 0.0
) -> bool:
    """
    Send summary notification for a completed run.

    Args:
        outcomes: Per-server outcomes of the run
        config: Notification configuration
        runtime_seconds: Wall-clock time of the whole run

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "LDAP RTC Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        f"Total runtime: {_format_runtime(runtime_seconds)}",
        f"Servers: {len(outcomes)}",
        f"Servers failed: {sum(1 for o in outcomes if not o.ok)}",
        ""
    ]

    for outcome in outcomes:
        counts = outcome.counts()
        body_lines.extend([
            f"  {outcome.server}:{' (dry run)' if outcome.dry_run else ''}",
            f"    Status: {outcome.status}",
            f"    Runtime: {outcome.runtime_seconds:.2f}s",
            f"    Constructs: {counts['constructs']}",
            f"    Granted: {counts['granted']}",
            f"    Revoked: {counts['revoked']}",
            f"    Errors: {counts['apply_errors']}",
            ""
        ])

    body_lines.append("This is an automated message from LDAP RTC Sync.")

    return send_email("LDAP RTC Sync: Completed", '\n'.join(body_lines), config)


def send_ldap_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """
    Send notification for LDAP connection failures.

    Args:
        error_message: LDAP error description
        config: Notification configuration
        retry_count: Number of retries attempted

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Component': 'LDAP Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync aborted - no servers reconciled'
    }

    return send_failure_notification(
        "LDAP Connection Failed",
        error_message,
        config,
        additional_info
    )


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = """This is a test email from LDAP RTC Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(recipients)
    )

    result = send_email("LDAP RTC Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
