"""
LDAP RTC Sync - Reconcile repository permissions, client access licenses and
project/team area roles on Jazz (RTC) servers against LDAP group membership.

The directory is the source of truth. Each configured server is brought into
agreement with it in one batch pass per invocation.
"""

__version__ = "1.0.0"
__author__ = "LDAP RTC Sync Team"
