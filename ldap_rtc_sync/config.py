"""
Configuration loading and management for LDAP RTC Sync.

This module loads the YAML (or JSON) configuration file, applies environment
variable overrides and secret decryption, validates it, fills in defaults, and
builds the immutable ServerConfig objects the reconcilers work from.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, List, Optional, Tuple

from ldap_rtc_sync.credentials import CredentialError, decrypt_secrets
from ldap_rtc_sync.models import (
    ADMINISTRATOR, LICENSE, MEMBER, PERMISSION, ROLE,
    Construct, GroupMapping, LicensePool, RoleHierarchyNode, ServerConfig
)

logger = logging.getLogger(__name__)

# Server keys that describe mappings rather than the connection
MAPPING_KEYS = ('permissions', 'licenses', 'projects', 'allow_empty_desired')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML/JSON in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file {self.config_path} does not contain a mapping")

        self._apply_env_overrides()

        try:
            self.config = decrypt_secrets(self.config)
        except CredentialError as e:
            raise ConfigurationError(f"Cannot decrypt configuration secrets: {e}")

        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        for i, server in enumerate(self.config.get('servers') or []):
            server_name = server.get('name', f'server_{i}')
            env_var = f"{re.sub(r'[^A-Za-z0-9]', '_', server_name).upper()}_PASSWORD"
            env_value = os.getenv(env_var)
            if env_value and isinstance(server.get('auth'), dict):
                server['auth']['password'] = env_value
                logger.debug(f"Applied environment override for {server_name} password")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ('server_url', 'bind_dn', 'bind_password'):
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")
        member_lookup = str(ldap_config.get('member_lookup', 'memberof')).lower()
        if member_lookup not in ('memberof', 'member'):
            errors.append(f"ldap.member_lookup must be 'memberof' or 'member', not '{member_lookup}'")

        servers = self.config.get('servers') or []
        if not servers:
            errors.append("At least one server must be configured")

        seen_names = set()
        for i, server in enumerate(servers):
            prefix = f"servers[{i}]"
            if not isinstance(server, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            for field in ('name', 'base_url', 'auth'):
                if not server.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

            name = server.get('name')
            if name in seen_names:
                errors.append(f"Duplicate server name '{name}' at {prefix}")
            seen_names.add(name)

            auth = server.get('auth') or {}
            if auth and not auth.get('method'):
                errors.append(f"Missing auth method for {prefix}")

            if not any(server.get(key) for key in ('permissions', 'licenses', 'projects')):
                errors.append(f"No permissions, licenses or projects configured for {prefix}")

            for j, entry in enumerate(server.get('permissions') or []):
                entry_prefix = f"{prefix}.permissions[{j}]"
                if not entry.get('ldap_group'):
                    errors.append(f"Missing ldap_group for {entry_prefix}")
                if not entry.get('permission_group'):
                    errors.append(f"Missing permission_group for {entry_prefix}")

            capacities = {}
            for j, entry in enumerate(server.get('licenses') or []):
                entry_prefix = f"{prefix}.licenses[{j}]"
                if not entry.get('ldap_group'):
                    errors.append(f"Missing ldap_group for {entry_prefix}")
                if not entry.get('license'):
                    errors.append(f"Missing license for {entry_prefix}")
                capacity = entry.get('capacity')
                if capacity is not None:
                    if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 0:
                        errors.append(f"capacity for {entry_prefix} must be a non-negative integer")
                    elif capacities.setdefault(entry.get('license'), capacity) != capacity:
                        errors.append(f"Conflicting capacity for license '{entry.get('license')}' "
                                      f"at {entry_prefix}")
                if not isinstance(entry.get('priority', []), list):
                    errors.append(f"priority for {entry_prefix} must be a list of user ids")

            for j, project in enumerate(server.get('projects') or []):
                self._validate_area(project, f"{prefix}.projects[{j}]", errors)

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_area(self, area: Any, prefix: str, errors: List[str]):
        """Validate a project or team area entry and its team areas."""
        if not isinstance(area, dict):
            errors.append(f"{prefix} must be a mapping")
            return
        if not area.get('name'):
            errors.append(f"Missing name for {prefix}")

        for key in ('administrators', 'members'):
            value = area.get(key)
            if value is not None and not isinstance(value, (str, list)):
                errors.append(f"{prefix}.{key} must be a directory group or a list of them")

        roles = area.get('roles')
        if roles is not None:
            if not isinstance(roles, dict):
                errors.append(f"{prefix}.roles must map process role names to directory groups")
            else:
                for role, groups in roles.items():
                    if not groups or not isinstance(groups, (str, list)):
                        errors.append(f"{prefix}.roles.{role} must name at least one directory group")

        for k, child in enumerate(area.get('team_areas') or []):
            self._validate_area(child, f"{prefix}.team_areas[{k}]", errors)

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'user_base_dn': '',
            'user_filter': '(objectClass=person)',
            'user_id_attribute': 'uid',
            'member_lookup': 'memberof',
            'attributes': ['cn', 'displayName', 'givenName', 'sn', 'mail']
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        sync_defaults = {
            'allow_empty_desired': False,
            'max_parallel_servers': 1,
            'dry_run': False,
            'describe_users': True
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

        for server in self.config.get('servers', []):
            server.setdefault('module', 'jazz')
            server.setdefault('verify_ssl', True)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _build_area(area: Dict[str, Any], parent_path: Tuple[str, ...]) -> RoleHierarchyNode:
    path = parent_path + (area['name'],)
    allow_empty = area.get('allow_empty_desired')

    mappings = []
    for group in _as_list(area.get('administrators')):
        mappings.append(GroupMapping(group, Construct(ADMINISTRATOR, 'administrators', path), allow_empty))
    for group in _as_list(area.get('members')):
        mappings.append(GroupMapping(group, Construct(MEMBER, 'members', path), allow_empty))
    for role, groups in (area.get('roles') or {}).items():
        for group in _as_list(groups):
            mappings.append(GroupMapping(group, Construct(ROLE, str(role), path), allow_empty))

    children = tuple(_build_area(child, path) for child in area.get('team_areas') or [])
    return RoleHierarchyNode(name=area['name'], path=path, mappings=tuple(mappings), children=children)


def build_server_config(server: Dict[str, Any], sync_config: Optional[Dict[str, Any]] = None) -> ServerConfig:
    """Turn one validated server entry into an immutable ServerConfig."""
    sync_config = sync_config or {}
    name = server['name']

    permissions = tuple(
        GroupMapping(entry['ldap_group'],
                     Construct(PERMISSION, entry['permission_group']),
                     entry.get('allow_empty_desired'))
        for entry in server.get('permissions') or []
    )

    licenses = []
    pools: Dict[str, Dict[str, Any]] = {}
    for entry in server.get('licenses') or []:
        license_name = entry['license']
        licenses.append(GroupMapping(entry['ldap_group'], Construct(LICENSE, license_name),
                                     entry.get('allow_empty_desired')))
        pool = pools.setdefault(license_name, {'capacity': None, 'priority': []})
        if entry.get('capacity') is not None:
            pool['capacity'] = entry['capacity']
        pool['priority'].extend(str(p) for p in entry.get('priority') or [])

    license_pools = tuple(
        LicensePool(license=license_name, capacity=pool['capacity'],
                    priority=tuple(dict.fromkeys(pool['priority'])))
        for license_name, pool in pools.items()
    )

    projects = tuple(_build_area(project, ()) for project in server.get('projects') or [])

    connection = {key: value for key, value in server.items() if key not in MAPPING_KEYS}

    return ServerConfig(
        name=name,
        module=server.get('module', 'jazz'),
        connection=connection,
        permissions=permissions,
        licenses=tuple(licenses),
        license_pools=license_pools,
        projects=projects,
        allow_empty_desired=bool(server.get('allow_empty_desired',
                                            sync_config.get('allow_empty_desired', False)))
    )


def build_server_configs(config: Dict[str, Any]) -> Tuple[ServerConfig, ...]:
    """Ordered ServerConfig objects for every configured server."""
    sync_config = config.get('sync', {})
    return tuple(build_server_config(server, sync_config) for server in config.get('servers', []))


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def mapped_groups(servers: Tuple[ServerConfig, ...]) -> List[str]:
    """Every directory group referenced by the given servers, in configuration order."""
    groups: List[str] = []

    def collect(mappings):
        for mapping in mappings:
            if mapping.ldap_group not in groups:
                groups.append(mapping.ldap_group)

    def walk(node: RoleHierarchyNode):
        collect(node.mappings)
        for child in node.children:
            walk(child)

    for server in servers:
        collect(server.permissions)
        collect(server.licenses)
        for project in server.projects:
            walk(project)
    return groups
