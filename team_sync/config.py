"""
Configuration loading and management for Team Sync.

This module handles loading the settings file and the per-family membership
files from YAML, environment variable overrides, validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

from team_sync.admin_cache import DEFAULT_IGNORED_ORG_ADMINS
from team_sync.membership import Role

logger = logging.getLogger(__name__)

MEMBERSHIP_FILE_EXTENSIONS = ('.yaml',)

DEFAULT_TEAM_TEMPLATES = [
    {'suffix': '-readability'},
    {'suffix': '-readability-approvers', 'roles': ['maintainer']},
]

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off')

_NON_STRING_TAGS = (
    'tag:yaml.org,2002:bool',
    'tag:yaml.org,2002:int',
    'tag:yaml.org,2002:float',
)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class MembershipLoader(yaml.SafeLoader):
    """
    SafeLoader for membership files.

    Logins such as ``yes``, ``off`` or ``1234`` must stay strings, so plain
    scalars are never resolved to booleans or numbers.
    """


MembershipLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _NON_STRING_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def parse_bool(value: Any, name: str) -> bool:
    """
    Interpret a boolean setting given as a bool or a string.

    Raises:
        ConfigurationError: If the value is not a recognised boolean
    """
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields and run mode flags
    ENV_OVERRIDES = {
        'directory.token': 'GITHUB_TOKEN',
        'directory.org': 'GITHUB_ORG',
        'sync.dry_run': 'DRY_RUN',
        'logging.debug': 'DEBUG',
    }

    BOOLEAN_KEYS = ('sync.dry_run', 'logging.debug', 'directory.verify_ssl')

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
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except OSError as e:
            raise ConfigurationError(f"Unable to read configuration file {self.config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file {self.config_path} must contain a mapping")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _get_nested_value(self, key_path: str) -> Any:
        current = self.config
        for key in key_path.split('.'):
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        return current

    def _validate(self):
        """Validate configuration fields, reporting every problem at once."""
        errors = []

        for section in ('directory', 'memberships', 'sync', 'logging'):
            value = self.config.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Section '{section}' must be a mapping")

        directory = self.config.get('directory') or {}
        if isinstance(directory, dict):
            if not directory.get('org'):
                errors.append("Missing required directory field: org")
            timeout = directory.get('timeout_seconds')
            if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
                errors.append("directory.timeout_seconds must be a positive number")
            per_page = directory.get('per_page')
            if per_page is not None and (not isinstance(per_page, int) or not 1 <= per_page <= 100):
                errors.append("directory.per_page must be an integer between 1 and 100")

        for key in self.BOOLEAN_KEYS:
            value = self._get_nested_value(key)
            if value is None:
                continue
            try:
                self._set_nested_value(self.config, key, parse_bool(value, key))
            except ConfigurationError as e:
                errors.append(str(e))

        sync = self.config.get('sync') or {}
        if isinstance(sync, dict):
            for key in ('max_workers', 'operation_workers'):
                value = sync.get(key)
                if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 1):
                    errors.append(f"sync.{key} must be a positive integer")

        memberships = self.config.get('memberships') or {}
        if isinstance(memberships, dict):
            teams = memberships.get('teams')
            if teams is not None:
                if not isinstance(teams, list) or not teams:
                    errors.append("memberships.teams must be a non-empty list")
                else:
                    for i, template in enumerate(teams):
                        errors.extend(self._validate_team_template(i, template))

        ignored = self.config.get('ignored_org_admins')
        if ignored is not None and (not isinstance(ignored, list) or
                                    not all(isinstance(v, str) for v in ignored)):
            errors.append("ignored_org_admins must be a list of logins")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_team_template(self, index: int, template: Any) -> List[str]:
        prefix = f"memberships.teams[{index}]"
        if not isinstance(template, dict):
            return [f"{prefix} must be a mapping"]
        errors = []
        if not isinstance(template.get('suffix', ''), str):
            errors.append(f"{prefix}.suffix must be a string")
        if not isinstance(template.get('prefix', ''), str):
            errors.append(f"{prefix}.prefix must be a string")
        roles = template.get('roles')
        if roles is not None:
            if not isinstance(roles, list) or not roles:
                errors.append(f"{prefix}.roles must be a non-empty list")
            else:
                for role in roles:
                    try:
                        Role.parse(role)
                    except ValueError as e:
                        errors.append(f"{prefix}.roles: {e}")
        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'module': 'github',
            'base_url': 'https://api.github.com',
            'verify_ssl': True,
            'timeout_seconds': 30,
            'per_page': 100,
        }
        directory = self.config.setdefault('directory', {})
        for key, value in directory_defaults.items():
            directory.setdefault(key, value)

        memberships = self.config.setdefault('memberships', {})
        memberships.setdefault('directory', 'readability')
        memberships.setdefault('teams', [dict(t) for t in DEFAULT_TEAM_TEMPLATES])
        for template in memberships['teams']:
            template.setdefault('prefix', '')
            template.setdefault('suffix', '')
            if template.get('roles') is not None:
                template['roles'] = [Role.parse(role) for role in template['roles']]

        sync_defaults = {
            'dry_run': False,
            'max_workers': 1,
            'operation_workers': 1,
        }
        sync = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'debug': False,
            'log_dir': None,
            'retention_days': 7,
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        self.config.setdefault('ignored_org_admins', sorted(DEFAULT_IGNORED_ORG_ADMINS))


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


def load_membership_file(path: str) -> Dict[str, Role]:
    """
    Load one membership file mapping identities to roles.

    Raises:
        ConfigurationError: If the file cannot be read or contains invalid entries
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.load(f, Loader=MembershipLoader)
    except OSError as e:
        raise ConfigurationError(f"Failed to read membership file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse membership file {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Membership file {path} must contain a mapping of user to role")

    errors = []
    memberships: Dict[str, Role] = {}
    for identity, role in data.items():
        if not isinstance(identity, str) or not identity:
            errors.append(f"invalid user {identity!r}")
            continue
        try:
            memberships[identity] = Role.parse(role)
        except ValueError as e:
            errors.append(f"{identity}: {e}")

    if errors:
        raise ConfigurationError(f"Invalid membership file {path}:\n" + "\n".join(f"  - {error}" for error in errors))
    return memberships


def load_memberships(directory: str) -> Dict[str, Dict[str, Role]]:
    """
    Load every membership file in a directory.

    Subdirectories and files without a YAML extension are ignored.

    Args:
        directory: Directory holding one file per group family

    Returns:
        Mapping of family name (file name without extension) to membership

    Raises:
        ConfigurationError: If the directory or any file cannot be loaded
    """
    try:
        entries = sorted(os.listdir(directory))
    except OSError as e:
        raise ConfigurationError(f"Failed to read membership directory {directory}: {e}")

    families: Dict[str, Dict[str, Role]] = {}
    for entry in entries:
        path = os.path.join(directory, entry)
        if os.path.isdir(path):
            continue
        name, ext = os.path.splitext(entry)
        if ext not in MEMBERSHIP_FILE_EXTENSIONS:
            continue
        families[name] = load_membership_file(path)

    logger.debug(f"Found membership files: {sorted(families)}")
    return families
