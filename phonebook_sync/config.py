"""
Configuration loading and management for Phonebook Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings, applied over the YAML file
    ENV_OVERRIDES = {
        'ldap.server_url': 'LDAP_URL',
        'ldap.bind_dn': 'LDAP_BIND_DN',
        'ldap.bind_password': 'LDAP_BIND_PW',
        'ldap.base_dn': 'LDAP_BASE_DN',
        'logging.level': 'LOG_LEVEL',
        'logging.sync_logs_dir': 'PHONEBOOK_SYNC_LOGS_DIR',
        'storage.path': 'PHONEBOOK_DB_PATH',
    }

    REQUIRED_LDAP_FIELDS = ['server_url', 'bind_dn', 'bind_password', 'base_dn']

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.explicit_path = bool(config_path or os.getenv('CONFIG_PATH'))
        self.config_path = config_path or os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH)
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        A missing default config file is not an error: the directory settings
        may come entirely from the environment.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If an explicit config file is missing or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"No configuration file at {self.config_path}, using environment only")
            self.config = {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

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

        test_mode = os.getenv('PHONEBOOK_TEST_MODE')
        if test_mode is not None:
            self.config['test_mode'] = test_mode == '1'

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
        if not isinstance(ldap_config, dict):
            errors.append("The 'ldap' section must be a mapping")
            ldap_config = {}

        # Test mode tolerates a missing directory; the sync run is skipped
        if not self.config.get('test_mode'):
            for field in self.REQUIRED_LDAP_FIELDS:
                if not ldap_config.get(field):
                    errors.append(f"Missing required LDAP field: {field}")

        for field in ('connection_timeout', 'receive_timeout', 'page_size'):
            value = ldap_config.get(field)
            if value is not None and (not isinstance(value, int) or value <= 0):
                errors.append(f"LDAP field {field} must be a positive integer")

        for section in ('storage', 'logging', 'error_handling'):
            if not isinstance(self.config.get(section) or {}, dict):
                errors.append(f"The '{section}' section must be a mapping")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _section(self, name: str) -> Dict[str, Any]:
        """Return a top-level section, replacing an empty YAML section with a mapping."""
        if not self.config.get(name):
            self.config[name] = {}
        return self.config[name]

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        self.config.setdefault('test_mode', False)

        ldap_defaults = {
            'use_ssl': None,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 15,
            'receive_timeout': 60,
            'page_size': 1000,
        }
        ldap_config = self._section('ldap')
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        storage_defaults = {
            'path': os.path.join('data', 'phonebook.sqlite3'),
            'synchronous': 'NORMAL',
        }
        storage_config = self._section('storage')
        for key, value in storage_defaults.items():
            storage_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'sync_logs_dir': os.path.join('data', 'sync-logs'),
            'sync_log_retention': 30,
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self._section('error_handling')
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


def has_ldap_config(config: Dict[str, Any]) -> bool:
    """Return True when every directory connection field is present."""
    ldap_config = config.get('ldap') or {}
    return all(ldap_config.get(field) for field in ConfigLoader.REQUIRED_LDAP_FIELDS)


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
