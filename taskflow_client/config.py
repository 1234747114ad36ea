"""
Configuration Management for the TaskFlow session client.

This module handles client configuration including server URL, session timing,
credential storage and logging settings with support for configuration files
and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from taskflow_shared.exceptions import ConfigurationError, ErrorCode
from taskflow_shared.interfaces import IConfigurationManager

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_TIMEOUT = 1800  # 30 minutes
DEFAULT_REFRESH_MARGIN = 300  # 5 minutes


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the TaskFlow session client.

    Supports configuration from:
    1. Command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    NUMERIC_KEYS = {
        'server.timeout': float,
        'server.retry_attempts': int,
        'server.retry_delay': float,
        'session.inactivity_timeout': int,
        'session.refresh_margin': int,
    }

    def __init__(self, config_file: Optional[str] = None, create_default: bool = True):
        self._config_file = config_file or self._get_default_config_path(create_default)
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self, create_default: bool) -> str:
        """Get default configuration file path."""
        config_dir = Path.home() / '.taskflow'
        user_config_path = str(config_dir / 'client.conf')

        if create_default and not os.path.exists(user_config_path):
            config_dir.mkdir(parents=True, exist_ok=True)
            self._create_default_config(user_config_path)

        return user_config_path

    def _create_default_config(self, config_path: str) -> None:
        """Create a minimal default configuration file."""
        default_config = """# TaskFlow Client Configuration
# Configuration file: {config_path}

[server]
# Server URL (required)
url = http://localhost:3000/api

# Request timeout in seconds
timeout = 30

# Retry attempts for failed requests
retry_attempts = 3

[session]
# Sign out after this many seconds without activity
inactivity_timeout = {inactivity_timeout}

# Renew credentials this many seconds before they expire
refresh_margin = {refresh_margin}

[storage]
# Keep remembered sessions in the system keyring when available
use_keyring = true

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO
""".format(
            config_path=config_path,
            inactivity_timeout=DEFAULT_INACTIVITY_TIMEOUT,
            refresh_margin=DEFAULT_REFRESH_MARGIN
        )

        try:
            with open(config_path, 'w') as f:
                f.write(default_config)
            logger.info(f"Created default configuration file: {config_path}")
        except OSError as e:
            logger.warning(f"Failed to create default configuration: {e}")

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()
        self._validate()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            ) from e

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for complex values
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'TASKFLOW_SERVER_URL': ('server', 'url'),
            'TASKFLOW_TIMEOUT': ('server', 'timeout'),
            'TASKFLOW_INACTIVITY_TIMEOUT': ('session', 'inactivity_timeout'),
            'TASKFLOW_REFRESH_MARGIN': ('session', 'refresh_margin'),
            'TASKFLOW_USE_KEYRING': ('storage', 'use_keyring'),
            'TASKFLOW_LOG_LEVEL': ('logging', 'level'),
            'TASKFLOW_LOG_FILE': ('logging', 'file'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                if section not in self._config_data:
                    self._config_data[section] = {}

                if value.lower() in ('true', 'false'):
                    self._config_data[section][key] = value.lower() == 'true'
                elif value.isdigit():
                    self._config_data[section][key] = int(value)
                else:
                    self._config_data[section][key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'url': 'http://localhost:3000/api',
                'timeout': 30.0,
                'retry_attempts': 3,
                'retry_delay': 1.0
            },
            'session': {
                'inactivity_timeout': DEFAULT_INACTIVITY_TIMEOUT,
                'refresh_margin': DEFAULT_REFRESH_MARGIN,
                'proactive_refresh': True
            },
            'storage': {
                'service_name': 'taskflow-client',
                'use_keyring': True,
                'durable_path': None,
                'ephemeral_path': None
            },
            'logging': {
                'level': 'INFO',
                'file': None,
                'format': 'standard'
            }
        }

        for section, section_defaults in defaults.items():
            if section not in self._config_data:
                self._config_data[section] = {}

            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def _validate(self) -> None:
        """Coerce numeric settings, rejecting values that are not numbers."""
        for key, number_type in self.NUMERIC_KEYS.items():
            section, name = key.split('.', 1)
            value = self._config_data[section][name]
            try:
                coerced = number_type(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid value for {key}: {value!r}",
                    ErrorCode.CONFIG_INVALID_VALUE,
                    config_key=key,
                    cause=e
                ) from e
            if coerced < 0:
                raise ConfigurationError(
                    f"{key} cannot be negative: {value!r}",
                    ErrorCode.CONFIG_INVALID_VALUE,
                    config_key=key
                )
            self._config_data[section][name] = coerced

    def get_server_url(self) -> str:
        """Get server URL."""
        return self._overrides.get('server_url') or self._config_data['server']['url']

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            self._config_data[key] = value
            return

        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """Set configuration override (highest priority)."""
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list, bool)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self._config_file, 'w') as f:
            config.write(f)

        logger.info(f"Configuration saved to: {self._config_file}")

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Convenience methods for common configuration values

    def get_server_timeout(self) -> float:
        return self.get_config('server.timeout', 30.0)

    def get_retry_attempts(self) -> int:
        return self.get_config('server.retry_attempts', 3)

    def get_retry_delay(self) -> float:
        return self.get_config('server.retry_delay', 1.0)

    def get_inactivity_timeout(self) -> int:
        """Seconds without activity before the session is ended."""
        return self.get_config('session.inactivity_timeout', DEFAULT_INACTIVITY_TIMEOUT)

    def get_refresh_margin(self) -> int:
        """Seconds before expiry at which credentials are renewed."""
        return self.get_config('session.refresh_margin', DEFAULT_REFRESH_MARGIN)

    def is_proactive_refresh_enabled(self) -> bool:
        return bool(self.get_config('session.proactive_refresh', True))

    def get_durable_storage_path(self) -> str:
        """Encrypted credential file used when no keyring is available."""
        configured = self.get_config('storage.durable_path')
        if configured:
            return configured
        config_home = os.environ.get('XDG_CONFIG_HOME') or str(Path.home() / '.config')
        return str(Path(config_home) / 'taskflow' / 'credentials.enc')

    def get_log_level(self) -> str:
        return self.get_config('logging.level', 'INFO')

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        return self.get_config('logging.format', 'standard')
