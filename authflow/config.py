"""
Configuration management for authflow.

Settings come from, in order of priority: overrides set at runtime,
environment variables, an INI configuration file, and built-in defaults.
"""

import json
import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from pathlib import Path
from typing import Any, Dict, Optional

from .auth.rate_limiting import RateLimitOptions
from .auth.session_store import DEFAULT_STORAGE_KEY
from .auth.storage import create_storage
from .shared.exceptions import ConfigurationError
from .shared.interfaces import IStorage
from .shared.logging_config import LogFormat, LogLevel, setup_logging

logger = logging.getLogger(__name__)

ENV_MAPPINGS = {
    'AUTHFLOW_API_URL': ('api', 'base_url'),
    'AUTHFLOW_API_TIMEOUT': ('api', 'timeout'),
    'AUTHFLOW_MAX_RETRIES': ('api', 'max_retries'),
    'AUTHFLOW_STORAGE_KEY': ('session', 'storage_key'),
    'AUTHFLOW_STORAGE_BACKEND': ('session', 'storage_backend'),
    'AUTHFLOW_LOG_LEVEL': ('logging', 'level'),
    'AUTHFLOW_LOG_FORMAT': ('logging', 'format'),
}

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'api': {
        'base_url': 'http://localhost:8080/api',
        'timeout': 10.0,
        'max_retries': 3,
        'retry_initial_delay': 1.0,
    },
    'session': {
        'storage_key': DEFAULT_STORAGE_KEY,
        'storage_backend': 'auto',
        'service_name': 'authflow',
        'storage_path': None,
    },
    'rate_limits': {
        'login_max_attempts': 5,
        'login_window': 15 * 60,
        'otp_max_attempts': 3,
        'otp_window': 5 * 60,
        'registration_max_attempts': 10,
        'registration_window': 60 * 60,
    },
    'service': {
        'operation_timeout': 30.0,
    },
    'logging': {
        'level': 'INFO',
        'format': 'standard',
        'file': None,
    },
}


def default_config_path() -> Path:
    config_home = os.environ.get('XDG_CONFIG_HOME') or str(Path.home() / '.config')
    return Path(config_home) / 'authflow' / 'authflow.conf'


class AuthConfiguration:
    """
    Configuration for the auth client.

    Args:
        config_file: INI file to read; a missing file is not an error
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or str(default_config_path())
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    @property
    def config_file(self) -> str:
        return self._config_file

    def _load_configuration(self) -> None:
        path = Path(self._config_file)
        if path.is_file():
            self._merge(self._read_file(path))
            logger.info(f"Loaded configuration from {path}")
        else:
            logger.debug(f"No configuration file at {path}, using defaults")

        self._merge(self._read_environment())
        for section, values in DEFAULTS.items():
            merged = self._config_data.setdefault(section, {})
            for key, value in values.items():
                merged.setdefault(key, value)

    def _merge(self, data: Dict[str, Dict[str, Any]]) -> None:
        for section, values in data.items():
            self._config_data.setdefault(section, {}).update(values)

    @staticmethod
    def _parse_value(raw: str) -> Any:
        # numbers, booleans and null are JSON; anything else stays a string
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    def _read_file(self, path: Path) -> Dict[str, Dict[str, Any]]:
        # Values are literal; URL-encoded '%' must not be interpolated
        parser = ConfigParser(interpolation=None)
        try:
            parser.read(path, encoding='utf-8')
        except ConfigParserError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e

        return {
            section: {key: self._parse_value(raw) for key, raw in parser.items(section)}
            for section in parser.sections()
        }

    @staticmethod
    def _read_environment() -> Dict[str, Dict[str, Any]]:
        data: Dict[str, Dict[str, Any]] = {}
        for env_var, (section, key) in ENV_MAPPINGS.items():
            raw = os.environ.get(env_var)
            if raw is not None:
                data.setdefault(section, {})[key] = int(raw) if raw.isdigit() else raw
        return data

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Look up ``section.key`` (or a whole ``section``).

        Returns:
            The override if one is set, else the merged value, else ``default``
        """
        if key in self._overrides:
            return self._overrides[key]

        section, _, name = key.partition('.')
        values = self._config_data.get(section)
        if values is None:
            return default
        if not name:
            return values
        return values.get(name, default)

    def set_override(self, key: str, value: Any) -> None:
        """Override ``section.key`` with the highest priority."""
        self._overrides[key] = value

    def _get_number(self, key: str, kind: type) -> Any:
        value = self.get_config(key)
        try:
            number = kind(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for {key}: {value!r}", config_key=key) from e
        if number < 0:
            raise ConfigurationError(f"{key} must not be negative", config_key=key)
        return number

    def get_api_url(self) -> str:
        return str(self.get_config('api.base_url'))

    def get_api_timeout(self) -> float:
        return self._get_number('api.timeout', float)

    def get_max_retries(self) -> int:
        return self._get_number('api.max_retries', int)

    def get_retry_initial_delay(self) -> float:
        return self._get_number('api.retry_initial_delay', float)

    def get_storage_key(self) -> str:
        return str(self.get_config('session.storage_key'))

    def get_storage_backend(self) -> str:
        return str(self.get_config('session.storage_backend')).lower()

    def get_operation_timeout(self) -> float:
        return self._get_number('service.operation_timeout', float)

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_rate_limits(self) -> Dict[str, RateLimitOptions]:
        """Rate limits keyed by action: ``login``, ``otpRequest``, ``registration``."""
        return {
            'login': RateLimitOptions(
                max_attempts=self._get_number('rate_limits.login_max_attempts', int),
                window_seconds=self._get_number('rate_limits.login_window', float),
            ),
            'otpRequest': RateLimitOptions(
                max_attempts=self._get_number('rate_limits.otp_max_attempts', int),
                window_seconds=self._get_number('rate_limits.otp_window', float),
            ),
            'registration': RateLimitOptions(
                max_attempts=self._get_number('rate_limits.registration_max_attempts', int),
                window_seconds=self._get_number('rate_limits.registration_window', float),
            ),
        }

    def create_storage(self) -> IStorage:
        """Build the configured session storage backend."""
        storage_path = self.get_config('session.storage_path')
        try:
            return create_storage(
                backend=self.get_storage_backend(),
                service_name=str(self.get_config('session.service_name')),
                storage_path=str(storage_path) if storage_path else None
            )
        except ValueError as e:
            raise ConfigurationError(str(e), config_key='session.storage_backend') from e

    def get_all_config(self) -> Dict[str, Any]:
        """Copy of the merged configuration, overrides excluded."""
        return {section: dict(values) for section, values in self._config_data.items()}

    def configure_logging(self) -> Dict[str, logging.Logger]:
        """Apply the ``[logging]`` section through ``setup_logging``."""
        try:
            level = LogLevel(self.get_log_level())
            log_format = LogFormat(self.get_log_format())
        except ValueError as e:
            raise ConfigurationError(f"Invalid logging configuration: {e}", config_key='logging') from e
        return setup_logging(log_level=level, log_format=log_format, log_file=self.get_log_file())
