"""
Logging setup for authflow.

Everything logs through the ``authflow`` logger hierarchy. Auth events
(login, registration, password reset) also go to ``authflow.audit`` with a
structured ``audit_info`` payload. Records never carry tokens or passwords;
emails are the only account identifier that is logged.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .exceptions import AuthError, AuthFlowError

PACKAGE_LOGGER = 'authflow'
AUDIT_LOGGER = 'authflow.audit'

STANDARD_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s] %(message)s'
DETAILED_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s] %(funcName)s:%(lineno)d %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def numeric(self) -> int:
        return logging.getLevelName(self.value)


class LogFormat(Enum):
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Kinds of audited auth events."""
    AUTHENTICATION = "authentication"
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"
    SESSION = "session"
    ERROR_EVENT = "error_event"


# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord('', 0, '', 0, '', (), None).__dict__
) | {'message', 'asctime', 'taskName', 'error_info', 'audit_info'}


def _error_fields(error: AuthFlowError) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        'code': error.error_code.value,
        'severity': error.severity.value,
        'user_message': error.user_message,
        'recovery_actions': [action.value for action in error.recovery_actions],
        'context': error.context,
    }
    if isinstance(error, AuthError):
        fields['category'] = error.code
    return fields


def _record_error(record: logging.LogRecord) -> Optional[AuthFlowError]:
    error = getattr(record, 'error_info', None)
    return error if isinstance(error, AuthFlowError) else None


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Args:
        include_extra_fields: Copy attributes passed via ``extra`` into an
            ``extra`` object
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info),
            }

        error = _record_error(record)
        if error is not None:
            entry['error'] = _error_fields(error)

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            entry['audit'] = audit

        if self.include_extra_fields:
            extra = {
                name: value for name, value in vars(record).items()
                if name not in _RECORD_ATTRIBUTES
            }
            if extra:
                entry['extra'] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """Human-readable lines followed by indented error and audit details."""

    _ERROR_LABELS = (
        ('code', 'Error Code'),
        ('category', 'Category'),
        ('severity', 'Severity'),
        ('recovery_actions', 'Recovery Actions'),
        ('context', 'Context'),
    )

    def __init__(self):
        super().__init__(fmt=DETAILED_FORMAT, datefmt=DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = _record_error(record)
        if error is not None:
            fields = _error_fields(error)
            for key, label in self._ERROR_LABELS:
                value = fields.get(key)
                if not value:
                    continue
                if isinstance(value, list):
                    value = ', '.join(value)
                elif isinstance(value, dict):
                    value = json.dumps(value, default=str, sort_keys=True)
                lines.append(f"  {label}: {value}")

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            lines.append(f"  Audit: {json.dumps(audit, default=str, sort_keys=True)}")

        return '\n'.join(lines)


class AuditLogger:
    """
    Writes auth events to the audit logger.

    Each record carries an ``audit_info`` dict with ``event_type``, and
    where known the ``email``, ``result`` and a ``context`` of details.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        email: Optional[str] = None,
        result: Optional[str] = None,
        **details: Any
    ) -> None:
        audit_info: Dict[str, Any] = {'event_type': event_type.value}
        if email:
            audit_info['email'] = email
        if result:
            audit_info['result'] = result
        if details:
            audit_info['context'] = details

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        action: str,
        success: bool = True,
        email: Optional[str] = None,
        failure_reason: Optional[str] = None
    ) -> None:
        """Record a login, refresh or logout outcome."""
        details = {'failure_reason': failure_reason} if failure_reason else {}
        self.log_event(
            AuditEventType.AUTHENTICATION,
            f"{action} {'succeeded' if success else 'failed'}",
            email=email,
            result="success" if success else "failure",
            **details
        )

    def log_error(self, error: AuthFlowError) -> None:
        self.log_event(
            AuditEventType.ERROR_EVENT,
            f"{type(error).__name__}: {error.message}",
            result="error",
            error_code=error.error_code.value,
            severity=error.severity.value
        )


_FORMATTERS: Dict[LogFormat, Callable[[], logging.Formatter]] = {
    LogFormat.STANDARD: lambda: logging.Formatter(fmt=STANDARD_FORMAT, datefmt=DATE_FORMAT),
    LogFormat.DETAILED: DetailedFormatter,
    LogFormat.JSON: StructuredFormatter,
}


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    enable_console: bool = True
) -> Dict[str, logging.Logger]:
    """
    Configure the ``authflow`` logger.

    Handlers installed by an earlier call are replaced, so calling this
    again (e.g. after a configuration change) does not duplicate output.

    Args:
        log_level: Level of the package logger
        log_format: Output format for every handler
        log_file: Also write to this file, rotated at ``max_file_size``
        max_file_size: Rotation size in bytes
        backup_count: Rotated files to keep
        enable_console: Write to stdout

    Returns:
        The package logger and its main children by short name
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(log_level.numeric)

    handlers: List[logging.Handler] = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_file_size, backupCount=backup_count, encoding='utf-8'
        ))

    for old in list(package_logger.handlers):
        package_logger.removeHandler(old)
        old.close()

    for handler in handlers:
        handler.setFormatter(_FORMATTERS[log_format]())
        package_logger.addHandler(handler)

    return {
        'authflow': package_logger,
        'auth': logging.getLogger(f'{PACKAGE_LOGGER}.auth'),
        'transport': logging.getLogger(f'{PACKAGE_LOGGER}.transport'),
        'audit': logging.getLogger(AUDIT_LOGGER),
    }


def log_structured_error(logger: logging.Logger, error: AuthFlowError) -> None:
    """Log ``error`` at ERROR level with its code and structured details attached."""
    logger.error(f"[{error.error_code.value}] {error.message}", extra={'error_info': error})
