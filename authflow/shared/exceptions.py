"""
Exception hierarchy for authflow.

Every error raised by the package derives from AuthFlowError and carries an
error code, a severity, suggested recovery actions and a ``user_message``
that UI code can show as is. Diagnostic detail goes into ``context``.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Standardized error codes for the authentication subsystem."""

    # General errors
    GENERAL_ERROR = "AUTH_001"
    NETWORK_ERROR = "AUTH_002"
    INVALID_INPUT = "AUTH_003"
    SESSION_EXPIRED = "AUTH_004"
    TOKEN_INVALID = "AUTH_005"

    # Authentication errors
    LOGIN_FAILED = "AUTH_101"
    REGISTRATION_FAILED = "AUTH_102"
    USER_NOT_FOUND = "AUTH_103"
    INVALID_CREDENTIALS = "AUTH_104"
    ACCOUNT_LOCKED = "AUTH_105"
    ACCOUNT_DISABLED = "AUTH_106"

    # Authorization errors
    UNAUTHORIZED_ACCESS = "AUTH_201"
    INSUFFICIENT_PERMISSIONS = "AUTH_202"
    INVALID_TOKEN = "AUTH_203"
    TOKEN_EXPIRED = "AUTH_204"

    # OTP errors
    OTP_INVALID = "AUTH_301"
    OTP_EXPIRED = "AUTH_302"
    OTP_RATE_LIMITED = "AUTH_303"
    OTP_SEND_FAILED = "AUTH_304"

    # Password errors
    PASSWORD_RESET_FAILED = "AUTH_401"
    PASSWORD_WEAK = "AUTH_402"
    PASSWORD_MISMATCH = "AUTH_403"
    PASSWORD_SAME_AS_OLD = "AUTH_404"

    # Rate limiting
    TOO_MANY_REQUESTS = "AUTH_501"
    RATE_LIMIT_EXCEEDED = "AUTH_502"

    # Local failures
    STORAGE_FAILED = "AUTH_601"
    OPERATION_TIMEOUT = "AUTH_602"
    CONFIG_INVALID_VALUE = "AUTH_701"

    # Server errors
    SERVER_ERROR = "AUTH_999"


ERROR_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.GENERAL_ERROR: 'An unexpected error occurred',
    ErrorCode.NETWORK_ERROR: 'Network connection error',
    ErrorCode.INVALID_INPUT: 'Invalid input provided',
    ErrorCode.SESSION_EXPIRED: 'Session expired, please login again',
    ErrorCode.TOKEN_INVALID: 'Invalid authentication token',
    ErrorCode.LOGIN_FAILED: 'Login failed',
    ErrorCode.REGISTRATION_FAILED: 'Registration failed',
    ErrorCode.USER_NOT_FOUND: 'User not found',
    ErrorCode.INVALID_CREDENTIALS: 'Invalid credentials',
    ErrorCode.ACCOUNT_LOCKED: 'Account is locked',
    ErrorCode.ACCOUNT_DISABLED: 'Account is disabled',
    ErrorCode.UNAUTHORIZED_ACCESS: 'Access denied',
    ErrorCode.INSUFFICIENT_PERMISSIONS: 'Insufficient permissions',
    ErrorCode.INVALID_TOKEN: 'Invalid token',
    ErrorCode.TOKEN_EXPIRED: 'Token expired',
    ErrorCode.OTP_INVALID: 'Invalid OTP code',
    ErrorCode.OTP_EXPIRED: 'OTP code has expired',
    ErrorCode.OTP_RATE_LIMITED: 'Too many attempts, please try again later',
    ErrorCode.OTP_SEND_FAILED: 'Failed to send OTP',
    ErrorCode.PASSWORD_RESET_FAILED: 'Password reset failed',
    ErrorCode.PASSWORD_WEAK: 'Password does not meet requirements',
    ErrorCode.PASSWORD_MISMATCH: 'Passwords do not match',
    ErrorCode.PASSWORD_SAME_AS_OLD: 'New password cannot be the same as old password',
    ErrorCode.TOO_MANY_REQUESTS: 'Too many requests, please try again later',
    ErrorCode.RATE_LIMIT_EXCEEDED: 'Rate limit exceeded',
    ErrorCode.STORAGE_FAILED: 'Could not access session storage',
    ErrorCode.OPERATION_TIMEOUT: 'The operation timed out',
    ErrorCode.CONFIG_INVALID_VALUE: 'Invalid configuration',
    ErrorCode.SERVER_ERROR: 'Server error occurred',
}


class ErrorCategory(Enum):
    """Classification of transport failures exposed to the UI."""
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    GENERAL_ERROR = "general_error"


CATEGORY_ERROR_CODES: Dict[ErrorCategory, ErrorCode] = {
    ErrorCategory.VALIDATION: ErrorCode.INVALID_INPUT,
    ErrorCategory.UNAUTHORIZED: ErrorCode.UNAUTHORIZED_ACCESS,
    ErrorCategory.FORBIDDEN: ErrorCode.INSUFFICIENT_PERMISSIONS,
    ErrorCategory.NOT_FOUND: ErrorCode.USER_NOT_FOUND,
    ErrorCategory.RATE_LIMITED: ErrorCode.TOO_MANY_REQUESTS,
    ErrorCategory.SERVER_ERROR: ErrorCode.SERVER_ERROR,
    ErrorCategory.GENERAL_ERROR: ErrorCode.GENERAL_ERROR,
}


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecoveryAction(Enum):
    """What a caller can do about an error."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REFRESH_TOKEN = "refresh_token"
    LOGIN_AGAIN = "login_again"
    USER_INTERVENTION = "user_intervention"
    WAIT = "wait"


class AuthFlowError(Exception):
    """
    Root of the authflow exception hierarchy.

    ``message`` is meant for logs; ``user_message`` (defaulting to
    ``message``) is meant for the user. A wrapped exception is kept on
    ``cause`` and summarized in ``context``.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.GENERAL_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[BaseException] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message
        self.error_code = error_code
        self.severity = severity
        self.recovery_actions = list(recovery_actions or ())
        self.cause = cause
        self.occurred_at = datetime.now(timezone.utc)

        self.context = dict(context) if context else {}
        if cause is not None:
            self.context.update(cause_type=type(cause).__name__, cause_message=str(cause))

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form, nested under an ``error`` key."""
        cause = None
        if self.cause is not None:
            cause = {'type': type(self.cause).__name__, 'message': str(self.cause)}

        return {'error': {
            'code': self.error_code.value,
            'message': self.message,
            'user_message': self.user_message,
            'severity': self.severity.value,
            'recovery_actions': [action.value for action in self.recovery_actions],
            'occurred_at': self.occurred_at.isoformat(),
            'context': self.context,
            'cause': cause,
        }}



def _context_with(kwargs: Dict[str, Any], **values: Any) -> Dict[str, Any]:
    """Pop ``context`` from ``kwargs`` and add the non-None ``values`` to it."""
    context = dict(kwargs.pop('context', None) or {})
    context.update({key: value for key, value in values.items() if value is not None})
    return context


_RECOVERY_BY_CATEGORY: Dict[ErrorCategory, List[RecoveryAction]] = {
    ErrorCategory.VALIDATION: [RecoveryAction.USER_INTERVENTION],
    ErrorCategory.UNAUTHORIZED: [RecoveryAction.REFRESH_TOKEN, RecoveryAction.LOGIN_AGAIN],
    ErrorCategory.FORBIDDEN: [RecoveryAction.LOGIN_AGAIN],
    ErrorCategory.NOT_FOUND: [RecoveryAction.USER_INTERVENTION],
    ErrorCategory.RATE_LIMITED: [RecoveryAction.WAIT],
    ErrorCategory.SERVER_ERROR: [RecoveryAction.RETRY_WITH_BACKOFF],
    ErrorCategory.GENERAL_ERROR: [RecoveryAction.RETRY],
}


class AuthError(AuthFlowError):
    """
    Classified failure of a remote auth operation.

    ``message`` is already safe to show to the user. ``category`` drives the
    error code and recovery actions unless they are given explicitly; the
    HTTP status, if there was a response, is on ``status``.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.GENERAL_ERROR,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        kwargs.setdefault('error_code', CATEGORY_ERROR_CODES[category])
        kwargs.setdefault('recovery_actions', _RECOVERY_BY_CATEGORY[category])
        super().__init__(message, context=_context_with(kwargs, status=status), cause=cause, **kwargs)
        self.category = category
        self.status = status

    @property
    def code(self) -> str:
        """Category value, e.g. ``unauthorized``."""
        return self.category.value


class ValidationError(AuthFlowError):
    """User input rejected before any request was made."""

    def __init__(self, message: str, errors: Optional[Dict[str, List[str]]] = None, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.INVALID_INPUT)
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        super().__init__(message, context=_context_with(kwargs, errors=errors or None), **kwargs)
        self.errors = errors or {}


class SessionStorageError(AuthFlowError):
    """The storage backend failed to read, write or remove a value."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('user_message', ERROR_MESSAGES[ErrorCode.STORAGE_FAILED])
        super().__init__(
            message,
            error_code=ErrorCode.STORAGE_FAILED,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class RateLimitExceededError(AuthFlowError):
    """The local rate limiter refused an attempt for ``key``."""

    def __init__(self, key: str, reset_time: Optional[float] = None, **kwargs):
        super().__init__(
            ERROR_MESSAGES[ErrorCode.TOO_MANY_REQUESTS],
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.WAIT],
            context=_context_with(kwargs, key=key, reset_time=reset_time),
            **kwargs
        )
        self.key = key
        self.reset_time = reset_time


class OperationTimeoutError(AuthFlowError):
    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.OPERATION_TIMEOUT,
            recovery_actions=[RecoveryAction.RETRY],
            context=_context_with(kwargs, timeout=timeout),
            **kwargs
        )
        self.timeout = timeout


class ConfigurationError(AuthFlowError):
    """Invalid or unreadable configuration."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.CONFIG_INVALID_VALUE,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=_context_with(kwargs, config_key=config_key),
            **kwargs
        )


_FOREIGN_ERROR_CODES = (
    ((ConnectionError,), ErrorCode.NETWORK_ERROR),
    ((TimeoutError, asyncio.TimeoutError), ErrorCode.OPERATION_TIMEOUT),
    ((ValueError,), ErrorCode.INVALID_INPUT),
)


def handle_exception(
    exception: BaseException,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.GENERAL_ERROR
) -> AuthFlowError:
    """
    Wrap a foreign exception in an AuthFlowError.

    AuthFlowError instances are returned unchanged. Connection, timeout and
    value errors get a matching error code; anything else gets
    ``default_error_code``. The user message is the stock message for the
    code, never the exception text.
    """
    if isinstance(exception, AuthFlowError):
        return exception

    error_code = next(
        (code for types, code in _FOREIGN_ERROR_CODES if isinstance(exception, types)),
        default_error_code
    )
    return AuthFlowError(
        str(exception) or type(exception).__name__,
        error_code=error_code,
        context=context,
        cause=exception,
        user_message=ERROR_MESSAGES.get(error_code, ERROR_MESSAGES[ErrorCode.GENERAL_ERROR])
    )
