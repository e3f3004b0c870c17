"""
Error classification for remote auth operations.

Turns transport failures into AuthError instances with a small set of
categories and a message that is safe to show to the user.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..shared.exceptions import (
    AuthError, AuthFlowError, ErrorCategory, ErrorCode, ERROR_MESSAGES, handle_exception
)
from ..shared.logging_config import log_structured_error
from ..transport import TransportError

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Awaitable[Any]])

GENERIC_MESSAGE = ERROR_MESSAGES[ErrorCode.GENERAL_ERROR]

_STATUS_CATEGORIES = {
    400: ErrorCategory.VALIDATION,
    401: ErrorCategory.UNAUTHORIZED,
    403: ErrorCategory.FORBIDDEN,
    404: ErrorCategory.NOT_FOUND,
    429: ErrorCategory.RATE_LIMITED,
}

# Classes that never echo server-provided text
_FIXED_MESSAGES = {
    ErrorCategory.RATE_LIMITED: ERROR_MESSAGES[ErrorCode.TOO_MANY_REQUESTS],
    ErrorCategory.SERVER_ERROR: ERROR_MESSAGES[ErrorCode.SERVER_ERROR],
}


def category_for_status(status: Optional[int]) -> ErrorCategory:
    """Map an HTTP status (None for no response) to an error category."""
    if status is None:
        return ErrorCategory.GENERAL_ERROR
    if 500 <= status < 600:
        return ErrorCategory.SERVER_ERROR
    return _STATUS_CATEGORIES.get(status, ErrorCategory.GENERAL_ERROR)


def _server_message(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        message = data.get('message')
        if isinstance(message, str) and message:
            return message
    return None


def classify_error(error: BaseException) -> AuthError:
    """
    Classify any failure of a remote auth operation.

    Message precedence: the server's ``message`` field, then the transport
    message, then a fixed generic message. Rate-limit and server errors
    always use their fixed message.

    Args:
        error: The caught exception

    Returns:
        AuthError carrying the user message, category, status and cause
    """
    if isinstance(error, AuthError):
        return error

    if isinstance(error, TransportError):
        category = category_for_status(error.status)
        message = (
            _FIXED_MESSAGES.get(category)
            or _server_message(error.data)
            or error.message
            or GENERIC_MESSAGE
        )
        return AuthError(message, category=category, status=error.status, cause=error)

    if isinstance(error, AuthFlowError):
        return AuthError(
            error.user_message or GENERIC_MESSAGE,
            category=ErrorCategory.GENERAL_ERROR,
            cause=error,
            error_code=error.error_code
        )

    wrapped = handle_exception(error)
    return AuthError(
        GENERIC_MESSAGE,
        category=ErrorCategory.GENERAL_ERROR,
        cause=error,
        error_code=wrapped.error_code
    )


def handle_api_errors(func: F) -> F:
    """
    Decorator for gateway coroutines: every exception leaves as AuthError.

    The original exception is chained and kept on ``AuthError.cause``.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except AuthError:
            raise
        except Exception as e:
            classified = classify_error(e)
            if classified.category is ErrorCategory.SERVER_ERROR:
                log_structured_error(logger, classified)
            else:
                logger.warning(
                    f"{func.__name__} failed: {classified.code} "
                    f"(status={classified.status}): {type(e).__name__}: {e}"
                )
            raise classified from e

    return wrapper
