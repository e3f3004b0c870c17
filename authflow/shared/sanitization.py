"""
Input sanitization helpers.

User input is normalized here before validation so that stray whitespace,
markup or quote characters never reach the server.
"""

import html
import re
from typing import Any, Dict

from .schemas import EMAIL_PATTERN


def sanitize_input(value: Any) -> str:
    """Escape markup-relevant characters and trim."""
    if not isinstance(value, str):
        return ''

    return (
        value.replace('<', '&lt;')
        .replace('>', '&gt;')
        .replace('"', '&quot;')
        .replace("'", '&#x27;')
        .replace('/', '&#x2F;')
        .strip()
    )


def sanitize_email(email: Any) -> str:
    """Trim and lowercase an email address; empty string if it is not one."""
    if not isinstance(email, str):
        return ''

    normalized = email.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        return ''
    return normalized


def sanitize_password(password: Any) -> str:
    """Drop quote characters, leave everything else alone."""
    if not isinstance(password, str):
        return ''
    return re.sub(r"['\"]", '', password)


def sanitize_name(name: Any) -> str:
    if not isinstance(name, str):
        return ''
    return html.escape(name).strip()


def sanitize_text(text: Any) -> str:
    if not isinstance(text, str):
        return ''
    return html.escape(text).strip()


def sanitize_otp(otp: Any) -> str:
    """Keep digits only, at most 10 of them."""
    if not isinstance(otp, str):
        return ''
    return re.sub(r'\D', '', otp)[:10]


def sanitize_action_token(token: Any) -> str:
    if not isinstance(token, str):
        return ''
    return re.sub(r"['\"<>]", '', token).strip()


def sanitize_login_request(payload: Dict[str, Any]) -> Dict[str, str]:
    return {
        'email': sanitize_email(payload.get('email')),
        'password': sanitize_password(payload.get('password')),
    }


sanitize_register_request = sanitize_login_request


def sanitize_request_otp(payload: Dict[str, Any]) -> Dict[str, str]:
    return {'email': sanitize_email(payload.get('email'))}


def sanitize_verify_otp(payload: Dict[str, Any]) -> Dict[str, str]:
    sanitized = {'otp': sanitize_otp(payload.get('otp'))}
    if 'email' in payload:
        sanitized['email'] = sanitize_email(payload.get('email'))
    return sanitized


def sanitize_complete_action(payload: Dict[str, Any]) -> Dict[str, str]:
    """Sanitize ``{actionToken, newPassword}`` for registration or reset completion."""
    return {
        'actionToken': sanitize_action_token(payload.get('actionToken')),
        'newPassword': sanitize_password(payload.get('newPassword')),
    }
