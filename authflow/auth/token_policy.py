"""
Token policy for authflow.

Decides locally whether an access token can still be used and whether a
failed HTTP request is worth retrying.
"""

import binascii
import json
import logging
import random
import time
from typing import Optional, Sequence

from jose.utils import base64url_decode

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (500, 502, 503, 504)


def get_token_expiration(token: str) -> Optional[float]:
    """
    Read the ``exp`` claim of a JWT without verifying its signature.

    Only the payload segment is decoded; the header and signature may be
    opaque.

    Args:
        token: Encoded JWT

    Returns:
        Expiry as seconds since epoch, or None if the token has no usable
        ``exp`` claim or cannot be decoded
    """
    if not isinstance(token, str) or token.count('.') != 2:
        return None

    payload = token.split('.')[1]
    try:
        claims = json.loads(base64url_decode(payload.encode('ascii')))
    except (ValueError, binascii.Error) as e:
        logger.debug(f"Could not decode token claims: {e}")
        return None

    exp = claims.get('exp') if isinstance(claims, dict) else None
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


def is_token_expired(token: str, now: Optional[float] = None) -> bool:
    """
    Check whether an access token must be treated as expired.

    Malformed tokens and tokens without an ``exp`` claim count as expired, so
    a token we cannot judge locally always triggers a server round-trip.

    Args:
        token: Encoded JWT
        now: Current time in seconds since epoch (defaults to ``time.time()``)

    Returns:
        False only if the token carries an expiry claim in the future
    """
    exp = get_token_expiration(token)
    if exp is None:
        return True

    current_time = int(now if now is not None else time.time())
    return exp < current_time


class RetryPolicy:
    """Retry decisions and backoff delays for transport failures."""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        exponential_base: float = 2.0,
        max_delay: float = 60.0,
        retryable_status_codes: Sequence[int] = RETRYABLE_STATUS_CODES,
        jitter: bool = False
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.exponential_base = exponential_base
        self.max_delay = max_delay
        self.retryable_status_codes = tuple(retryable_status_codes)
        self.jitter = jitter

    def is_retryable_status(self, status: Optional[int]) -> bool:
        """Network failures (no status) and configured statuses are retryable."""
        return status is None or status in self.retryable_status_codes

    def should_retry(self, retry_count: int, status: Optional[int]) -> bool:
        """
        Args:
            retry_count: Retries already performed for this request
            status: HTTP status of the failure, None for network errors
        """
        return retry_count < self.max_retries and self.is_retryable_status(status)

    def get_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count + 1``."""
        delay = min(
            self.initial_delay * (self.exponential_base ** retry_count),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay
