"""
authflow - client-side authentication orchestration.

Login, OTP-gated registration and password reset, token refresh and
session persistence for a single logged-in user.
"""

__version__ = "0.1.0"
