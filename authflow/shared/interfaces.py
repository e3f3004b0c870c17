"""
Core interfaces for authflow.

This module defines the abstract interfaces that collaborators must implement:
the key-value storage the session is persisted to, and the gateway the
protocol machine drives.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict

from .models import AuthSession


class IStorage(ABC):
    """Async key-value storage holding the persisted session."""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        """Return the stored value or None if absent."""
        pass

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store a value under key, replacing any previous value."""
        pass

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        """Delete key. Removing an absent key is not an error."""
        pass


class IAuthGateway(ABC):
    """Interface of the remote auth API as used by the protocol machine."""

    @abstractmethod
    async def login(self, payload: Dict[str, str]) -> AuthSession:
        """Log in with ``{email, password}`` and persist the new session."""
        pass

    @abstractmethod
    async def register(self, payload: Dict[str, str]) -> None:
        """Start registration for ``{email, password}``."""
        pass

    @abstractmethod
    async def request_password_reset(self, payload: Dict[str, str]) -> None:
        """Send a reset OTP to ``{email}``."""
        pass

    @abstractmethod
    async def verify_otp(self, payload: Dict[str, str]) -> str:
        """Verify ``{email, otp}`` and return the issued action token."""
        pass

    @abstractmethod
    async def complete_registration(self, payload: Dict[str, str]) -> None:
        """Finish registration with ``{actionToken, newPassword}``."""
        pass

    @abstractmethod
    async def complete_password_reset(self, payload: Dict[str, str]) -> None:
        """Set a new password with ``{actionToken, newPassword}``."""
        pass

    @abstractmethod
    async def check_session(self) -> Optional[AuthSession]:
        """Return the stored session if it is usable."""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> AuthSession:
        """Rotate the access token and persist the refreshed session."""
        pass

    @abstractmethod
    async def refresh_profile(self) -> Optional[AuthSession]:
        """Fetch the profile for the stored session and persist it."""
        pass

    @abstractmethod
    async def logout(self) -> None:
        """Remove the stored session."""
        pass
