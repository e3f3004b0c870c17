"""
Core data models for the authflow authentication client.

This module defines the session record persisted on the device, the user
profile returned by the server, and the per-flow data the protocol machine
keeps while a registration or password reset is in progress.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Union


@dataclass(frozen=True)
class UserProfile:
    """Profile of the logged-in user as returned by ``GET /auth/me``."""
    id: str
    email: str
    name: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("User ID cannot be empty")
        if not self.email:
            raise ValueError("User email cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        data = {'id': self.id, 'email': self.email}
        if self.name is not None:
            data['name'] = self.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserProfile':
        return cls(id=data['id'], email=data['email'], name=data.get('name'))


@dataclass(frozen=True)
class AuthSession:
    """
    The single persisted session of this device.

    A session without an access token cannot exist: construction with an
    empty token raises ValueError.
    """
    access_token: str
    refresh_token: Optional[str] = None
    profile: Optional[UserProfile] = None

    def __post_init__(self):
        if not isinstance(self.access_token, str) or not self.access_token:
            raise ValueError("Access token cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the wire field names, omitting absent fields."""
        data: Dict[str, Any] = {'accessToken': self.access_token}
        if self.refresh_token is not None:
            data['refreshToken'] = self.refresh_token
        if self.profile is not None:
            data['profile'] = self.profile.to_dict()
        return data

    def with_access_token(self, access_token: str) -> 'AuthSession':
        return replace(self, access_token=access_token)

    def with_profile(self, profile: Optional[UserProfile]) -> 'AuthSession':
        return replace(self, profile=profile)


@dataclass(frozen=True)
class Credentials:
    """Email/password pair kept until the follow-up login of a flow."""
    email: str
    password: str

    def to_dict(self) -> Dict[str, str]:
        return {'email': self.email, 'password': self.password}

    def __repr__(self) -> str:
        return f"Credentials(email={self.email!r}, password='***')"


@dataclass(frozen=True)
class RegistrationFlow:
    """Data collected while the registration branch is active."""
    email: Optional[str] = None
    action_token: Optional[str] = None
    pending_credentials: Optional[Credentials] = None


@dataclass(frozen=True)
class PasswordResetFlow:
    """Data collected while the forgot-password branch is active."""
    email: Optional[str] = None
    action_token: Optional[str] = None
    pending_credentials: Optional[Credentials] = None


FlowContext = Union[RegistrationFlow, PasswordResetFlow]


@dataclass(frozen=True)
class ClassifiedError:
    """User-facing error stored in the machine context."""
    message: str
    code: str = "general_error"
    status: Optional[int] = None


@dataclass(frozen=True)
class MachineContext:
    """
    Context of the auth protocol machine.

    ``flow`` holds at most one flow variant, so registration data can never be
    read while a password reset is in progress and vice versa.
    """
    session: Optional[AuthSession] = None
    error: Optional[ClassifiedError] = None
    flow: Optional[FlowContext] = field(default=None)

    @property
    def registration(self) -> Optional[RegistrationFlow]:
        return self.flow if isinstance(self.flow, RegistrationFlow) else None

    @property
    def password_reset(self) -> Optional[PasswordResetFlow]:
        return self.flow if isinstance(self.flow, PasswordResetFlow) else None
