"""
Validation schemas for requests, responses and persisted sessions.

All untrusted JSON (server responses, stored session values, user input)
goes through these pydantic models. ``validate_safe`` turns a validation
failure into a structured result instead of an exception.
"""

import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OTP_PATTERN = re.compile(r"^\d{4,6}$")

T = TypeVar('T', bound=BaseModel)


def _check_email(value: str) -> str:
    if not value:
        raise ValueError("Email is required")
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email format")
    return value


def _check_password(value: str) -> str:
    if not value:
        raise ValueError("Password is required")
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    return value


def _check_otp(value: str) -> str:
    if not OTP_PATTERN.match(value):
        raise ValueError("OTP must be a 4-6 digit code")
    return value


def _check_action_token(value: str) -> str:
    if not value:
        raise ValueError("Action token is required")
    if len(value) < 20:
        raise ValueError("Invalid action token format")
    return value


Email = Annotated[str, AfterValidator(_check_email)]
Password = Annotated[str, AfterValidator(_check_password)]
OtpCode = Annotated[str, AfterValidator(_check_otp)]
ActionToken = Annotated[str, AfterValidator(_check_action_token)]


class WireModel(BaseModel):
    """Base model accepting both camelCase wire names and field names."""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# Request schemas

class LoginRequest(WireModel):
    email: Email
    password: Password


class RegisterRequest(WireModel):
    email: Email
    password: Password


class RequestOtpRequest(WireModel):
    email: Email


class VerifyOtpRequest(WireModel):
    email: Email
    otp: OtpCode


class CompleteRegistrationRequest(WireModel):
    action_token: ActionToken = Field(..., alias='actionToken')
    new_password: Password = Field(..., alias='newPassword')


class CompletePasswordResetRequest(WireModel):
    action_token: ActionToken = Field(..., alias='actionToken')
    new_password: Password = Field(..., alias='newPassword')


class RefreshRequest(WireModel):
    refresh_token: str = Field(..., alias='refreshToken', min_length=1)


# Response schemas

class ApiSuccessResponse(WireModel):
    """Success envelope: ``{status, message, data}``."""
    status: int = Field(..., gt=0)
    message: str
    data: Any = None


class ApiErrorResponse(WireModel):
    """Error envelope used by the server."""
    status: int = Field(..., gt=0)
    error: str
    error_id: str = Field(..., alias='errorId')
    message: str
    path: str


class LoginResponseData(WireModel):
    access_token: str = Field(..., alias='accessToken', min_length=1)
    refresh_token: str = Field(..., alias='refreshToken', min_length=1)


class RefreshResponseData(WireModel):
    access_token: str = Field(..., alias='accessToken', min_length=1)


class VerifyOtpResponseData(WireModel):
    action_token: str = Field(..., alias='actionToken', min_length=1)


# Entity schemas

class UserProfileSchema(WireModel):
    id: str = Field(..., min_length=1)
    email: Email
    name: Optional[str] = None


class AuthSessionSchema(WireModel):
    """Strict schema of a persisted session."""
    access_token: str = Field(..., alias='accessToken', min_length=20)
    refresh_token: Optional[str] = Field(None, alias='refreshToken', min_length=1)
    profile: Optional[UserProfileSchema] = None


@dataclass
class ValidationResult(Generic[T]):
    """Outcome of ``validate_safe``: either ``data`` or ``errors`` is set."""
    success: bool
    data: Optional[T] = None
    errors: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def error_message(self) -> str:
        return format_validation_errors(self.errors)


def validate_safe(schema: Type[T], data: Any) -> ValidationResult[T]:
    """
    Validate ``data`` against ``schema`` without raising.

    Args:
        schema: pydantic model class
        data: untrusted input

    Returns:
        ValidationResult with the parsed model, or errors keyed by the dotted
        field path (``root`` for errors on the value itself)
    """
    try:
        return ValidationResult(success=True, data=schema.model_validate(data))
    except PydanticValidationError as e:
        errors: Dict[str, List[str]] = {}
        for issue in e.errors():
            path = ".".join(str(part) for part in issue.get('loc', ())) or "root"
            message = issue.get('msg', 'Invalid value')
            # pydantic prefixes messages raised from validators
            if message.startswith("Value error, "):
                message = message[len("Value error, "):]
            errors.setdefault(path, []).append(message)
        return ValidationResult(success=False, errors=errors)


def format_validation_errors(errors: Dict[str, List[str]]) -> str:
    """Join error messages into one line, e.g. for display."""
    return ", ".join(message for messages in errors.values() for message in messages)


class RequestValidator:
    """
    Validates user input for every auth request.

    Each method returns a ValidationResult; nothing here raises on bad input.
    """

    def validate_login_request(self, payload: Any) -> ValidationResult[LoginRequest]:
        return validate_safe(LoginRequest, payload)

    def validate_register_request(self, payload: Any) -> ValidationResult[RegisterRequest]:
        return validate_safe(RegisterRequest, payload)

    def validate_request_otp_request(self, payload: Any) -> ValidationResult[RequestOtpRequest]:
        return validate_safe(RequestOtpRequest, payload)

    def validate_verify_otp_request(self, payload: Any) -> ValidationResult[VerifyOtpRequest]:
        return validate_safe(VerifyOtpRequest, payload)

    def validate_complete_registration_request(
        self, payload: Any
    ) -> ValidationResult[CompleteRegistrationRequest]:
        return validate_safe(CompleteRegistrationRequest, payload)

    def validate_complete_password_reset_request(
        self, payload: Any
    ) -> ValidationResult[CompletePasswordResetRequest]:
        return validate_safe(CompletePasswordResetRequest, payload)

    def validate_refresh_request(self, payload: Any) -> ValidationResult[RefreshRequest]:
        return validate_safe(RefreshRequest, payload)

    def validate_user_profile(self, payload: Any) -> ValidationResult[UserProfileSchema]:
        return validate_safe(UserProfileSchema, payload)

    def validate_auth_session(self, payload: Any) -> ValidationResult[AuthSessionSchema]:
        return validate_safe(AuthSessionSchema, payload)
