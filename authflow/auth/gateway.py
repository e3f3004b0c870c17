"""
Auth gateway for authflow.

Stateless facade over the remote auth API. Each operation is one HTTP call
plus response validation, and for token-bearing calls a session store write.
Every failure leaves as a classified AuthError.
"""

import logging
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel

from ..shared.exceptions import AuthFlowError, ErrorCode, ValidationError, ERROR_MESSAGES
from ..shared.interfaces import IAuthGateway
from ..shared.models import AuthSession, UserProfile
from ..shared.schemas import (
    ApiSuccessResponse, LoginResponseData, RefreshResponseData,
    UserProfileSchema, VerifyOtpResponseData, validate_safe
)
from ..transport import HTTPTransport
from .error_handler import handle_api_errors
from .mutex import Mutex
from .session_store import SessionStore
from .token_policy import is_token_expired

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)


class AuthGateway(IAuthGateway):
    """
    Client for the auth endpoints of the server.

    The only state held here is the refresh mutex, which keeps at most one
    token rotation in flight at a time.
    """

    def __init__(
        self,
        transport: HTTPTransport,
        session_store: SessionStore,
        refresh_mutex: Optional[Mutex] = None
    ):
        self.transport = transport
        self.session_store = session_store
        self._refresh_mutex = refresh_mutex or Mutex()

    def _unwrap(self, body: Any, schema: Type[T], operation: str) -> T:
        """Validate the success envelope and its ``data`` payload."""
        envelope = validate_safe(ApiSuccessResponse, body)
        if not envelope.success:
            raise ValidationError(
                f"Invalid {operation} response envelope: {envelope.error_message}",
                errors=envelope.errors,
                user_message=ERROR_MESSAGES[ErrorCode.GENERAL_ERROR]
            )

        payload = validate_safe(schema, envelope.data.data)
        if not payload.success:
            raise ValidationError(
                f"Invalid {operation} response data: {payload.error_message}",
                errors=payload.errors,
                user_message=ERROR_MESSAGES[ErrorCode.GENERAL_ERROR]
            )
        return payload.data

    def _parse_profile(self, body: Any) -> UserProfile:
        """``/auth/me`` may answer with the bare profile or an envelope."""
        if isinstance(body, dict) and 'data' in body and 'id' not in body:
            body = body['data']

        result = validate_safe(UserProfileSchema, body)
        if not result.success:
            raise ValidationError(
                f"Invalid profile response: {result.error_message}",
                errors=result.errors,
                user_message=ERROR_MESSAGES[ErrorCode.GENERAL_ERROR]
            )
        return UserProfile(id=result.data.id, email=result.data.email, name=result.data.name)

    @handle_api_errors
    async def login(self, payload: Dict[str, str]) -> AuthSession:
        logger.info("Logging in")
        body = await self.transport.post('/auth/login', payload)
        data = self._unwrap(body, LoginResponseData, 'login')

        session = self.session_store.create_session(data.access_token, data.refresh_token)
        await self.session_store.save_session(session)
        logger.info("Login successful, session stored")
        return session

    @handle_api_errors
    async def register(self, payload: Dict[str, str]) -> None:
        logger.info("Submitting registration")
        await self.transport.post('/auth/register', payload)

    @handle_api_errors
    async def request_password_reset(self, payload: Dict[str, str]) -> None:
        logger.info("Requesting password reset OTP")
        await self.transport.post('/auth/otp/request', payload)

    @handle_api_errors
    async def verify_otp(self, payload: Dict[str, str]) -> str:
        logger.info("Verifying OTP")
        body = await self.transport.post('/auth/otp/verify', payload)
        return self._unwrap(body, VerifyOtpResponseData, 'OTP verification').action_token

    @handle_api_errors
    async def complete_registration(self, payload: Dict[str, str]) -> None:
        logger.info("Completing registration")
        await self.transport.post('/auth/register/complete', payload)

    @handle_api_errors
    async def complete_password_reset(self, payload: Dict[str, str]) -> None:
        logger.info("Completing password reset")
        await self.transport.post('/auth/password/reset/complete', payload)

    @handle_api_errors
    async def check_session(self) -> Optional[AuthSession]:
        """
        Return the stored session if it can be used.

        A locally expired access token is refreshed with the stored refresh
        token. Without a refresh token, or if the refresh fails, the stored
        session is removed and None is returned.
        """
        session = await self.session_store.read_session()
        if session is None:
            return None

        if not is_token_expired(session.access_token):
            return session

        if not session.refresh_token:
            logger.info("Stored access token expired and no refresh token available")
            await self.logout()
            return None

        try:
            return await self.refresh(session.refresh_token)
        except AuthFlowError as e:
            logger.warning(f"Refreshing expired session failed: {e.user_message}")
            await self.logout()
            return None

    @handle_api_errors
    async def refresh(self, refresh_token: str) -> AuthSession:
        """
        Exchange the refresh token for a new access token.

        Serialized by the refresh mutex: a concurrent caller waits for the
        in-flight rotation to finish before issuing its own request.
        """
        release = await self._refresh_mutex.acquire()
        try:
            logger.info("Refreshing access token")
            body = await self.transport.post('/auth/refresh-token', {'refreshToken': refresh_token})
            data = self._unwrap(body, RefreshResponseData, 'refresh')

            current_session = await self.session_store.read_session()
            if current_session is None:
                raise AuthFlowError(
                    "No current session found during refresh",
                    error_code=ErrorCode.SESSION_EXPIRED,
                    user_message=ERROR_MESSAGES[ErrorCode.SESSION_EXPIRED]
                )

            refreshed = self.session_store.create_refreshed_session(current_session, data.access_token)
            await self.session_store.save_session(refreshed)
            logger.info("Access token refreshed")
            return refreshed
        finally:
            release()

    @handle_api_errors
    async def refresh_profile(self) -> Optional[AuthSession]:
        """Fetch ``/auth/me`` for the stored session and store the profile."""
        session = await self.session_store.read_session()
        if session is None:
            return None

        body = await self.transport.get(
            '/auth/me',
            headers={'Authorization': f'Bearer {session.access_token}'}
        )
        profile = self._parse_profile(body)

        updated = self.session_store.update_profile(session, profile)
        await self.session_store.save_session(updated)
        logger.debug("Profile refreshed")
        return updated

    @handle_api_errors
    async def logout(self) -> None:
        await self.session_store.remove_session()
        logger.info("Logged out, session removed")
