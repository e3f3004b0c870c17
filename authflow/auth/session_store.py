"""
Session store for authflow.

Owns the single persisted AuthSession: mutex-guarded writes, validated reads
with a legacy-format fallback, and pure helpers that derive new sessions.
"""

import json
import logging
from typing import Any, Optional

from ..shared.interfaces import IStorage
from ..shared.models import AuthSession, UserProfile
from ..shared.schemas import AuthSessionSchema, UserProfileSchema, validate_safe
from .mutex import Mutex

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "user_session_token"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Invalid JSON constant: {name}")


class SessionStore:
    """
    Persists the current session under one storage key.

    Reads never raise on malformed data: anything that cannot be turned into
    a session is reported as no session.
    """

    def __init__(self, storage: IStorage, storage_key: str = DEFAULT_STORAGE_KEY):
        self.storage = storage
        self.storage_key = storage_key
        self._mutex = Mutex()

    async def save_session(self, session: AuthSession) -> None:
        """Write the whole session atomically with respect to other saves."""
        value = json.dumps(session.to_dict())
        release = await self._mutex.acquire()
        try:
            await self.storage.set_item(self.storage_key, value)
            logger.debug("Session saved")
        finally:
            release()

    async def read_session(self) -> Optional[AuthSession]:
        """
        Read and validate the stored session.

        Returns:
            The stored session, or None if absent or unusable
        """
        raw = await self.storage.get_item(self.storage_key)
        if not raw:
            return None

        try:
            parsed = json.loads(raw, parse_constant=_reject_constant)
        except ValueError:
            # Legacy format: the bare access token
            if not raw.startswith("{"):
                logger.info("Using legacy bare-token session format")
                return AuthSession(access_token=raw)
            logger.warning("Stored session is not valid JSON, ignoring it")
            return None

        return self._parse_session(parsed)

    async def remove_session(self) -> None:
        await self.storage.remove_item(self.storage_key)
        logger.debug("Session removed")

    def _parse_session(self, parsed: Any) -> Optional[AuthSession]:
        result = validate_safe(AuthSessionSchema, parsed)
        if result.success:
            return self._to_session(result.data)

        logger.warning(f"Stored session failed strict validation: {result.error_message}")
        session = self._parse_legacy_session(parsed)
        if session is None:
            logger.error("Invalid session format in storage")
        return session

    def _parse_legacy_session(self, parsed: Any) -> Optional[AuthSession]:
        """Permissive parse of older session records."""
        # Arrays are never sessions, even though they support indexing
        if not isinstance(parsed, dict):
            return None

        access_token = parsed.get('accessToken')
        if not isinstance(access_token, str) or not access_token:
            return None

        logger.warning("Using legacy session format - migration recommended")
        refresh_token = parsed.get('refreshToken')
        return AuthSession(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            profile=self._parse_profile(parsed.get('profile')),
        )

    def _parse_profile(self, value: Any) -> Optional[UserProfile]:
        result = validate_safe(UserProfileSchema, value)
        if not result.success:
            return None
        return UserProfile(id=result.data.id, email=result.data.email, name=result.data.name)

    def _to_session(self, schema: AuthSessionSchema) -> AuthSession:
        profile = None
        if schema.profile is not None:
            profile = UserProfile(
                id=schema.profile.id,
                email=schema.profile.email,
                name=schema.profile.name
            )
        return AuthSession(
            access_token=schema.access_token,
            refresh_token=schema.refresh_token,
            profile=profile,
        )

    # Pure helpers; none of these touch storage

    def create_session(
        self,
        access_token: str,
        refresh_token: Optional[str],
        profile: Optional[UserProfile] = None
    ) -> AuthSession:
        return AuthSession(access_token=access_token, refresh_token=refresh_token, profile=profile)

    def update_access_token(self, session: AuthSession, new_access_token: str) -> AuthSession:
        return session.with_access_token(new_access_token)

    def update_profile(self, session: AuthSession, profile: UserProfile) -> AuthSession:
        return session.with_profile(profile)

    def create_refreshed_session(self, session: AuthSession, new_access_token: str) -> AuthSession:
        """New access token; refresh token and profile carried over."""
        return AuthSession(
            access_token=new_access_token,
            refresh_token=session.refresh_token,
            profile=session.profile,
        )

    def validate_session(self, value: Any) -> bool:
        if isinstance(value, AuthSession):
            value = value.to_dict()
        return validate_safe(AuthSessionSchema, value).success

    def validate_profile(self, value: Any) -> bool:
        if isinstance(value, UserProfile):
            value = value.to_dict()
        return validate_safe(UserProfileSchema, value).success
