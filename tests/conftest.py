"""Shared fixtures for the authflow test suite."""

import time
from unittest.mock import AsyncMock

import pytest
from jose import jwt

from authflow.auth.session_store import SessionStore
from authflow.auth.storage import MemoryStorage
from authflow.shared.interfaces import IAuthGateway
from authflow.shared.models import AuthSession


def make_token(exp_offset=3600, **claims):
    """Unsigned-looking HS256 JWT with ``exp`` relative to now (None: no exp)."""
    if exp_offset is not None:
        claims['exp'] = int(time.time()) + exp_offset
    claims.setdefault('sub', 'user-1')
    return jwt.encode(claims, 'test-secret', algorithm='HS256')


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def session_store(storage):
    return SessionStore(storage)


@pytest.fixture
def valid_token():
    return make_token()


@pytest.fixture
def expired_token():
    return make_token(exp_offset=-3600)


@pytest.fixture
def session(valid_token):
    return AuthSession(access_token=valid_token, refresh_token="refresh-token-1")


@pytest.fixture
def gateway():
    """Gateway mock whose every operation is an AsyncMock."""
    mock = AsyncMock(spec=IAuthGateway)
    mock.check_session.return_value = None
    mock.refresh_profile.return_value = None
    mock.logout.return_value = None
    mock.refresh.return_value = None
    return mock


@pytest.fixture
def token_factory():
    return make_token
