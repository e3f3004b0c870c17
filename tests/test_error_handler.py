#!/usr/bin/env python3
"""
Unit tests for error classification.
"""

import pytest

from authflow.auth.error_handler import (
    GENERIC_MESSAGE, category_for_status, classify_error, handle_api_errors
)
from authflow.shared.exceptions import (
    AuthError, ErrorCategory, ErrorCode, SessionStorageError, ValidationError
)
from authflow.transport import HTTPStatusError, TransportNetworkError


class TestCategoryForStatus:
    """Test the status to category mapping."""

    @pytest.mark.parametrize("status,category", [
        (400, ErrorCategory.VALIDATION),
        (401, ErrorCategory.UNAUTHORIZED),
        (403, ErrorCategory.FORBIDDEN),
        (404, ErrorCategory.NOT_FOUND),
        (429, ErrorCategory.RATE_LIMITED),
        (500, ErrorCategory.SERVER_ERROR),
        (503, ErrorCategory.SERVER_ERROR),
        (599, ErrorCategory.SERVER_ERROR),
        (409, ErrorCategory.GENERAL_ERROR),
        (302, ErrorCategory.GENERAL_ERROR),
        (None, ErrorCategory.GENERAL_ERROR),
    ])
    def test_mapping(self, status, category):
        assert category_for_status(status) == category


class TestClassifyError:
    """Test message selection and carried diagnostics."""

    def test_server_message_preferred(self):
        error = HTTPStatusError(401, {'message': 'Invalid credentials'})

        classified = classify_error(error)

        assert classified.message == 'Invalid credentials'
        assert classified.code == 'unauthorized'
        assert classified.status == 401
        assert classified.cause is error

    def test_transport_message_when_server_silent(self):
        classified = classify_error(HTTPStatusError(404, {}))

        assert classified.message == "Request failed with status code 404"
        assert classified.code == 'not_found'

    def test_network_error(self):
        classified = classify_error(TransportNetworkError("Connection refused"))

        assert classified.message == "Connection refused"
        assert classified.code == 'general_error'
        assert classified.status is None

    def test_rate_limit_message_is_fixed(self):
        classified = classify_error(HTTPStatusError(429, {'message': 'bucket 7 overflow'}))

        assert classified.message == 'Too many requests, please try again later'
        assert classified.category == ErrorCategory.RATE_LIMITED

    def test_server_error_message_is_fixed(self):
        classified = classify_error(HTTPStatusError(500, {'message': 'NullPointerException at db'}))

        assert classified.message == 'Server error occurred'
        assert classified.error_code == ErrorCode.SERVER_ERROR

    def test_non_string_server_message_ignored(self):
        classified = classify_error(HTTPStatusError(400, {'message': ['a', 'b']}))

        assert classified.message == "Request failed with status code 400"

    def test_auth_error_passes_through(self):
        error = AuthError("Already classified", category=ErrorCategory.FORBIDDEN, status=403)

        assert classify_error(error) is error

    def test_local_error_keeps_user_message(self):
        classified = classify_error(SessionStorageError("disk full"))

        assert classified.message == 'Could not access session storage'
        assert classified.error_code == ErrorCode.STORAGE_FAILED
        assert classified.code == 'general_error'

    def test_unknown_error_gets_generic_message(self):
        classified = classify_error(KeyError('accessToken'))

        assert classified.message == GENERIC_MESSAGE
        assert classified.code == 'general_error'
        assert isinstance(classified.cause, KeyError)
        assert classified.error_code == ErrorCode.GENERAL_ERROR

    def test_foreign_error_code_is_kept(self):
        classified = classify_error(ConnectionResetError("peer reset"))

        assert classified.message == GENERIC_MESSAGE
        assert classified.error_code == ErrorCode.NETWORK_ERROR


class TestHandleApiErrors:
    """Test the decorator used by the gateway."""

    @pytest.mark.asyncio
    async def test_result_passed_through(self):
        @handle_api_errors
        async def operation():
            return 42

        assert await operation() == 42

    @pytest.mark.asyncio
    async def test_errors_are_classified_and_chained(self):
        original = HTTPStatusError(403, {'message': 'Forbidden'})

        @handle_api_errors
        async def operation():
            raise original

        with pytest.raises(AuthError) as exc_info:
            await operation()

        assert exc_info.value.code == 'forbidden'
        assert exc_info.value.__cause__ is original

    @pytest.mark.asyncio
    async def test_validation_error_becomes_general(self):
        @handle_api_errors
        async def operation():
            raise ValidationError("bad envelope", user_message=GENERIC_MESSAGE)

        with pytest.raises(AuthError) as exc_info:
            await operation()

        assert exc_info.value.message == GENERIC_MESSAGE
        assert exc_info.value.code == 'general_error'
