#!/usr/bin/env python3
"""
Unit tests for bounded waiting.
"""

import asyncio

import pytest

from authflow.auth.timeout import timeout_message, with_timeout
from authflow.shared.exceptions import ErrorCode, OperationTimeoutError


class TestWithTimeout:
    """Test with_timeout."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_propagates_errors(self):
        async def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await with_timeout(failing(), 1.0)

    @pytest.mark.asyncio
    async def test_times_out(self):
        with pytest.raises(OperationTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(10), 0.01)

        error = exc_info.value
        assert error.error_code == ErrorCode.OPERATION_TIMEOUT
        assert error.timeout == 0.01
        assert error.message == timeout_message(0.01)

    @pytest.mark.asyncio
    async def test_custom_message(self):
        with pytest.raises(OperationTimeoutError, match="too slow"):
            await with_timeout(asyncio.sleep(10), 0.01, message="too slow")

    @pytest.mark.asyncio
    async def test_cancels_pending_future(self):
        future = asyncio.get_running_loop().create_future()

        with pytest.raises(OperationTimeoutError):
            await with_timeout(future, 0.01)

        assert future.cancelled()

    def test_message(self):
        assert timeout_message(30) == (
            "Authentication operation timeout - state machine did not complete within 30000ms"
        )
