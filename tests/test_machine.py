#!/usr/bin/env python3
"""
Unit tests for the auth protocol machine.

The gateway is an AsyncMock unless a test needs real storage behaviour.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from authflow.auth.gateway import AuthGateway
from authflow.auth.machine import (
    AuthEvent, AuthMachine, AuthState, EventType, REFRESH_FAILED_MESSAGE, parent_paths
)
from authflow.auth.session_store import DEFAULT_STORAGE_KEY
from authflow.shared.exceptions import AuthError, ErrorCategory
from authflow.shared.models import AuthSession, PasswordResetFlow, RegistrationFlow, UserProfile

CREDENTIALS = {'email': 'test@example.com', 'password': 'validpass'}


async def wait_state(machine, state):
    return await machine.wait_for(lambda s: s.state is state, timeout=1)


@pytest_asyncio.fixture
async def machine(gateway):
    machine = AuthMachine(gateway)
    machine.start()
    await wait_state(machine, AuthState.LOGIN_IDLE)
    yield machine
    machine.stop()


class TestHelpers:
    """Test state path helpers."""

    def test_parent_paths(self):
        assert parent_paths(AuthState.REGISTER_VERIFY_OTP) == [
            'unauthorized.register.verifyOtp',
            'unauthorized.register',
            'unauthorized',
        ]
        assert parent_paths(AuthState.AUTHORIZED) == ['authorized']

    @pytest.mark.asyncio
    async def test_matches(self, machine):
        assert machine.matches('unauthorized')
        assert machine.matches('unauthorized.login')
        assert machine.matches('unauthorized.login.idle')
        assert not machine.matches('unauthorized.log')
        assert not machine.matches('authorized')


class TestStartup:
    """Test the session check on start."""

    @pytest.mark.asyncio
    async def test_no_session_goes_to_login(self, gateway):
        machine = AuthMachine(gateway)
        machine.start()

        assert machine.state is AuthState.CHECKING_SESSION
        assert machine.is_loading
        await wait_state(machine, AuthState.LOGIN_IDLE)
        assert machine.context.session is None
        assert machine.context.error is None
        machine.stop()

    @pytest.mark.asyncio
    async def test_check_failure_goes_to_login(self, gateway):
        gateway.check_session.side_effect = AuthError("boom")
        machine = AuthMachine(gateway)
        machine.start()

        await wait_state(machine, AuthState.LOGIN_IDLE)
        machine.stop()

    @pytest.mark.asyncio
    async def test_valid_session_is_authorized(self, gateway, session):
        with_profile = session.with_profile(UserProfile(id='u1', email='user@example.com'))
        gateway.check_session.return_value = session
        gateway.refresh_profile.return_value = with_profile
        states = []
        machine = AuthMachine(gateway)
        machine.subscribe(lambda s: states.append(s.state))
        machine.start()

        await wait_state(machine, AuthState.AUTHORIZED)

        assert machine.context.session == with_profile
        assert states[:4] == [
            AuthState.CHECKING_SESSION,
            AuthState.VALIDATING_SESSION,
            AuthState.FETCHING_PROFILE_AFTER_VALIDATION,
            AuthState.AUTHORIZED,
        ]
        machine.stop()

    @pytest.mark.asyncio
    async def test_failed_validation_refreshes(self, gateway, session, valid_token):
        refreshed = AuthSession(valid_token + 'x', session.refresh_token)
        gateway.check_session.return_value = session
        gateway.refresh_profile.side_effect = [
            AuthError("expired", category=ErrorCategory.UNAUTHORIZED, status=401),
            refreshed,
        ]
        gateway.refresh.return_value = refreshed
        machine = AuthMachine(gateway)
        machine.start()

        await wait_state(machine, AuthState.AUTHORIZED)

        gateway.refresh.assert_awaited_with(session.refresh_token)
        assert machine.context.session == refreshed
        machine.stop()

    @pytest.mark.asyncio
    async def test_failed_refresh_ends_unauthorized(self, gateway, session):
        gateway.check_session.return_value = session
        gateway.refresh_profile.side_effect = AuthError("expired", category=ErrorCategory.UNAUTHORIZED)
        gateway.refresh.side_effect = AuthError("revoked", category=ErrorCategory.UNAUTHORIZED, status=401)
        machine = AuthMachine(gateway)
        machine.start()

        await wait_state(machine, AuthState.LOGIN_IDLE)

        assert machine.context.session is None
        assert machine.context.error.message == REFRESH_FAILED_MESSAGE
        assert machine.context.error.code == 'unauthorized'
        machine.stop()

    @pytest.mark.asyncio
    async def test_profile_failure_after_validation_keeps_session(self, gateway, session):
        gateway.check_session.return_value = session
        gateway.refresh_profile.side_effect = [session, AuthError("flaky")]
        machine = AuthMachine(gateway)
        machine.start()

        await wait_state(machine, AuthState.AUTHORIZED)

        assert machine.context.session == session
        machine.stop()


class TestLogin:
    """Test the login branch."""

    @pytest.mark.asyncio
    async def test_login_success(self, machine, gateway):
        gateway.login.return_value = AuthSession(access_token="t1", refresh_token="r1")

        assert machine.send(EventType.LOGIN, CREDENTIALS)
        assert machine.state is AuthState.LOGIN_SUBMITTING
        snapshot = await wait_state(machine, AuthState.AUTHORIZED)

        assert snapshot.context.session.access_token == "t1"
        gateway.login.assert_awaited_once_with(CREDENTIALS)

    @pytest.mark.asyncio
    async def test_login_failure_sets_error(self, machine, gateway):
        gateway.login.side_effect = AuthError(
            "Invalid credentials", category=ErrorCategory.UNAUTHORIZED, status=401
        )

        machine.send(EventType.LOGIN, CREDENTIALS)
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        assert machine.state is AuthState.LOGIN_IDLE
        assert machine.context.error.message == "Invalid credentials"
        assert machine.context.error.status == 401

    @pytest.mark.asyncio
    async def test_new_attempt_clears_error(self, machine, gateway):
        gateway.login.side_effect = AuthError("Invalid credentials")
        machine.send(EventType.LOGIN, CREDENTIALS)
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        machine.send(EventType.LOGIN, CREDENTIALS)

        assert machine.context.error is None

    @pytest.mark.asyncio
    async def test_cancel_ignores_late_result(self, machine, gateway):
        release = asyncio.Event()

        async def slow_login(payload):
            await release.wait()
            return AuthSession(access_token="late")

        gateway.login.side_effect = slow_login
        machine.send(EventType.LOGIN, CREDENTIALS)
        await asyncio.sleep(0)

        assert machine.send(EventType.CANCEL)
        assert machine.state is AuthState.LOGIN_IDLE

        release.set()
        for _ in range(5):
            await asyncio.sleep(0)

        assert machine.state is AuthState.LOGIN_IDLE
        assert machine.context.session is None

    @pytest.mark.asyncio
    async def test_unhandled_event_is_ignored(self, machine, gateway):
        assert not machine.send(EventType.LOGOUT)
        assert not machine.send(EventType.VERIFY_OTP, {'otp': '123456'})
        assert machine.state is AuthState.LOGIN_IDLE

    @pytest.mark.asyncio
    async def test_string_event_type(self, machine, gateway):
        gateway.login.return_value = AuthSession(access_token="t1")

        assert machine.send("LOGIN", CREDENTIALS)
        await wait_state(machine, AuthState.AUTHORIZED)


class TestRegistration:
    """Test the registration branch."""

    @pytest.mark.asyncio
    async def test_full_registration(self, machine, gateway):
        gateway.register.return_value = None
        gateway.verify_otp.return_value = "tok"
        gateway.complete_registration.return_value = None
        gateway.login.return_value = AuthSession(access_token="a")

        machine.send(EventType.GO_TO_REGISTER)
        assert machine.state is AuthState.REGISTER_FORM
        machine.send(EventType.REGISTER, CREDENTIALS)
        await wait_state(machine, AuthState.REGISTER_VERIFY_OTP)
        machine.send(EventType.VERIFY_OTP, {'otp': '123456'})
        await wait_state(machine, AuthState.AUTHORIZED)

        gateway.register.assert_awaited_once_with(CREDENTIALS)
        gateway.verify_otp.assert_awaited_once_with({'email': 'test@example.com', 'otp': '123456'})
        gateway.complete_registration.assert_awaited_once_with(
            {'actionToken': 'tok', 'newPassword': 'validpass'}
        )
        gateway.login.assert_awaited_once_with(CREDENTIALS)
        assert machine.context.session == AuthSession(access_token="a")
        assert machine.context.flow is None

    @pytest.mark.asyncio
    async def test_verify_otp_requires_email(self, machine, gateway):
        machine.send(EventType.GO_TO_REGISTER)
        machine.send(EventType.REGISTER, {'password': 'validpass'})
        await wait_state(machine, AuthState.REGISTER_VERIFY_OTP)

        assert not machine.send(EventType.VERIFY_OTP, {'otp': '123456'})

        assert machine.state is AuthState.REGISTER_VERIFY_OTP
        gateway.verify_otp.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_register_failure_returns_to_form(self, machine, gateway):
        gateway.register.side_effect = AuthError("Email already registered", category=ErrorCategory.VALIDATION)

        machine.send(EventType.GO_TO_REGISTER)
        machine.send(EventType.REGISTER, CREDENTIALS)
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        assert machine.state is AuthState.REGISTER_FORM
        assert machine.context.error.message == "Email already registered"
        assert machine.context.error.code == 'validation'

    @pytest.mark.asyncio
    async def test_wrong_otp_allows_retry(self, machine, gateway):
        gateway.verify_otp.side_effect = [AuthError("Invalid OTP code"), "tok"]
        gateway.login.return_value = AuthSession(access_token="a")

        machine.send(EventType.GO_TO_REGISTER)
        machine.send(EventType.REGISTER, CREDENTIALS)
        await wait_state(machine, AuthState.REGISTER_VERIFY_OTP)
        machine.send(EventType.VERIFY_OTP, {'otp': '000000'})
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        assert machine.state is AuthState.REGISTER_VERIFY_OTP
        assert machine.context.registration.email == 'test@example.com'

        machine.send(EventType.VERIFY_OTP, {'otp': '123456'})
        await wait_state(machine, AuthState.AUTHORIZED)

    @pytest.mark.asyncio
    async def test_login_failure_after_completion(self, machine, gateway):
        gateway.verify_otp.return_value = "tok"
        gateway.login.side_effect = AuthError("Invalid credentials")

        machine.send(EventType.GO_TO_REGISTER)
        machine.send(EventType.REGISTER, CREDENTIALS)
        await wait_state(machine, AuthState.REGISTER_VERIFY_OTP)
        machine.send(EventType.VERIFY_OTP, {'otp': '123456'})
        await wait_state(machine, AuthState.LOGIN_IDLE)

        assert machine.context.error.message == "Invalid credentials"
        assert machine.context.flow is None

    @pytest.mark.asyncio
    async def test_cancel_clears_flow(self, machine, gateway):
        machine.send(EventType.GO_TO_REGISTER)
        machine.send(EventType.REGISTER, CREDENTIALS)
        await wait_state(machine, AuthState.REGISTER_VERIFY_OTP)

        machine.send(EventType.CANCEL)

        assert machine.state is AuthState.REGISTER_FORM
        assert machine.context.flow is None

    @pytest.mark.asyncio
    async def test_go_to_login_clears_flow_and_error(self, machine, gateway):
        gateway.register.side_effect = AuthError("Registration failed")
        machine.send(EventType.GO_TO_REGISTER)
        machine.send(EventType.REGISTER, CREDENTIALS)
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        machine.send(EventType.GO_TO_LOGIN)

        assert machine.state is AuthState.LOGIN_IDLE
        assert machine.context.error is None
        assert machine.context.flow is None


class TestPasswordReset:
    """Test the forgot-password branch."""

    async def _reach_reset_password(self, machine):
        machine.send(EventType.GO_TO_FORGOT_PASSWORD)
        machine.send(EventType.FORGOT_PASSWORD, {'email': 'test@example.com'})
        await wait_state(machine, AuthState.FORGOT_VERIFY_OTP)
        machine.send(EventType.VERIFY_OTP, {'otp': '123456'})
        await wait_state(machine, AuthState.FORGOT_RESET_PASSWORD)

    @pytest.mark.asyncio
    async def test_full_reset(self, machine, gateway, valid_token):
        gateway.verify_otp.return_value = "tok"
        gateway.login.return_value = AuthSession(access_token=valid_token)

        await self._reach_reset_password(machine)
        assert machine.context.password_reset.action_token == "tok"

        machine.send(EventType.RESET_PASSWORD, {'newPassword': 'newpass123'})
        await wait_state(machine, AuthState.AUTHORIZED)

        gateway.request_password_reset.assert_awaited_once_with({'email': 'test@example.com'})
        gateway.complete_password_reset.assert_awaited_once_with(
            {'actionToken': 'tok', 'newPassword': 'newpass123'}
        )
        gateway.login.assert_awaited_once_with({'email': 'test@example.com', 'password': 'newpass123'})
        assert machine.context.flow is None

    @pytest.mark.asyncio
    async def test_reset_requires_action_token(self, machine, gateway):
        gateway.verify_otp.return_value = ""

        await self._reach_reset_password(machine)

        assert not machine.send(EventType.RESET_PASSWORD, {'newPassword': 'newpass123'})
        assert machine.state is AuthState.FORGOT_RESET_PASSWORD
        gateway.complete_password_reset.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reset_failure_allows_retry(self, machine, gateway):
        gateway.verify_otp.return_value = "tok"
        gateway.complete_password_reset.side_effect = AuthError("Password reset failed")

        await self._reach_reset_password(machine)
        machine.send(EventType.RESET_PASSWORD, {'newPassword': 'newpass123'})
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        assert machine.state is AuthState.FORGOT_RESET_PASSWORD
        assert machine.context.password_reset.action_token == "tok"

    @pytest.mark.asyncio
    async def test_request_failure_returns_to_idle(self, machine, gateway):
        gateway.request_password_reset.side_effect = AuthError("User not found")

        machine.send(EventType.GO_TO_FORGOT_PASSWORD)
        machine.send(EventType.FORGOT_PASSWORD, {'email': 'test@example.com'})
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        assert machine.state is AuthState.FORGOT_IDLE


class TestFlowIsolation:
    """Registration and reset data never leak into each other."""

    @pytest.mark.asyncio
    async def test_switching_branch_drops_flow(self, machine, gateway):
        machine.send(EventType.GO_TO_REGISTER)
        machine.send(EventType.REGISTER, CREDENTIALS)
        await wait_state(machine, AuthState.REGISTER_VERIFY_OTP)
        assert isinstance(machine.context.flow, RegistrationFlow)

        machine.send(EventType.GO_TO_FORGOT_PASSWORD)

        assert machine.state is AuthState.FORGOT_IDLE
        assert machine.context.flow is None
        assert machine.context.registration is None

    @pytest.mark.asyncio
    async def test_reset_flow_is_not_registration(self, machine, gateway):
        machine.send(EventType.GO_TO_FORGOT_PASSWORD)
        machine.send(EventType.FORGOT_PASSWORD, {'email': 'test@example.com'})
        await wait_state(machine, AuthState.FORGOT_VERIFY_OTP)

        assert isinstance(machine.context.flow, PasswordResetFlow)
        assert machine.context.registration is None
        assert machine.context.password_reset.email == 'test@example.com'


class TestCompleteRegistration:
    """Test the global COMPLETE_REGISTRATION event."""

    @pytest.mark.asyncio
    async def test_from_login(self, machine, gateway):
        gateway.login.return_value = AuthSession(access_token="a")
        payload = {'actionToken': 'x' * 24, 'newPassword': 'validpass', 'email': 'test@example.com'}

        assert machine.send(EventType.COMPLETE_REGISTRATION, payload)
        assert machine.state is AuthState.COMPLETE_REGISTRATION_PROCESS
        await wait_state(machine, AuthState.AUTHORIZED)

        gateway.complete_registration.assert_awaited_once_with(
            {'actionToken': 'x' * 24, 'newPassword': 'validpass'}
        )
        gateway.login.assert_awaited_once_with(CREDENTIALS)

    @pytest.mark.asyncio
    async def test_without_credentials_login_uses_empty_password(self, machine, gateway):
        gateway.login.side_effect = AuthError("Invalid credentials")

        machine.send(EventType.COMPLETE_REGISTRATION, {'actionToken': 'x' * 24, 'newPassword': 'validpass'})
        await machine.wait_for(lambda s: s.context.error is not None, timeout=1)

        gateway.login.assert_awaited_once_with({'email': '', 'password': ''})
        assert machine.state is AuthState.LOGIN_IDLE


class TestAuthorized:
    """Test refresh and logout from the authorized state."""

    @pytest_asyncio.fixture
    async def authorized(self, machine, gateway, session):
        gateway.login.return_value = session
        machine.send(EventType.LOGIN, CREDENTIALS)
        await wait_state(machine, AuthState.AUTHORIZED)
        await asyncio.sleep(0)
        return machine

    @pytest.mark.asyncio
    async def test_logout(self, authorized, gateway):
        authorized.send(EventType.LOGOUT)
        await wait_state(authorized, AuthState.LOGIN_IDLE)

        gateway.logout.assert_awaited_once()
        assert authorized.context.session is None

    @pytest.mark.asyncio
    async def test_logout_failure_stays_authorized(self, authorized, gateway):
        gateway.logout.side_effect = AuthError("Could not access session storage")

        authorized.send(EventType.LOGOUT)
        await authorized.wait_for(lambda s: s.context.error is not None, timeout=1)

        assert authorized.state is AuthState.AUTHORIZED
        assert authorized.context.session is not None

    @pytest.mark.asyncio
    async def test_refresh(self, authorized, gateway, session, valid_token):
        refreshed = AuthSession(valid_token + 'r', session.refresh_token)
        gateway.refresh.return_value = refreshed
        gateway.refresh_profile.return_value = refreshed

        authorized.send(EventType.REFRESH)
        assert authorized.state is AuthState.REFRESHING_TOKEN
        await wait_state(authorized, AuthState.AUTHORIZED)

        assert authorized.context.session == refreshed

    @pytest.mark.asyncio
    async def test_background_check_refreshes_expired_token(self, machine, gateway, expired_token, valid_token):
        refreshed = AuthSession(valid_token, 'r1')
        gateway.login.return_value = AuthSession(expired_token, 'r1')
        gateway.refresh.return_value = refreshed

        machine.send(EventType.LOGIN, CREDENTIALS)
        await machine.wait_for(lambda s: s.context.session == refreshed, timeout=1)

        assert machine.state is AuthState.AUTHORIZED
        gateway.refresh.assert_awaited_once_with('r1')


class TestLogoutWithStorage:
    """Logout against a real gateway and storage."""

    @pytest.mark.asyncio
    async def test_logout_removes_stored_session(self, session_store, storage, session):
        transport = AsyncMock()
        transport.get.return_value = {'id': 'u1', 'email': 'user@example.com'}
        await session_store.save_session(session)
        machine = AuthMachine(AuthGateway(transport, session_store))
        machine.start()
        await wait_state(machine, AuthState.AUTHORIZED)

        machine.send(EventType.LOGOUT)
        await wait_state(machine, AuthState.LOGIN_IDLE)

        assert machine.context.session is None
        assert await storage.get_item(DEFAULT_STORAGE_KEY) is None
        machine.stop()


class TestLifecycle:
    """Test start/stop, listeners and CHECK_SESSION."""

    @pytest.mark.asyncio
    async def test_events_ignored_before_start(self, gateway):
        machine = AuthMachine(gateway)

        assert not machine.send(EventType.LOGIN, CREDENTIALS)
        gateway.login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_ignores_pending_result(self, machine, gateway):
        release = asyncio.Event()

        async def slow_login(payload):
            await release.wait()
            return AuthSession(access_token="late")

        gateway.login.side_effect = slow_login
        machine.send(EventType.LOGIN, CREDENTIALS)
        machine.stop()
        release.set()
        await asyncio.sleep(0)

        assert not machine.running
        assert machine.state is AuthState.LOGIN_SUBMITTING
        assert not machine.send(EventType.CANCEL)

    @pytest.mark.asyncio
    async def test_check_session_from_unauthorized(self, machine, gateway):
        assert machine.send(EventType.CHECK_SESSION)
        assert machine.state is AuthState.CHECKING_SESSION
        await wait_state(machine, AuthState.LOGIN_IDLE)

        assert gateway.check_session.await_count == 2

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_transitions(self, machine, gateway):
        def broken(snapshot):
            raise RuntimeError("listener bug")

        seen = []
        machine.subscribe(broken)
        unsubscribe = machine.subscribe(lambda s: seen.append(s.state))

        machine.send(EventType.GO_TO_REGISTER)
        unsubscribe()
        machine.send(EventType.GO_TO_LOGIN)

        assert seen == [AuthState.REGISTER_FORM]
        assert machine.state is AuthState.LOGIN_IDLE

    @pytest.mark.asyncio
    async def test_custom_service_override(self, gateway):
        calls = []

        async def check_session(context, event):
            calls.append(context)
            return None

        machine = AuthMachine(gateway, services={'check_session': check_session})
        machine.start()
        await wait_state(machine, AuthState.LOGIN_IDLE)

        assert len(calls) == 1
        gateway.check_session.assert_not_awaited()
        machine.stop()

    def test_event_dataclass(self):
        event = AuthEvent(EventType.LOGIN)

        assert event.payload == {}
