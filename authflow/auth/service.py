"""
Auth service for authflow.

Awaitable facade over the auth protocol machine. Each flow method validates
its input, checks the local rate limit, sends one event and then waits for
the state that ends that step of the flow. Failure states raise AuthError
carrying the message the machine stored in its context.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from ..shared.exceptions import (
    AuthError, AuthFlowError, ErrorCategory, ErrorCode, RateLimitExceededError, ValidationError
)
from ..shared.interfaces import IAuthGateway
from ..shared.logging_config import AuditEventType, AuditLogger
from ..shared.models import AuthSession, ClassifiedError, MachineContext
from ..shared.sanitization import (
    sanitize_complete_action, sanitize_email, sanitize_login_request,
    sanitize_register_request, sanitize_request_otp, sanitize_otp
)
from ..shared.schemas import RequestValidator, ValidationResult
from .machine import AuthMachine, AuthState, EventType, MachineSnapshot
from .rate_limiting import DEFAULT_RATE_LIMITS, RateLimiter, RateLimitOptions
from .timeout import with_timeout

if TYPE_CHECKING:
    from ..config import AuthConfiguration

logger = logging.getLogger(__name__)

Predicate = Callable[[MachineSnapshot], bool]

CANCELLED_MESSAGE = "Operation cancelled"
INVALID_STATE_MESSAGE = "This action is not available right now"


def _settled_unauthorized(snapshot: MachineSnapshot) -> bool:
    return snapshot.matches('unauthorized') and not snapshot.is_loading


def _in(*states: AuthState) -> Predicate:
    return lambda snapshot: snapshot.state in states


def _failed_in(*states: AuthState) -> Predicate:
    return lambda snapshot: snapshot.state in states and snapshot.context.error is not None


def _error_from_context(error: Optional[ClassifiedError]) -> AuthFlowError:
    if error is None:
        return AuthFlowError(CANCELLED_MESSAGE, error_code=ErrorCode.GENERAL_ERROR)
    try:
        category = ErrorCategory(error.code)
    except ValueError:
        category = ErrorCategory.GENERAL_ERROR
    return AuthError(error.message, category=category, status=error.status)


class AuthService:
    """
    Awaitable auth API for UI code.

    Args:
        gateway: Auth gateway driving the machine's services
        rate_limiter: Shared rate limiter; a private one is created if omitted
        validator: Request validator
        operation_timeout: Seconds each flow step may take
        rate_limits: Per-action limits keyed ``login``, ``otpRequest``,
            ``registration``
        audit_logger: Audit logger for auth events
    """

    def __init__(
        self,
        gateway: IAuthGateway,
        rate_limiter: Optional[RateLimiter] = None,
        validator: Optional[RequestValidator] = None,
        operation_timeout: float = 30.0,
        rate_limits: Optional[Dict[str, RateLimitOptions]] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.gateway = gateway
        self.machine = AuthMachine(gateway)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.validator = validator or RequestValidator()
        self.operation_timeout = operation_timeout
        self.rate_limits = dict(DEFAULT_RATE_LIMITS)
        if rate_limits:
            self.rate_limits.update(rate_limits)
        self.audit = audit_logger or AuditLogger()

    async def __aenter__(self) -> 'AuthService':
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def start(self) -> None:
        """Start the machine; it immediately checks the stored session."""
        self.machine.start()

    def stop(self) -> None:
        self.machine.stop()

    # Queries

    def is_logged_in(self) -> bool:
        return self.machine.matches('authorized') and self.machine.context.session is not None

    def is_loading(self) -> bool:
        return self.machine.is_loading

    def has_error(self) -> bool:
        return self.machine.context.error is not None

    def get_error(self) -> Optional[ClassifiedError]:
        return self.machine.context.error

    def get_session(self) -> Optional[AuthSession]:
        return self.machine.context.session

    def get_state(self) -> str:
        return self.machine.state.value

    def get_context(self) -> MachineContext:
        return self.machine.context

    def matches(self, path: str) -> bool:
        return self.machine.matches(path)

    def subscribe(self, callback: Callable[[MachineSnapshot], None]) -> Callable[[], None]:
        return self.machine.subscribe(callback)

    # Flows

    async def check_session(self) -> Optional[AuthSession]:
        """
        Wait for the session check to settle.

        Re-runs the check when the machine is idle in ``unauthorized``.

        Returns:
            The session if authorized, otherwise None
        """
        settled = lambda s: s.state is AuthState.AUTHORIZED or _settled_unauthorized(s)

        if _settled_unauthorized(self.machine.snapshot):
            snapshot = await self._send_and_wait(EventType.CHECK_SESSION, None, settled, lambda s: False)
        else:
            snapshot = await with_timeout(self.machine.wait_for(settled), self.operation_timeout)
        return snapshot.context.session if snapshot.state is AuthState.AUTHORIZED else None

    async def login(self, email: str, password: str) -> AuthSession:
        payload = self._validated(
            self.validator.validate_login_request,
            sanitize_login_request({'email': email, 'password': password})
        )
        key = f"login:{payload['email']}"
        self._check_rate_limit(key, 'login')

        if self.machine.matches('unauthorized') and not self.machine.matches('unauthorized.login'):
            self.go_to_login()

        try:
            snapshot = await self._send_and_wait(
                EventType.LOGIN, payload,
                _in(AuthState.AUTHORIZED),
                _in(AuthState.LOGIN_IDLE)
            )
        except AuthFlowError as e:
            self.audit.log_authentication("login", success=False, email=payload['email'],
                                          failure_reason=e.user_message)
            raise

        self.rate_limiter.reset(key)
        self.audit.log_authentication("login", success=True, email=payload['email'])
        return snapshot.context.session

    async def register(self, email: str, password: str) -> None:
        """Submit the registration form; returns once the OTP is awaited."""
        payload = self._validated(
            self.validator.validate_register_request,
            sanitize_register_request({'email': email, 'password': password})
        )
        self._check_rate_limit(f"registration:{payload['email']}", 'registration')

        if not self.machine.matches('unauthorized.register'):
            self.go_to_register()

        await self._send_and_wait(
            EventType.REGISTER, payload,
            _in(AuthState.REGISTER_VERIFY_OTP),
            _in(AuthState.REGISTER_FORM)
        )
        self.audit.log_event(AuditEventType.REGISTRATION, "Registration submitted",
                             email=payload['email'], result="pending_otp")

    async def request_password_reset(self, email: str) -> None:
        """Request a reset OTP; returns once the OTP is awaited."""
        payload = self._validated(
            self.validator.validate_request_otp_request,
            sanitize_request_otp({'email': email})
        )
        self._check_rate_limit(f"otpRequest:{payload['email']}", 'otpRequest')

        if not self.machine.matches('unauthorized.forgotPassword'):
            self.go_to_forgot_password()

        await self._send_and_wait(
            EventType.FORGOT_PASSWORD, payload,
            _in(AuthState.FORGOT_VERIFY_OTP),
            _in(AuthState.FORGOT_IDLE)
        )
        self.audit.log_event(AuditEventType.PASSWORD_RESET, "Password reset requested",
                             email=payload['email'], result="pending_otp")

    async def verify_otp(self, otp: str) -> str:
        """
        Submit the OTP of the active registration or password reset.

        A registration continues on its own to completion and login; this
        returns once the machine is authorized. A password reset stops at
        the new-password step.

        Returns:
            The action token issued by the server
        """
        flow = self.machine.context.flow
        payload = self._validated(
            self.validator.validate_verify_otp_request,
            {'email': flow.email if flow and flow.email else '', 'otp': sanitize_otp(otp)}
        )

        if self.machine.matches('unauthorized.register'):
            tokens = []

            def record_token(snapshot: MachineSnapshot) -> None:
                flow = snapshot.context.flow
                if flow is not None and flow.action_token:
                    tokens.append(flow.action_token)

            unsubscribe = self.subscribe(record_token)
            try:
                await self._send_and_wait(
                    EventType.VERIFY_OTP, {'otp': payload['otp']},
                    _in(AuthState.AUTHORIZED),
                    _failed_in(AuthState.REGISTER_VERIFY_OTP, AuthState.LOGIN_IDLE)
                )
            finally:
                unsubscribe()
            self.audit.log_event(AuditEventType.REGISTRATION, "Registration completed",
                                 email=payload['email'], result="success")
            return tokens[-1] if tokens else ""

        snapshot = await self._send_and_wait(
            EventType.VERIFY_OTP, {'otp': payload['otp']},
            _in(AuthState.FORGOT_RESET_PASSWORD),
            _failed_in(AuthState.FORGOT_VERIFY_OTP)
        )
        return snapshot.context.flow.action_token

    async def complete_password_reset(self, new_password: str) -> AuthSession:
        """Set the new password after OTP verification and log in with it."""
        flow = self.machine.context.password_reset
        self._validated(
            self.validator.validate_complete_password_reset_request,
            sanitize_complete_action({
                'actionToken': flow.action_token if flow and flow.action_token else '',
                'newPassword': new_password,
            })
        )

        snapshot = await self._send_and_wait(
            EventType.RESET_PASSWORD, {'newPassword': new_password},
            _in(AuthState.AUTHORIZED),
            lambda s: (
                _failed_in(AuthState.FORGOT_RESET_PASSWORD)(s)
                or _in(AuthState.LOGIN_IDLE)(s)
            )
        )
        self.audit.log_event(AuditEventType.PASSWORD_RESET, "Password reset completed",
                             email=flow.email, result="success")
        return snapshot.context.session

    async def complete_registration(
        self,
        action_token: str,
        new_password: str,
        email: Optional[str] = None
    ) -> AuthSession:
        """
        Complete a registration from an action token obtained elsewhere.

        ``email`` is needed for the follow-up login unless a registration
        flow with pending credentials is active.
        """
        payload = self._validated(
            self.validator.validate_complete_registration_request,
            sanitize_complete_action({'actionToken': action_token, 'newPassword': new_password})
        )
        if email is not None:
            payload['email'] = sanitize_email(email)

        snapshot = await self._send_and_wait(
            EventType.COMPLETE_REGISTRATION, payload,
            _in(AuthState.AUTHORIZED),
            _in(AuthState.LOGIN_IDLE)
        )
        self.audit.log_event(AuditEventType.REGISTRATION, "Registration completed",
                             email=payload.get('email'), result="success")
        return snapshot.context.session

    async def refresh(self) -> AuthSession:
        try:
            snapshot = await self._send_and_wait(
                EventType.REFRESH, None,
                _in(AuthState.AUTHORIZED),
                _in(AuthState.LOGIN_IDLE)
            )
        except AuthFlowError as e:
            self.audit.log_authentication("refresh", success=False, failure_reason=e.user_message)
            raise
        self.audit.log_authentication("refresh", success=True)
        return snapshot.context.session

    async def logout(self) -> None:
        await self._send_and_wait(
            EventType.LOGOUT, None,
            _in(AuthState.LOGIN_IDLE),
            _failed_in(AuthState.AUTHORIZED)
        )
        self.audit.log_authentication("logout", success=True)

    # Navigation

    def go_to_login(self) -> None:
        self.machine.send(EventType.GO_TO_LOGIN)

    def go_to_register(self) -> None:
        self.machine.send(EventType.GO_TO_REGISTER)

    def go_to_forgot_password(self) -> None:
        self.machine.send(EventType.GO_TO_FORGOT_PASSWORD)

    def cancel(self) -> None:
        self.machine.send(EventType.CANCEL)

    # Helpers

    def _validated(self, validate: Callable[[Any], ValidationResult], payload: Dict[str, Any]) -> Dict[str, str]:
        result = validate(payload)
        if not result.success:
            message = result.error_message
            raise ValidationError(message, errors=result.errors, user_message=message)
        return result.data.to_wire()

    def _check_rate_limit(self, key: str, action: str) -> None:
        result = self.rate_limiter.check(key, self.rate_limits[action])
        if not result.allowed:
            raise RateLimitExceededError(key, reset_time=result.reset_time)

    async def _send_and_wait(
        self,
        event_type: EventType,
        payload: Optional[Dict[str, Any]],
        resolved: Predicate,
        failed: Predicate
    ) -> MachineSnapshot:
        """
        Send an event and wait for the first later snapshot that resolves or
        fails the step.

        Raises:
            AuthFlowError: If the event is not accepted in the current state
            AuthError: If a failure state is reached
            OperationTimeoutError: If neither happens in time
        """
        outcome: asyncio.Future = asyncio.get_running_loop().create_future()

        def listener(snapshot: MachineSnapshot) -> None:
            if outcome.done():
                return
            if resolved(snapshot):
                outcome.set_result(snapshot)
            elif failed(snapshot):
                outcome.set_exception(_error_from_context(snapshot.context.error))

        unsubscribe = self.machine.subscribe(listener)
        try:
            if not self.machine.send(event_type, payload):
                raise AuthFlowError(
                    f"{event_type.value} is not accepted in state {self.machine.state.value}",
                    error_code=ErrorCode.INVALID_INPUT,
                    user_message=INVALID_STATE_MESSAGE
                )
            return await with_timeout(outcome, self.operation_timeout)
        finally:
            unsubscribe()


def create_auth_service(config: 'AuthConfiguration') -> AuthService:
    """Build a service and its collaborators from configuration."""
    from ..transport import HTTPTransport
    from .gateway import AuthGateway
    from .session_store import SessionStore
    from .token_policy import RetryPolicy

    transport = HTTPTransport(
        config.get_api_url(),
        timeout=config.get_api_timeout(),
        retry_policy=RetryPolicy(
            max_retries=config.get_max_retries(),
            initial_delay=config.get_retry_initial_delay()
        )
    )
    store = SessionStore(config.create_storage(), storage_key=config.get_storage_key())
    gateway = AuthGateway(transport, store)

    return AuthService(
        gateway,
        rate_limiter=RateLimiter(),
        operation_timeout=config.get_operation_timeout(),
        rate_limits=config.get_rate_limits()
    )
