"""
Auth protocol machine.

Hierarchical state machine driving session startup, login, registration,
password reset, refresh and logout. States are dotted paths
(``unauthorized.register.verifyOtp``); an event not handled by the current
state is offered to its parent states.

Remote work is done by named services: async callables looked up by name
when a state is entered and run as asyncio tasks. Each entry gets a new
invocation id, and a service result that arrives after the machine has left
the state that started it is dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from ..shared.exceptions import AuthError
from ..shared.interfaces import IAuthGateway
from ..shared.models import (
    AuthSession, ClassifiedError, Credentials, MachineContext,
    PasswordResetFlow, RegistrationFlow
)
from .error_handler import GENERIC_MESSAGE, classify_error
from .token_policy import is_token_expired

logger = logging.getLogger(__name__)

REFRESH_FAILED_MESSAGE = "Session refresh failed"


class AuthState(Enum):
    """Leaf states of the machine."""
    CHECKING_SESSION = "checkingSession"
    VALIDATING_SESSION = "validatingSession"
    FETCHING_PROFILE_AFTER_VALIDATION = "fetchingProfileAfterValidation"
    REFRESHING_TOKEN = "refreshingToken"
    FETCHING_PROFILE_AFTER_REFRESH = "fetchingProfileAfterRefresh"
    AUTHORIZED = "authorized"
    LOGGING_OUT = "loggingOut"

    LOGIN_IDLE = "unauthorized.login.idle"
    LOGIN_SUBMITTING = "unauthorized.login.submitting"

    REGISTER_FORM = "unauthorized.register.form"
    REGISTER_SUBMITTING = "unauthorized.register.submitting"
    REGISTER_VERIFY_OTP = "unauthorized.register.verifyOtp"
    REGISTER_VERIFYING_OTP = "unauthorized.register.verifyingOtp"
    REGISTER_COMPLETING = "unauthorized.register.completingRegistration"
    REGISTER_LOGGING_IN = "unauthorized.register.loggingIn"

    FORGOT_IDLE = "unauthorized.forgotPassword.idle"
    FORGOT_SUBMITTING = "unauthorized.forgotPassword.submitting"
    FORGOT_VERIFY_OTP = "unauthorized.forgotPassword.verifyOtp"
    FORGOT_VERIFYING_OTP = "unauthorized.forgotPassword.verifyingOtp"
    FORGOT_RESET_PASSWORD = "unauthorized.forgotPassword.resetPassword"
    FORGOT_RESETTING_PASSWORD = "unauthorized.forgotPassword.resettingPassword"
    FORGOT_LOGGING_IN = "unauthorized.forgotPassword.loggingInAfterReset"

    COMPLETE_REGISTRATION_PROCESS = "unauthorized.completeRegistrationProcess"
    LOGGING_IN_AFTER_COMPLETION = "unauthorized.loggingInAfterCompletion"


class EventType(Enum):
    CHECK_SESSION = "CHECK_SESSION"
    LOGIN = "LOGIN"
    REGISTER = "REGISTER"
    FORGOT_PASSWORD = "FORGOT_PASSWORD"
    VERIFY_OTP = "VERIFY_OTP"
    RESET_PASSWORD = "RESET_PASSWORD"
    COMPLETE_REGISTRATION = "COMPLETE_REGISTRATION"
    LOGOUT = "LOGOUT"
    REFRESH = "REFRESH"
    CANCEL = "CANCEL"
    GO_TO_LOGIN = "GO_TO_LOGIN"
    GO_TO_REGISTER = "GO_TO_REGISTER"
    GO_TO_FORGOT_PASSWORD = "GO_TO_FORGOT_PASSWORD"


@dataclass(frozen=True)
class AuthEvent:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)


# States with a request in flight
LOADING_STATES = frozenset({
    AuthState.CHECKING_SESSION,
    AuthState.VALIDATING_SESSION,
    AuthState.FETCHING_PROFILE_AFTER_VALIDATION,
    AuthState.REFRESHING_TOKEN,
    AuthState.FETCHING_PROFILE_AFTER_REFRESH,
    AuthState.LOGGING_OUT,
    AuthState.LOGIN_SUBMITTING,
    AuthState.REGISTER_SUBMITTING,
    AuthState.REGISTER_VERIFYING_OTP,
    AuthState.REGISTER_COMPLETING,
    AuthState.REGISTER_LOGGING_IN,
    AuthState.FORGOT_SUBMITTING,
    AuthState.FORGOT_VERIFYING_OTP,
    AuthState.FORGOT_RESETTING_PASSWORD,
    AuthState.FORGOT_LOGGING_IN,
    AuthState.COMPLETE_REGISTRATION_PROCESS,
    AuthState.LOGGING_IN_AFTER_COMPLETION,
})

# Service started on entry of each state
INVOKED_SERVICES: Dict[AuthState, str] = {
    AuthState.CHECKING_SESSION: 'check_session',
    AuthState.VALIDATING_SESSION: 'validate_session',
    AuthState.FETCHING_PROFILE_AFTER_VALIDATION: 'fetch_profile',
    AuthState.REFRESHING_TOKEN: 'refresh_token',
    AuthState.FETCHING_PROFILE_AFTER_REFRESH: 'fetch_profile',
    AuthState.AUTHORIZED: 'validate_and_refresh_if_needed',
    AuthState.LOGGING_OUT: 'logout',
    AuthState.LOGIN_SUBMITTING: 'login',
    AuthState.REGISTER_SUBMITTING: 'register',
    AuthState.REGISTER_VERIFYING_OTP: 'verify_otp',
    AuthState.REGISTER_COMPLETING: 'complete_registration',
    AuthState.REGISTER_LOGGING_IN: 'login_with_pending_credentials',
    AuthState.FORGOT_SUBMITTING: 'request_password_reset',
    AuthState.FORGOT_VERIFYING_OTP: 'verify_otp',
    AuthState.FORGOT_RESETTING_PASSWORD: 'complete_password_reset',
    AuthState.FORGOT_LOGGING_IN: 'login_with_pending_credentials',
    AuthState.COMPLETE_REGISTRATION_PROCESS: 'complete_registration_from_event',
    AuthState.LOGGING_IN_AFTER_COMPLETION: 'login_with_pending_credentials',
}

# Branches a flow context survives in; leaving them drops the flow
_FLOW_BRANCHES = {
    RegistrationFlow: (
        'unauthorized.register',
        AuthState.COMPLETE_REGISTRATION_PROCESS.value,
        AuthState.LOGGING_IN_AFTER_COMPLETION.value,
    ),
    PasswordResetFlow: ('unauthorized.forgotPassword',),
}

Service = Callable[[MachineContext, Optional[AuthEvent]], Awaitable[Any]]
Listener = Callable[['MachineSnapshot'], None]


def _is_within(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + '.')


def parent_paths(state: AuthState) -> List[str]:
    """``a.b.c`` -> ``['a.b.c', 'a.b', 'a']``"""
    parts = state.value.split('.')
    return ['.'.join(parts[:i]) for i in range(len(parts), 0, -1)]


@dataclass(frozen=True)
class MachineSnapshot:
    """Immutable view of the machine handed to listeners."""
    state: AuthState
    context: MachineContext

    def matches(self, path: str) -> bool:
        return _is_within(self.state.value, path)

    @property
    def is_loading(self) -> bool:
        return self.state in LOADING_STATES


def to_classified_error(error: BaseException) -> ClassifiedError:
    """Reduce any service failure to the user-facing error kept in context."""
    classified = error if isinstance(error, AuthError) else classify_error(error)
    return ClassifiedError(
        message=classified.message or GENERIC_MESSAGE,
        code=classified.code,
        status=classified.status,
    )


def resolve_pending_login(context: MachineContext) -> Dict[str, str]:
    """
    Credentials for the login that ends a registration or reset flow.

    Missing credentials resolve to an empty password; the login then fails
    server-side and that failure is shown to the user.
    """
    flow = context.flow
    credentials = flow.pending_credentials if flow is not None else None
    if credentials is not None:
        return credentials.to_dict()
    email = flow.email if flow is not None and flow.email else ""
    return {'email': email, 'password': ""}


def _pending_password(context: MachineContext) -> str:
    flow = context.flow
    if flow is not None and flow.pending_credentials is not None:
        return flow.pending_credentials.password
    return ""


class AuthMachine:
    """
    Auth protocol machine bound to a gateway.

    Args:
        gateway: Auth gateway used by the default services
        services: Optional overrides of named services
    """

    def __init__(self, gateway: IAuthGateway, services: Optional[Dict[str, Service]] = None):
        self.gateway = gateway
        self._services: Dict[str, Service] = self._default_services()
        if services:
            self._services.update(services)

        self._state = AuthState.CHECKING_SESSION
        self._context = MachineContext()
        self._invocation_id = 0
        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []

        self._handlers: Dict[str, Dict[EventType, Callable[[AuthEvent], bool]]] = {
            'validatingSession': {
                EventType.COMPLETE_REGISTRATION: self._on_complete_registration,
            },
            'refreshingToken': {
                EventType.COMPLETE_REGISTRATION: self._on_complete_registration,
            },
            'authorized': {
                EventType.LOGOUT: self._go(AuthState.LOGGING_OUT),
                EventType.REFRESH: self._go(AuthState.REFRESHING_TOKEN),
                EventType.COMPLETE_REGISTRATION: self._on_complete_registration,
            },
            'unauthorized': {
                EventType.COMPLETE_REGISTRATION: self._on_complete_registration,
                EventType.CHECK_SESSION: self._go(AuthState.CHECKING_SESSION),
                EventType.GO_TO_LOGIN: self._navigate('unauthorized.login', AuthState.LOGIN_IDLE),
                EventType.GO_TO_REGISTER: self._navigate('unauthorized.register', AuthState.REGISTER_FORM),
                EventType.GO_TO_FORGOT_PASSWORD: self._navigate(
                    'unauthorized.forgotPassword', AuthState.FORGOT_IDLE
                ),
            },
            'unauthorized.login.idle': {
                EventType.LOGIN: self._go(AuthState.LOGIN_SUBMITTING, clear_error=True),
            },
            'unauthorized.login.submitting': {
                EventType.CANCEL: self._go(AuthState.LOGIN_IDLE),
            },
            'unauthorized.register.form': {
                EventType.REGISTER: self._on_register,
            },
            'unauthorized.register.submitting': {
                EventType.CANCEL: self._go(AuthState.REGISTER_FORM, clear_flow=True),
            },
            'unauthorized.register.verifyOtp': {
                EventType.VERIFY_OTP: self._on_verify_registration_otp,
                EventType.CANCEL: self._go(AuthState.REGISTER_FORM, clear_flow=True),
            },
            'unauthorized.forgotPassword.idle': {
                EventType.FORGOT_PASSWORD: self._on_forgot_password,
            },
            'unauthorized.forgotPassword.submitting': {
                EventType.CANCEL: self._go(AuthState.FORGOT_IDLE, clear_flow=True),
            },
            'unauthorized.forgotPassword.verifyOtp': {
                EventType.VERIFY_OTP: self._on_verify_reset_otp,
                EventType.CANCEL: self._go(AuthState.FORGOT_IDLE, clear_flow=True),
            },
            'unauthorized.forgotPassword.resetPassword': {
                EventType.RESET_PASSWORD: self._on_reset_password,
                EventType.CANCEL: self._go(AuthState.FORGOT_IDLE, clear_flow=True),
            },
        }

        self._on_done: Dict[AuthState, Callable[[Any], None]] = {
            AuthState.CHECKING_SESSION: self._done_check_session,
            AuthState.VALIDATING_SESSION: self._done_validate_session,
            AuthState.FETCHING_PROFILE_AFTER_VALIDATION: self._done_fetch_profile,
            AuthState.REFRESHING_TOKEN: self._done_refresh_token,
            AuthState.FETCHING_PROFILE_AFTER_REFRESH: self._done_fetch_profile,
            AuthState.AUTHORIZED: self._done_background_check,
            AuthState.LOGGING_OUT: self._done_logout,
            AuthState.LOGIN_SUBMITTING: self._done_login,
            AuthState.REGISTER_SUBMITTING: lambda _: self._transition(AuthState.REGISTER_VERIFY_OTP),
            AuthState.REGISTER_VERIFYING_OTP: self._done_verify_otp(AuthState.REGISTER_COMPLETING),
            AuthState.REGISTER_COMPLETING: lambda _: self._transition(AuthState.REGISTER_LOGGING_IN),
            AuthState.REGISTER_LOGGING_IN: self._done_login,
            AuthState.FORGOT_SUBMITTING: lambda _: self._transition(AuthState.FORGOT_VERIFY_OTP),
            AuthState.FORGOT_VERIFYING_OTP: self._done_verify_otp(AuthState.FORGOT_RESET_PASSWORD),
            AuthState.FORGOT_RESETTING_PASSWORD: lambda _: self._transition(AuthState.FORGOT_LOGGING_IN),
            AuthState.FORGOT_LOGGING_IN: self._done_login,
            AuthState.COMPLETE_REGISTRATION_PROCESS: (
                lambda _: self._transition(AuthState.LOGGING_IN_AFTER_COMPLETION)
            ),
            AuthState.LOGGING_IN_AFTER_COMPLETION: self._done_login,
        }

        self._on_error: Dict[AuthState, Callable[[BaseException], None]] = {
            AuthState.CHECKING_SESSION: lambda _: self._transition(AuthState.LOGIN_IDLE),
            AuthState.VALIDATING_SESSION: lambda _: self._transition(AuthState.REFRESHING_TOKEN),
            AuthState.FETCHING_PROFILE_AFTER_VALIDATION: lambda _: self._transition(AuthState.AUTHORIZED),
            AuthState.REFRESHING_TOKEN: self._error_refresh_token,
            AuthState.FETCHING_PROFILE_AFTER_REFRESH: lambda _: self._transition(AuthState.AUTHORIZED),
            AuthState.AUTHORIZED: self._error_background_check,
            AuthState.LOGGING_OUT: self._fail_to(AuthState.AUTHORIZED),
            AuthState.LOGIN_SUBMITTING: self._fail_to(AuthState.LOGIN_IDLE),
            AuthState.REGISTER_SUBMITTING: self._fail_to(AuthState.REGISTER_FORM),
            AuthState.REGISTER_VERIFYING_OTP: self._fail_to(AuthState.REGISTER_VERIFY_OTP),
            AuthState.REGISTER_COMPLETING: self._fail_to(AuthState.REGISTER_VERIFY_OTP),
            AuthState.REGISTER_LOGGING_IN: self._fail_to(AuthState.LOGIN_IDLE),
            AuthState.FORGOT_SUBMITTING: self._fail_to(AuthState.FORGOT_IDLE),
            AuthState.FORGOT_VERIFYING_OTP: self._fail_to(AuthState.FORGOT_VERIFY_OTP),
            AuthState.FORGOT_RESETTING_PASSWORD: self._fail_to(AuthState.FORGOT_RESET_PASSWORD),
            AuthState.FORGOT_LOGGING_IN: self._fail_to(AuthState.LOGIN_IDLE),
            AuthState.COMPLETE_REGISTRATION_PROCESS: self._fail_to(AuthState.LOGIN_IDLE),
            AuthState.LOGGING_IN_AFTER_COMPLETION: self._fail_to(AuthState.LOGIN_IDLE),
        }

    # Services

    def _default_services(self) -> Dict[str, Service]:
        gateway = self.gateway

        async def check_session(context, event):
            return await gateway.check_session()

        async def validate_session(context, event):
            session = await gateway.refresh_profile()
            if session is None:
                raise AuthError(REFRESH_FAILED_MESSAGE)
            return session

        async def fetch_profile(context, event):
            # Best effort: keep the session we have if the profile call fails
            try:
                session = await gateway.refresh_profile()
            except AuthError as e:
                logger.warning(f"Profile fetch failed, keeping current session: {e.code}")
                return context.session
            return session or context.session

        async def refresh_token(context, event):
            refresh = context.session.refresh_token if context.session else None
            return await gateway.refresh(refresh or "")

        async def validate_and_refresh_if_needed(context, event):
            session = context.session
            if session is None:
                return await gateway.check_session()
            if is_token_expired(session.access_token) and session.refresh_token:
                logger.info("Access token expired while authorized, refreshing")
                return await gateway.refresh(session.refresh_token)
            return session

        async def logout(context, event):
            await gateway.logout()

        async def login(context, event):
            return await gateway.login(dict(event.payload))

        async def register(context, event):
            return await gateway.register(dict(event.payload))

        async def request_password_reset(context, event):
            return await gateway.request_password_reset(dict(event.payload))

        async def verify_otp(context, event):
            return await gateway.verify_otp({
                'email': context.flow.email if context.flow else "",
                'otp': event.payload.get('otp', ""),
            })

        async def complete_registration(context, event):
            return await gateway.complete_registration({
                'actionToken': context.flow.action_token if context.flow else "",
                'newPassword': _pending_password(context),
            })

        async def complete_password_reset(context, event):
            return await gateway.complete_password_reset({
                'actionToken': context.flow.action_token if context.flow else "",
                'newPassword': _pending_password(context),
            })

        async def complete_registration_from_event(context, event):
            return await gateway.complete_registration({
                'actionToken': event.payload.get('actionToken', ""),
                'newPassword': event.payload.get('newPassword', ""),
            })

        async def login_with_pending_credentials(context, event):
            return await gateway.login(resolve_pending_login(context))

        return {
            'check_session': check_session,
            'validate_session': validate_session,
            'fetch_profile': fetch_profile,
            'refresh_token': refresh_token,
            'validate_and_refresh_if_needed': validate_and_refresh_if_needed,
            'logout': logout,
            'login': login,
            'register': register,
            'request_password_reset': request_password_reset,
            'verify_otp': verify_otp,
            'complete_registration': complete_registration,
            'complete_password_reset': complete_password_reset,
            'complete_registration_from_event': complete_registration_from_event,
            'login_with_pending_credentials': login_with_pending_credentials,
        }

    # Public API

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def context(self) -> MachineContext:
        return self._context

    @property
    def running(self) -> bool:
        return self._running

    @property
    def snapshot(self) -> MachineSnapshot:
        return MachineSnapshot(state=self._state, context=self._context)

    def matches(self, path: str) -> bool:
        return self.snapshot.matches(path)

    @property
    def is_loading(self) -> bool:
        return self._state in LOADING_STATES

    def start(self) -> None:
        """Enter ``checkingSession``. Must be called from a running event loop."""
        if self._running:
            return
        self._running = True
        logger.debug("Auth machine started")
        self._transition(AuthState.CHECKING_SESSION)

    def stop(self) -> None:
        """Stop handling events and cancel in-flight services."""
        if not self._running:
            return
        self._running = False
        self._invocation_id += 1
        for task in list(self._tasks):
            task.cancel()
        logger.debug("Auth machine stopped")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with a snapshot after every transition.

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def send(
        self,
        event: Union[AuthEvent, EventType, str],
        payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Deliver an event to the current state.

        The innermost state handling the event wins. Events nobody handles,
        and events whose guard fails, are ignored.

        Returns:
            True if the event caused a transition
        """
        if not isinstance(event, AuthEvent):
            event = AuthEvent(EventType(event), dict(payload or {}))

        if not self._running:
            logger.warning(f"Ignoring {event.type.value}: machine is not running")
            return False

        for path in parent_paths(self._state):
            handler = self._handlers.get(path, {}).get(event.type)
            if handler is not None:
                taken = handler(event)
                if not taken:
                    logger.debug(f"Guard blocked {event.type.value} in {self._state.value}")
                return taken

        logger.debug(f"Event {event.type.value} not handled in {self._state.value}")
        return False

    async def wait_for(
        self,
        predicate: Callable[[MachineSnapshot], bool],
        timeout: Optional[float] = None
    ) -> MachineSnapshot:
        """Wait until a snapshot satisfies ``predicate`` and return it."""
        snapshot = self.snapshot
        if predicate(snapshot):
            return snapshot

        future = asyncio.get_running_loop().create_future()

        def listener(snapshot: MachineSnapshot) -> None:
            if not future.done() and predicate(snapshot):
                future.set_result(snapshot)

        unsubscribe = self.subscribe(listener)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()

    # Transitions

    def _transition(self, target: AuthState, event: Optional[AuthEvent] = None, **changes) -> None:
        previous = self._state
        context = replace(self._context, **changes) if changes else self._context
        self._context = self._scope_flow(target, context)
        self._state = target
        self._invocation_id += 1

        logger.debug(f"{previous.value} -> {target.value}")
        self._invoke(target, event)
        self._notify()

    @staticmethod
    def _scope_flow(target: AuthState, context: MachineContext) -> MachineContext:
        if context.flow is None:
            return context
        branches = _FLOW_BRANCHES[type(context.flow)]
        if any(_is_within(target.value, branch) for branch in branches):
            return context
        return replace(context, flow=None)

    def _invoke(self, state: AuthState, event: Optional[AuthEvent]) -> None:
        name = INVOKED_SERVICES.get(state)
        if name is None:
            return

        task = asyncio.ensure_future(
            self._run_service(self._invocation_id, state, name, self._context, event)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_service(
        self,
        invocation_id: int,
        state: AuthState,
        name: str,
        context: MachineContext,
        event: Optional[AuthEvent]
    ) -> None:
        try:
            result = await self._services[name](context, event)
        except Exception as e:
            if invocation_id != self._invocation_id:
                logger.debug(f"Ignoring late failure of {name} from {state.value}")
                return
            logger.info(f"Service {name} failed in {state.value}: {type(e).__name__}: {e}")
            self._on_error[state](e)
            return

        if invocation_id != self._invocation_id:
            logger.debug(f"Ignoring late result of {name} from {state.value}")
            return
        self._on_done[state](result)

    def _notify(self) -> None:
        snapshot = self.snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Error in auth machine listener: {e}")

    # Event handlers

    def _go(self, target: AuthState, clear_error: bool = False, clear_flow: bool = False):
        def handler(event: AuthEvent) -> bool:
            changes = {}
            if clear_error:
                changes['error'] = None
            if clear_flow:
                changes['flow'] = None
            self._transition(target, event, **changes)
            return True
        return handler

    def _navigate(self, branch: str, target: AuthState):
        def handler(event: AuthEvent) -> bool:
            if _is_within(self._state.value, branch):
                return False
            self._transition(target, event, error=None, flow=None)
            return True
        return handler

    def _on_register(self, event: AuthEvent) -> bool:
        email = event.payload.get('email', "")
        password = event.payload.get('password', "")
        flow = RegistrationFlow(email=email, pending_credentials=Credentials(email, password))
        self._transition(AuthState.REGISTER_SUBMITTING, event, error=None, flow=flow)
        return True

    def _on_verify_registration_otp(self, event: AuthEvent) -> bool:
        flow = self._context.registration
        if flow is None or not flow.email:
            return False
        self._transition(AuthState.REGISTER_VERIFYING_OTP, event, error=None)
        return True

    def _on_forgot_password(self, event: AuthEvent) -> bool:
        flow = PasswordResetFlow(email=event.payload.get('email', ""))
        self._transition(AuthState.FORGOT_SUBMITTING, event, error=None, flow=flow)
        return True

    def _on_verify_reset_otp(self, event: AuthEvent) -> bool:
        flow = self._context.password_reset
        if flow is None or not flow.email:
            return False
        self._transition(AuthState.FORGOT_VERIFYING_OTP, event, error=None)
        return True

    def _on_reset_password(self, event: AuthEvent) -> bool:
        flow = self._context.password_reset
        if flow is None or not flow.action_token:
            return False
        credentials = Credentials(flow.email or "", event.payload.get('newPassword', ""))
        self._transition(
            AuthState.FORGOT_RESETTING_PASSWORD,
            event,
            error=None,
            flow=replace(flow, pending_credentials=credentials)
        )
        return True

    def _on_complete_registration(self, event: AuthEvent) -> bool:
        current = self._context.registration or RegistrationFlow()
        email = event.payload.get('email') or current.email
        credentials = current.pending_credentials
        if credentials is None and email:
            credentials = Credentials(email, event.payload.get('newPassword', ""))

        flow = RegistrationFlow(
            email=email,
            action_token=event.payload.get('actionToken'),
            pending_credentials=credentials,
        )
        self._transition(AuthState.COMPLETE_REGISTRATION_PROCESS, event, error=None, flow=flow)
        return True

    # Service results

    def _fail_to(self, target: AuthState):
        def handler(error: BaseException) -> None:
            self._transition(target, error=to_classified_error(error))
        return handler

    def _done_check_session(self, session: Optional[AuthSession]) -> None:
        if session is None:
            self._transition(AuthState.LOGIN_IDLE)
        else:
            self._transition(AuthState.VALIDATING_SESSION, session=session)

    def _done_validate_session(self, session: AuthSession) -> None:
        self._transition(AuthState.FETCHING_PROFILE_AFTER_VALIDATION, session=session)

    def _done_fetch_profile(self, session: Optional[AuthSession]) -> None:
        self._transition(AuthState.AUTHORIZED, session=session or self._context.session)

    def _done_refresh_token(self, session: AuthSession) -> None:
        self._transition(AuthState.FETCHING_PROFILE_AFTER_REFRESH, session=session)

    def _error_refresh_token(self, error: BaseException) -> None:
        classified = to_classified_error(error)
        self._transition(
            AuthState.LOGIN_IDLE,
            session=None,
            error=replace(classified, message=REFRESH_FAILED_MESSAGE),
        )

    def _done_background_check(self, session: Optional[AuthSession]) -> None:
        # Stays in authorized; only the context changes
        if session is not None and session != self._context.session:
            self._context = replace(self._context, session=session)
            self._notify()

    def _error_background_check(self, error: BaseException) -> None:
        self._context = replace(self._context, error=to_classified_error(error))
        self._notify()

    def _done_logout(self, _result: Any) -> None:
        self._transition(AuthState.LOGIN_IDLE, session=None, error=None)

    def _done_login(self, session: AuthSession) -> None:
        self._transition(AuthState.AUTHORIZED, session=session, error=None, flow=None)

    def _done_verify_otp(self, target: AuthState):
        def handler(action_token: str) -> None:
            flow = replace(self._context.flow, action_token=action_token)
            self._transition(target, flow=flow)
        return handler
