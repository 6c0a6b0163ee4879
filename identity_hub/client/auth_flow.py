"""Credential authentication flow.

One ``AuthFlowState`` value drives all UI feedback. States only change
through ``transition()``, which checks the ``TRANSITIONS`` table; spinners
and messages are pure projections of the state (``flow_message``,
``flow_progress``, ``is_loading``, ``is_error_state``).

A submission runs:

    checking_credentials -> checking_providers -> authenticating
        -> sending_verification (sign-up, or unverified sign-in)
        -> verifying_profile -> creating_session -> redirecting

with ``error`` and ``rate_limited`` reachable along the way.
"""

import enum
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from identity_hub.client.cancellation import CancellationToken, Cancelled
from identity_hub.client.identity import PASSWORD, SSO_PROVIDERS
from identity_hub.client.profile_api import ProfileApiError
from identity_hub.client.rate_limiter import PASSWORD_RESET, SIGN_IN, SIGN_UP
from identity_hub.errors import (
    AUTH_ERROR_MESSAGES,
    AuthError,
    InvalidTransitionError,
    PersistenceError,
    ProviderError,
    RateLimitedError,
    ValidationError,
    describe_error,
    format_time_remaining,
)
from identity_hub.validation import validate_email, validate_identifier, validate_password

logger = logging.getLogger(__name__)


class AuthStatus(enum.Enum):
    IDLE = 'idle'
    CHECKING_CREDENTIALS = 'checking_credentials'
    CHECKING_PROVIDERS = 'checking_providers'
    AUTHENTICATING = 'authenticating'
    SENDING_VERIFICATION = 'sending_verification'
    VERIFYING_PROFILE = 'verifying_profile'
    CREATING_SESSION = 'creating_session'
    REDIRECTING = 'redirecting'
    ERROR = 'error'
    RATE_LIMITED = 'rate_limited'


class AuthMethod(enum.Enum):
    SIGN_IN = 'sign_in'
    SIGN_UP = 'sign_up'
    PASSWORD_RESET = 'password_reset'


REDIRECT_VERIFY_EMAIL = 'verify_email'
REDIRECT_COMPLETE_PROFILE = 'complete_profile'
REDIRECT_DASHBOARD = 'dashboard'

_RESTARTABLE = {
    AuthStatus.CHECKING_CREDENTIALS, AuthStatus.CHECKING_PROVIDERS, AuthStatus.SENDING_VERIFICATION,
    AuthStatus.ERROR, AuthStatus.RATE_LIMITED, AuthStatus.IDLE,
}

TRANSITIONS = {
    AuthStatus.IDLE: frozenset(_RESTARTABLE),
    AuthStatus.CHECKING_CREDENTIALS: frozenset({
        AuthStatus.CHECKING_PROVIDERS, AuthStatus.RATE_LIMITED, AuthStatus.ERROR, AuthStatus.IDLE,
    }),
    AuthStatus.CHECKING_PROVIDERS: frozenset({AuthStatus.AUTHENTICATING, AuthStatus.ERROR, AuthStatus.IDLE}),
    AuthStatus.AUTHENTICATING: frozenset({
        AuthStatus.SENDING_VERIFICATION, AuthStatus.VERIFYING_PROFILE, AuthStatus.ERROR, AuthStatus.IDLE,
    }),
    AuthStatus.SENDING_VERIFICATION: frozenset({
        AuthStatus.VERIFYING_PROFILE, AuthStatus.REDIRECTING, AuthStatus.ERROR, AuthStatus.IDLE,
    }),
    AuthStatus.VERIFYING_PROFILE: frozenset({
        AuthStatus.CREATING_SESSION, AuthStatus.REDIRECTING, AuthStatus.ERROR, AuthStatus.IDLE,
    }),
    AuthStatus.CREATING_SESSION: frozenset({AuthStatus.REDIRECTING, AuthStatus.ERROR, AuthStatus.IDLE}),
    AuthStatus.REDIRECTING: frozenset(_RESTARTABLE),
    AuthStatus.ERROR: frozenset(_RESTARTABLE),
    AuthStatus.RATE_LIMITED: frozenset(_RESTARTABLE),
}

_missing = set(AuthStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"No transitions defined for {sorted(s.value for s in _missing)}")


@dataclass(frozen=True)
class AuthFlowState:
    status: AuthStatus = AuthStatus.IDLE
    method: AuthMethod = None
    email: str = None
    message: str = None
    error_code: str = None
    recoverable: bool = True
    action: str = None
    reset_at: float = None
    redirect_to: str = None
    profile_error: AuthError = None


def transition(state, status, **changes):
    """Return the state after moving to ``status``.

    Raises:
        InvalidTransitionError: If ``state.status`` may not move to ``status``
    """
    if status not in TRANSITIONS[state.status]:
        raise InvalidTransitionError(f'{state.status.value} -> {status.value}')

    if status in (AuthStatus.IDLE, AuthStatus.CHECKING_CREDENTIALS, AuthStatus.CHECKING_PROVIDERS) \
            and state.status in (AuthStatus.IDLE, AuthStatus.ERROR, AuthStatus.RATE_LIMITED, AuthStatus.REDIRECTING):
        # Fresh start: drop leftovers of the previous run
        state = AuthFlowState()
    elif status not in (AuthStatus.ERROR, AuthStatus.RATE_LIMITED):
        state = replace(state, message=None, error_code=None, recoverable=True, action=None, reset_at=None)

    return replace(state, status=status, **changes)


def error_state(state, error):
    error = describe_error(error)
    if isinstance(error, RateLimitedError):
        raise ValueError('Use the rate_limited status for RateLimitedError')
    return transition(state, AuthStatus.ERROR, message=error.user_message, error_code=error.code,
                      recoverable=error.recoverable, action=error.action)


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

_MESSAGES = {
    AuthStatus.CHECKING_CREDENTIALS: 'Checking your details...',
    AuthStatus.CHECKING_PROVIDERS: 'Looking up your account...',
    AuthStatus.SENDING_VERIFICATION: 'Sending verification email...',
    AuthStatus.VERIFYING_PROFILE: 'Updating your profile...',
    AuthStatus.CREATING_SESSION: 'Signing you in...',
    AuthStatus.REDIRECTING: 'Redirecting...',
}

_PROGRESS = {
    AuthStatus.IDLE: 0,
    AuthStatus.CHECKING_CREDENTIALS: 10,
    AuthStatus.CHECKING_PROVIDERS: 25,
    AuthStatus.AUTHENTICATING: 45,
    AuthStatus.SENDING_VERIFICATION: 60,
    AuthStatus.VERIFYING_PROFILE: 75,
    AuthStatus.CREATING_SESSION: 90,
    AuthStatus.REDIRECTING: 100,
    AuthStatus.ERROR: 0,
    AuthStatus.RATE_LIMITED: 0,
}


def flow_message(state, now=None):
    """User-facing line of text for ``state``, or None."""
    if state.status in (AuthStatus.ERROR, AuthStatus.IDLE):
        return state.message
    if state.status is AuthStatus.RATE_LIMITED:
        remaining = max(0.0, (state.reset_at or 0) - (now if now is not None else time.time()))
        return f'Too many attempts. Please try again in {format_time_remaining(remaining)}.'
    if state.status is AuthStatus.AUTHENTICATING:
        return 'Creating your account...' if state.method is AuthMethod.SIGN_UP else 'Signing in...'
    if state.status is AuthStatus.REDIRECTING and state.message:
        return state.message
    return _MESSAGES.get(state.status)


def flow_progress(state):
    return _PROGRESS[state.status]


def is_loading(state):
    return state.status not in (AuthStatus.IDLE, AuthStatus.ERROR, AuthStatus.RATE_LIMITED, AuthStatus.REDIRECTING)


def is_error_state(state):
    return state.status in (AuthStatus.ERROR, AuthStatus.RATE_LIMITED)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def _utcnow_iso():
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat()


class AuthFlowOrchestrator:
    """Sequence credential sign-in and sign-up against the injected services.

    Each run holds its own ``CancellationToken``; starting a new run,
    ``reset()`` or ``teardown()`` cancels the previous one, and any result
    it delivers late is discarded instead of applied.
    """

    def __init__(self, identity, api, discovery, limiter, email_tracker=None, clock=time.time, on_change=None):
        self.identity = identity
        self.api = api
        self.discovery = discovery
        self.limiter = limiter
        self.email_tracker = email_tracker
        self.clock = clock
        self.on_change = on_change
        self.state = AuthFlowState()
        self.session = None
        self._run = CancellationToken()
        self._torn_down = False
        self._known_accounts = {}

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    def _start_run(self):
        if self._torn_down:
            raise InvalidTransitionError('Auth flow has been torn down')
        self._run.cancel()
        self._run = CancellationToken()
        return self._run

    def _apply(self, run, new_state):
        if run is not self._run or run.cancelled:
            raise Cancelled()
        self.state = new_state
        if self.on_change is not None:
            self.on_change(new_state)
        return new_state

    def _move(self, run, status, **changes):
        return self._apply(run, transition(self.state, status, **changes))

    def _fail(self, run, error):
        error = describe_error(error)
        if isinstance(error, RateLimitedError):
            return self._move(run, AuthStatus.RATE_LIMITED, reset_at=self.clock() + error.reset_in,
                              message=error.user_message, error_code=error.code)
        logger.info(f"Auth flow error: {error.code}")
        return self._apply(run, error_state(self.state, error))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def check_identifier(self, identifier):
        """Look up which providers an identifier is registered with.

        Returns the provider list; the flow returns to idle afterwards.
        """
        run = self._start_run()
        try:
            kind, value = validate_identifier(identifier)
            self._move(run, AuthStatus.CHECKING_PROVIDERS)
            email = self._resolve_email(kind, value, run)
            providers = self.discovery.discover(email, cancel_token=run) if email else []
            run.raise_if_cancelled()
            self._known_accounts[value] = bool(providers) or kind == 'username'
            self._move(run, AuthStatus.IDLE, email=email)
            return providers
        except Cancelled:
            return []
        except AuthError as e:
            self._fail(run, e)
            return []

    def submit(self, identifier, password):
        """Sign in or sign up with an email/username and password."""
        run = self._start_run()
        try:
            return self._submit(run, identifier, password)
        except Cancelled:
            logger.info("Discarding result of a cancelled auth run")
            return self.state
        except InvalidTransitionError:
            raise
        except AuthError as e:
            return self._fail(run, e)
        except Exception as e:
            logger.exception(f"Unexpected auth flow failure: {e}")
            return self._fail(run, e)

    def send_password_reset(self, email):
        run = self._start_run()
        try:
            self.limiter.check(PASSWORD_RESET)
            self.limiter.record_attempt(PASSWORD_RESET)
            email = validate_email(email)
            self._move(run, AuthStatus.SENDING_VERIFICATION, method=AuthMethod.PASSWORD_RESET, email=email)
            self.identity.send_password_reset(email, cancel_token=run)
            return self._move(run, AuthStatus.IDLE, method=AuthMethod.PASSWORD_RESET, email=email,
                              message='Password reset email sent. Please check your inbox.')
        except Cancelled:
            return self.state
        except AuthError as e:
            return self._fail(run, e)

    def retry_profile_save(self):
        """Retry the session-metadata upsert that failed after sign-in."""
        user = self.identity.current_user
        if self.state.profile_error is None or user is None:
            raise InvalidTransitionError('No failed profile save to retry')
        run = self._run
        try:
            self.api.upsert_profile(user.id_token, self._session_metadata(user), cancel_token=run)
        except Cancelled:
            return self.state
        except Exception as e:
            logger.warning(f"Profile save retry failed: {e}")
            return self._apply(run, replace(self.state, profile_error=PersistenceError(detail=str(e))))
        return self._apply(run, replace(self.state, profile_error=None))

    def reset(self):
        self._run.cancel()
        self._run = CancellationToken()
        self.state = AuthFlowState()
        return self.state

    def teardown(self):
        self._torn_down = True
        self._run.cancel()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _submit(self, run, identifier, password):
        self._move(run, AuthStatus.CHECKING_CREDENTIALS)

        key = (identifier or '').strip().lower()
        bucket = SIGN_UP if self._known_accounts.get(key) is False else SIGN_IN
        self.limiter.check(bucket)
        # Counted before validation so malformed probes still use up attempts
        self.limiter.record_attempt(bucket)

        kind, value = validate_identifier(identifier)
        if not password:
            raise ValidationError('Please enter a password.', field='password')

        self._move(run, AuthStatus.CHECKING_PROVIDERS)
        email = self._resolve_email(kind, value, run)
        if email is None:
            raise ProviderError.from_code('user-not-found', detail=f'no account for username {value}')

        providers = self.discovery.discover(email, cancel_token=run)
        run.raise_if_cancelled()
        self._known_accounts[value] = bool(providers) or kind == 'username'

        if not providers and kind == 'email':
            return self._sign_up(run, email, password)
        if providers and PASSWORD not in providers and any(p in SSO_PROVIDERS for p in providers):
            raise ProviderError.from_code('sso-already-linked')
        return self._sign_in(run, email, password)

    def _resolve_email(self, kind, value, run):
        if kind == 'email':
            return value
        try:
            email = self.api.resolve_username(value, cancel_token=run)
        except ProfileApiError as e:
            logger.warning(f"Username lookup failed: {e}")
            raise ProviderError.from_code('network-request-failed', detail=str(e))
        run.raise_if_cancelled()
        return email.strip().lower() if email else None

    def _sign_up(self, run, email, password):
        self._move(run, AuthStatus.AUTHENTICATING, method=AuthMethod.SIGN_UP, email=email)
        validate_password(password)

        user = self.identity.create_credential(email, password, cancel_token=run)
        self._move(run, AuthStatus.SENDING_VERIFICATION)
        try:
            self.identity.send_verification_email(user, cancel_token=run)
            run.raise_if_cancelled()
        except Exception as e:
            self._rollback_credential(user)
            if isinstance(e, Cancelled):
                raise
            logger.warning(f"Verification email failed after sign-up, credential removed: {e}")
            raise ProviderError.from_code('verification-email-failed', detail=str(e))

        if self.email_tracker is not None:
            self.email_tracker.start(user)
        self.discovery.clear(email)

        self._move(run, AuthStatus.VERIFYING_PROFILE)
        profile_error = self._upsert_metadata(user, run)
        self.identity.sign_out()
        return self._move(run, AuthStatus.REDIRECTING, redirect_to=REDIRECT_VERIFY_EMAIL,
                          message='Account created. Please check your email to verify your account.',
                          profile_error=profile_error)

    def _rollback_credential(self, user):
        try:
            self.identity.delete_credential(user)
            logger.info(f"Rolled back unverifiable credential {user.uid}")
        except Exception as e:
            logger.error(f"Failed to roll back credential {user.uid}: {e}")

    def _sign_in(self, run, email, password):
        self._move(run, AuthStatus.AUTHENTICATING, method=AuthMethod.SIGN_IN, email=email)
        user = self.identity.sign_in(email, password, cancel_token=run)
        run.raise_if_cancelled()

        if not user.email_verified:
            self._move(run, AuthStatus.SENDING_VERIFICATION)
            try:
                self.identity.send_verification_email(user, cancel_token=run)
                if self.email_tracker is not None:
                    self.email_tracker.start(user)
            except Cancelled:
                raise
            except Exception as e:
                logger.warning(f"Verification email resend on sign-in failed: {e}")
            finally:
                self.identity.sign_out()
            return self._move(run, AuthStatus.REDIRECTING, redirect_to=REDIRECT_VERIFY_EMAIL,
                              message=AUTH_ERROR_MESSAGES['EMAIL_NOT_VERIFIED'])

        self._move(run, AuthStatus.VERIFYING_PROFILE)
        profile_error = self._upsert_metadata(user, run)

        self._move(run, AuthStatus.CREATING_SESSION, profile_error=profile_error)
        try:
            self.session = self.api.create_session(user.id_token, cancel_token=run)
        except Cancelled:
            raise
        except Exception as e:
            logger.warning(f"Session creation failed: {e}")
            raise ProviderError.from_code('internal-error', detail=str(e))
        run.raise_if_cancelled()

        profile = (self.session or {}).get('user') or {}
        target = REDIRECT_DASHBOARD if profile.get('phone') else REDIRECT_COMPLETE_PROFILE
        return self._move(run, AuthStatus.REDIRECTING, redirect_to=target, profile_error=profile_error)

    def _session_metadata(self, user):
        metadata = {
            'last_sign_in': _utcnow_iso(),
            'providers': list(user.providers or [PASSWORD]),
            'email_verified': bool(user.email_verified),
        }
        if user.email:
            metadata['email'] = user.email
        return metadata

    def _upsert_metadata(self, user, run):
        """Best-effort upsert; returns a PersistenceError instead of raising."""
        try:
            self.api.upsert_profile(user.id_token, self._session_metadata(user), cancel_token=run)
        except Cancelled:
            raise
        except Exception as e:
            logger.warning(f"Session metadata upsert failed for {user.uid}: {e}")
            return PersistenceError(detail=str(e))
        return None
