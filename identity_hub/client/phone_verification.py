"""Phone one-time-passcode verification state machine.

    entering-phone -> challenge-acquiring -> awaiting-code -> verified

``error`` can be entered from any step and remembers the step it came
from, so the user retries without re-entering data. Actions return the
current ``VerificationSession``; user-facing failures are recorded on it
rather than raised. Calling an action from a step that does not allow it
raises ``InvalidTransitionError``.
"""

import enum
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from identity_hub.client.cancellation import CancellationToken, Cancelled
from identity_hub.client.rate_limiter import PHONE_RESEND
from identity_hub.errors import (
    AuthError,
    InvalidTransitionError,
    PersistenceError,
    RateLimitedError,
    ValidationError,
    describe_error,
)
from identity_hub.validation import is_valid_otp, mask_phone, normalize_e164

logger = logging.getLogger(__name__)

RESEND_INTERVAL = 30.0
CHALLENGE_ACTION = 'send_otp'
PHONE_VERIFIED_MARKER = 'phone_verified'


def _same_number(phone, other):
    try:
        return normalize_e164(phone) == normalize_e164(other)
    except ValidationError:
        return phone == other


class PhoneStep(enum.Enum):
    ENTERING_PHONE = 'entering-phone'
    CHALLENGE_ACQUIRING = 'challenge-acquiring'
    AWAITING_CODE = 'awaiting-code'
    VERIFIED = 'verified'
    ERROR = 'error'


@dataclass
class VerificationSession:
    phone_candidate: str = None
    confirmation_handle: object = None
    step: PhoneStep = PhoneStep.ENTERING_PHONE
    last_sent_at: float = None
    error: AuthError = None
    error_origin: PhoneStep = None
    verified_phone: str = None
    profile_error: AuthError = None

    @property
    def resume_step(self):
        """Step the session is in, or the one an error will return to."""
        return self.error_origin if self.step is PhoneStep.ERROR else self.step


class PhoneVerificationFlow:
    """Drive one phone verification for a single UI surface."""

    def __init__(self, identity, challenge, limiter, profile_sync=None, marker_store=None,
                 clock=time.time, executor=None, resend_interval=RESEND_INTERVAL):
        self.identity = identity
        self.challenge = challenge
        self.limiter = limiter
        self.profile_sync = profile_sync
        self.marker_store = marker_store if marker_store is not None else {}
        self.clock = clock
        self.resend_interval = resend_interval
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix='profile-save')
        self._run = CancellationToken()
        self.pending_save = None

        self.session = VerificationSession()
        verified = self.marker_store.get(PHONE_VERIFIED_MARKER)
        if verified:
            self.session.step = PhoneStep.VERIFIED
            self.session.verified_phone = verified
            self.session.phone_candidate = verified

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    @property
    def step(self):
        return self.session.step

    def seconds_until_resend(self):
        last = self.session.last_sent_at
        if last is None:
            return 0.0
        return max(0.0, last + self.resend_interval - self.clock())

    def can_send_code(self):
        return self.session.resume_step in (PhoneStep.ENTERING_PHONE, PhoneStep.CHALLENGE_ACQUIRING) \
            and self.session.step is not PhoneStep.CHALLENGE_ACQUIRING

    def can_resend(self):
        return (self.session.resume_step is PhoneStep.AWAITING_CODE
                and self.seconds_until_resend() == 0
                and not self.limiter.is_limited(PHONE_RESEND))

    def can_confirm(self):
        return self.session.resume_step is PhoneStep.AWAITING_CODE and self.session.confirmation_handle is not None

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def send_code(self, phone=None):
        """Dispatch a code to ``phone`` (or the current candidate)."""
        session = self.session
        resume = session.resume_step
        if session.step is PhoneStep.CHALLENGE_ACQUIRING or resume is PhoneStep.VERIFIED:
            raise InvalidTransitionError(f'Cannot send a code while {session.step.value}')

        if phone is not None:
            if resume is PhoneStep.AWAITING_CODE and not _same_number(phone, session.phone_candidate):
                raise InvalidTransitionError('Use change_number() to switch phone numbers')
            session.phone_candidate = phone

        origin = PhoneStep.AWAITING_CODE if resume is PhoneStep.AWAITING_CODE else PhoneStep.ENTERING_PHONE
        return self._dispatch(origin)

    def resend(self):
        """Send a new code for the phone already awaiting confirmation."""
        if self.session.resume_step is not PhoneStep.AWAITING_CODE:
            raise InvalidTransitionError(f'Cannot resend while {self.session.step.value}')
        return self._dispatch(PhoneStep.AWAITING_CODE)

    def confirm_code(self, code):
        """Confirm the six-digit ``code`` against the dispatched handle."""
        session = self.session
        if session.step is PhoneStep.VERIFIED:
            # Same phone re-confirmed: nothing to do
            return session
        if not self.can_confirm():
            raise InvalidTransitionError(f'No code awaiting confirmation while {session.step.value}')

        code = (code or '').strip()
        if not is_valid_otp(code):
            return self._fail(ValidationError('Enter the 6-digit code.', field='code'), PhoneStep.AWAITING_CODE)

        run = self._run
        try:
            user = self.identity.confirm(session.confirmation_handle, code, cancel_token=run)
            run.raise_if_cancelled()
        except Cancelled:
            logger.info("Discarding code confirmation from a cancelled run")
            return session
        except Exception as e:
            return self._fail(e, PhoneStep.AWAITING_CODE)

        phone = session.confirmation_handle.phone
        session.step = PhoneStep.VERIFIED
        session.error = None
        session.error_origin = None
        session.verified_phone = phone
        self.marker_store[PHONE_VERIFIED_MARKER] = phone
        logger.info(f"Phone {mask_phone(phone)} verified")

        self._save_profile(user, phone, run)
        return session

    def retry_profile_save(self):
        """Retry persisting the verified phone after a failed save."""
        if self.session.step is not PhoneStep.VERIFIED:
            raise InvalidTransitionError('Phone is not verified')
        user = self.identity.current_user
        if user is None:
            raise InvalidTransitionError('No signed-in user to save the profile for')
        return self._save_profile(user, self.session.verified_phone, self._run)

    def change_number(self):
        """Abandon the current number and start over."""
        self._restart()
        self.marker_store.pop(PHONE_VERIFIED_MARKER, None)
        self.session = VerificationSession()
        return self.session

    def teardown(self):
        """Cancel in-flight work and release the challenge widget."""
        self._run.cancel()
        self.challenge.dispose()
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _restart(self):
        self._run.cancel()
        self._run = CancellationToken()
        return self._run

    def _fail(self, error, origin):
        error = describe_error(error)
        session = self.session
        session.step = PhoneStep.ERROR
        session.error = error
        session.error_origin = origin
        logger.info(f"Phone verification error at {origin.value}: {error.code}")
        return session

    def _dispatch(self, origin):
        session = self.session

        try:
            phone = normalize_e164(session.phone_candidate)
        except ValidationError as e:
            return self._fail(e, origin)

        wait = self.seconds_until_resend()
        if wait > 0:
            return self._fail(
                RateLimitedError(wait, bucket=PHONE_RESEND,
                                 user_message=f'Please wait {int(wait + 0.999)} seconds before requesting another code.'),
                origin,
            )
        try:
            self.limiter.check(PHONE_RESEND)
        except RateLimitedError as e:
            return self._fail(e, origin)
        self.limiter.record_attempt(PHONE_RESEND)

        run = self._restart()
        session.phone_candidate = phone
        session.step = PhoneStep.CHALLENGE_ACQUIRING
        session.error = None

        try:
            challenge_token = self.challenge.acquire_token(CHALLENGE_ACTION, cancel_token=run)
            current = self.identity.current_user
            if current is not None:
                handle = self.identity.link_phone(current, phone, challenge_token, cancel_token=run)
            else:
                handle = self.identity.begin_phone_sign_in(phone, challenge_token, cancel_token=run)
            run.raise_if_cancelled()
        except Cancelled:
            logger.info("Discarding code dispatch from a cancelled run")
            return session
        except Exception as e:
            return self._fail(e, origin)

        session.confirmation_handle = handle
        session.last_sent_at = self.clock()
        session.step = PhoneStep.AWAITING_CODE
        session.error_origin = None
        logger.info(f"Code dispatched to {mask_phone(phone)} ({'link' if handle.is_link else 'sign-in'})")
        return session

    def _save_profile(self, user, phone, run):
        if self.profile_sync is None or user is None or not user.id_token:
            return None

        session = self.session
        session.profile_error = None
        payload = {'phone': phone, 'phone_verified': True}

        def persist():
            try:
                self.profile_sync.save(user.id_token, payload, cancel_token=run)
            except Cancelled:
                return
            except Exception as e:
                if not run.cancelled:
                    logger.warning(f"Saving verified phone {mask_phone(phone)} failed: {e}")
                    session.profile_error = e if isinstance(e, AuthError) else PersistenceError(detail=str(e))

        self.pending_save = self._executor.submit(persist)
        return self.pending_save
