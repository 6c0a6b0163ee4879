"""Email verification tracking with capped exponential resend backoff."""

import enum
import logging
import time

from identity_hub.client.rate_limiter import EMAIL_RESEND
from identity_hub.errors import AuthError, InvalidTransitionError, RateLimitedError

logger = logging.getLogger(__name__)

INITIAL_DELAY = 20.0
MAX_COOLDOWN = 300.0
MAX_RESENDS = 5
VERIFICATION_EXPIRY = 30 * 60


class EmailVerificationStatus(enum.Enum):
    IDLE = 'idle'
    PENDING = 'pending'
    VERIFIED = 'verified'
    EXPIRED = 'expired'


def resend_delay(attempts, initial=INITIAL_DELAY, max_cooldown=MAX_COOLDOWN):
    """Seconds to wait before resend number ``attempts + 1``."""
    return min(initial * (2 ** max(0, attempts)), max_cooldown)


class EmailVerificationTracker:
    """Tracks one pending verification email and paces resends."""

    def __init__(self, identity, limiter=None, initial_delay=INITIAL_DELAY, max_cooldown=MAX_COOLDOWN,
                 max_resends=MAX_RESENDS, expiry=VERIFICATION_EXPIRY, clock=time.time):
        self.identity = identity
        self.limiter = limiter
        self.initial_delay = initial_delay
        self.max_cooldown = max_cooldown
        self.max_resends = max_resends
        self.expiry = expiry
        self.clock = clock
        self.reset()

    def reset(self):
        self._status = EmailVerificationStatus.IDLE
        self.user = None
        self.started_at = None
        self.last_sent_at = None
        self.resend_count = 0

    @property
    def status(self):
        if (self._status is EmailVerificationStatus.PENDING
                and self.clock() - self.started_at >= self.expiry):
            self._status = EmailVerificationStatus.EXPIRED
        return self._status

    def start(self, user):
        """Record that a verification email was just sent to ``user``."""
        now = self.clock()
        self._status = EmailVerificationStatus.PENDING
        self.user = user
        self.started_at = now
        self.last_sent_at = now
        self.resend_count = 0

    def seconds_until_resend(self):
        if self.last_sent_at is None:
            return 0.0
        delay = resend_delay(self.resend_count, self.initial_delay, self.max_cooldown)
        return max(0.0, self.last_sent_at + delay - self.clock())

    def can_resend(self):
        return (self.status in (EmailVerificationStatus.PENDING, EmailVerificationStatus.EXPIRED)
                and self.resend_count < self.max_resends
                and self.seconds_until_resend() == 0
                and not (self.limiter and self.limiter.is_limited(EMAIL_RESEND)))

    def resend(self, cancel_token=None):
        """Send the verification email again.

        Raises:
            InvalidTransitionError: If no verification is outstanding
            RateLimitedError: While the backoff or the email_resend bucket forbids it
            AuthError: Once the resend allowance is used up
        """
        status = self.status
        if status not in (EmailVerificationStatus.PENDING, EmailVerificationStatus.EXPIRED):
            raise InvalidTransitionError(f'Cannot resend verification email while {status.value}')
        if self.resend_count >= self.max_resends:
            raise AuthError('verification/too-many-resends',
                            'Too many verification emails sent. Please contact support.',
                            recoverable=False)

        wait = self.seconds_until_resend()
        if wait > 0:
            raise RateLimitedError(wait, bucket=EMAIL_RESEND)

        if self.limiter is not None:
            self.limiter.check(EMAIL_RESEND)
            self.limiter.record_attempt(EMAIL_RESEND)

        self.identity.send_verification_email(self.user, cancel_token=cancel_token)

        now = self.clock()
        self.resend_count += 1
        self.last_sent_at = now
        if status is EmailVerificationStatus.EXPIRED:
            self.started_at = now
        self._status = EmailVerificationStatus.PENDING
        logger.info(f"Verification email resent ({self.resend_count}/{self.max_resends})")

    def mark_verified(self):
        if self._status is EmailVerificationStatus.IDLE:
            raise InvalidTransitionError('No verification email outstanding')
        self._status = EmailVerificationStatus.VERIFIED
