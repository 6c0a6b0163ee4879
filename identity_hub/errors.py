"""Authentication error taxonomy.

Every failure that can reach a user is an ``AuthError`` carrying a stable
``code``, a safe ``user_message``, whether it is ``recoverable`` and an
optional corrective ``action``. Raw provider text never ends up in
``user_message``.
"""

GENERIC_ERROR_MESSAGE = 'Something went wrong. Please try again.'

ACTION_RETRY = 'retry'
ACTION_RESEND = 'resend'
ACTION_CHANGE_NUMBER = 'change_number'
ACTION_CONTACT_SUPPORT = 'contact_support'


class AuthError(Exception):
    """Base class for user-facing authentication failures."""

    def __init__(self, code, user_message, recoverable=True, action=None, detail=None):
        super().__init__(detail or user_message)
        self.code = code
        self.user_message = user_message
        self.recoverable = recoverable
        if not recoverable and action is None:
            action = ACTION_CONTACT_SUPPORT
        self.action = action
        self.detail = detail

    def to_dict(self):
        return {
            'code': self.code,
            'message': self.user_message,
            'recoverable': self.recoverable,
            'action': self.action,
        }

    def __repr__(self):
        return f'<{type(self).__name__} {self.code}>'


class ValidationError(AuthError):
    """Malformed local input, detected before any network call."""

    def __init__(self, user_message, field=None):
        super().__init__('validation', user_message, recoverable=True)
        self.field = field


# code -> (user message, recoverable, action)
PROVIDER_ERROR_MESSAGES = {
    'invalid-email': ('Please enter a valid email address.', True, None),
    'user-disabled': ('This account has been disabled. Please contact support.', False, ACTION_CONTACT_SUPPORT),
    'user-not-found': ('No account found with this email. Please sign up or check your email.', True, None),
    'wrong-password': ('Incorrect password. Please try again or reset your password.', True, None),
    'invalid-credential': ('Invalid email or password. Please try again.', True, None),
    'email-already-in-use': ('This email is already registered. Please sign in instead.', True, None),
    'weak-password': ('Password is too weak. Use at least 8 characters with letters and numbers.', True, None),
    'operation-not-allowed': ('This sign-in method is not enabled. Please contact support.', False, ACTION_CONTACT_SUPPORT),
    'credential-already-in-use': ('This credential is already linked to another account.', False, ACTION_CONTACT_SUPPORT),
    'provider-already-linked': (
        'Phone number already exists. Please sign in with that account or use a different phone number.',
        True, ACTION_CHANGE_NUMBER,
    ),
    'phone-number-already-exists': (
        'This phone number is already registered to another account.', True, ACTION_CHANGE_NUMBER,
    ),
    'requires-recent-login': ('Please sign in again to complete this action.', True, ACTION_RETRY),
    'too-many-requests': ('Too many attempts. Please wait a few minutes before trying again.', True, ACTION_RETRY),
    'quota-exceeded': ('SMS limit reached. Please try again tomorrow or contact support.', True, ACTION_CONTACT_SUPPORT),
    'invalid-phone-number': ('Please check your phone number format and try again.', True, ACTION_CHANGE_NUMBER),
    'invalid-verification-code': ('Invalid code. Please check the code and try again.', True, None),
    'code-expired': ('This code has expired. Please request a new one.', True, ACTION_RESEND),
    'captcha-check-failed': ('Security verification failed. Please try again.', True, ACTION_RETRY),
    'popup-blocked': ('Popup blocked by your browser. Allow popups or use the fallback option.', True, ACTION_RETRY),
    'popup-closed-by-user': ('Sign-in cancelled. Please try again.', True, ACTION_RETRY),
    'network-request-failed': ('Network error. Please check your connection and try again.', True, ACTION_RETRY),
    'missing-password': ('Please enter a password.', True, None),
    'sso-already-linked': (
        'This email is already associated with a Google account. '
        'Please use "Continue with Google" or set a password from your profile.',
        True, None,
    ),
    'verification-email-failed': (
        'Unable to send verification email. Please check your email address and try again.',
        True, ACTION_RETRY,
    ),
    'internal-error': ('An unexpected error occurred. Please try again or contact support.', True, ACTION_CONTACT_SUPPORT),
}


class ProviderError(AuthError):
    """Rejection reported by the identity provider."""

    @classmethod
    def from_code(cls, code, detail=None):
        message, recoverable, action = PROVIDER_ERROR_MESSAGES.get(
            code, (GENERIC_ERROR_MESSAGE, True, ACTION_RETRY)
        )
        return cls(code, message, recoverable=recoverable, action=action, detail=detail)


class ChallengeError(AuthError):
    """Failure to obtain a proof-of-humanity token."""

    RENDER_TIMEOUT = 'challenge/render-timeout'
    POPUP_BLOCKED = 'challenge/popup-blocked'
    UNAVAILABLE = 'challenge/unavailable'
    UNKNOWN = 'challenge/unknown'

    MESSAGES = {
        RENDER_TIMEOUT: 'Unable to load the security check. Please check your network or reload and try again.',
        POPUP_BLOCKED: 'Popup blocked. Please allow popups or use the fallback option.',
        UNAVAILABLE: 'Security check is unavailable right now. Please try again.',
        UNKNOWN: 'Security verification failed. Please try again.',
    }

    def __init__(self, kind=UNKNOWN, detail=None):
        super().__init__(kind, self.MESSAGES.get(kind, self.MESSAGES[self.UNKNOWN]),
                         recoverable=True, action=ACTION_RETRY, detail=detail)
        self.kind = kind


class RateLimitedError(AuthError):
    """Too many attempts; always recoverable and always carries a countdown."""

    def __init__(self, reset_in, bucket=None, user_message=None):
        self.reset_in = max(0.0, float(reset_in))
        self.bucket = bucket
        if user_message is None:
            user_message = f"Too many attempts. Please try again in {format_time_remaining(self.reset_in)}."
        super().__init__('rate-limited', user_message, recoverable=True, action=ACTION_RETRY)


class PersistenceError(AuthError):
    """Profile merge/save failure, kept distinct from authentication errors."""

    def __init__(self, detail=None, user_message=None):
        super().__init__(
            'profile/save-failed',
            user_message or "You're verified, but we couldn't save your profile. Please retry.",
            recoverable=True,
            action=ACTION_RETRY,
            detail=detail,
        )


class ConnectivityCooldownError(AuthError):
    """Automatic retries are suspended after repeated systemic failures."""

    def __init__(self, reset_in):
        self.reset_in = max(0.0, float(reset_in))
        super().__init__(
            'cooldown',
            'We are having trouble reaching the server. Please check your connection '
            f'and try again in {format_time_remaining(self.reset_in)}.',
            recoverable=True,
            action=ACTION_RETRY,
        )


class InvalidTransitionError(RuntimeError):
    """An action was invoked from a state that does not permit it."""


AUTH_ERROR_MESSAGES = {
    'EMAIL_NOT_VERIFIED': 'Please verify your email before signing in. We just sent you a new verification link.',
    'PHONE_REQUIRED': 'Phone number is required to complete your profile.',
    'PROFILE_INCOMPLETE': 'Please complete your profile to continue.',
}


def describe_error(error):
    """Coerce any exception into an ``AuthError`` safe to show a user."""
    if isinstance(error, AuthError):
        return error
    return AuthError('unknown', GENERIC_ERROR_MESSAGE, recoverable=True,
                     action=ACTION_RETRY, detail=str(error))


def format_time_remaining(seconds):
    """Format a countdown for display, e.g. ``"2 minutes"``."""
    if not seconds or seconds <= 0:
        return '0 seconds'

    total = int(-(-seconds // 1))  # ceil
    minutes = total // 60
    hours = minutes // 60

    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    return f"{total} second{'s' if total > 1 else ''}"
