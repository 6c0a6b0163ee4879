"""Identity provider contract used by the client state machines."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

PASSWORD = 'password'
GOOGLE = 'google.com'
PHONE = 'phone'

# Third-party single-sign-on providers
SSO_PROVIDERS = frozenset({GOOGLE, 'apple.com', 'facebook.com', 'github.com', 'microsoft.com'})


@dataclass
class AuthUser:
    """An authenticated identity as seen by the client."""

    uid: str
    email: str = None
    email_verified: bool = False
    phone: str = None
    display_name: str = None
    id_token: str = None
    refresh_token: str = None
    providers: list = field(default_factory=list)


@dataclass(frozen=True)
class ConfirmationHandle:
    """Opaque reference to a dispatched phone code.

    ``link_id_token`` is set when the code will link the phone to an
    already signed-in identity instead of starting a new sign-in.
    """

    session_info: str
    phone: str
    link_id_token: str = None

    @property
    def is_link(self):
        return self.link_id_token is not None


class IdentityProvider(ABC):
    """Black-box identity service.

    Every method raises ``ProviderError`` with a stable code on rejection,
    and accepts an optional ``cancel_token``; a cancelled call raises
    ``Cancelled`` instead of returning a stale result.
    """

    @abstractmethod
    def fetch_providers(self, email, cancel_token=None):
        """Return the sign-in methods registered for ``email``."""

    @abstractmethod
    def create_credential(self, email, password, cancel_token=None):
        """Create a password account and sign it in; returns AuthUser."""

    @abstractmethod
    def delete_credential(self, user, cancel_token=None):
        """Delete the account behind ``user``."""

    @abstractmethod
    def sign_in(self, email, password, cancel_token=None):
        """Password sign-in; returns AuthUser."""

    @abstractmethod
    def send_verification_email(self, user, cancel_token=None):
        """Send the email-verification link to ``user``."""

    @abstractmethod
    def send_password_reset(self, email, cancel_token=None):
        """Send a password-reset link to ``email``."""

    @abstractmethod
    def begin_phone_sign_in(self, phone, challenge_token, cancel_token=None):
        """Dispatch a code for a new phone sign-in; returns ConfirmationHandle."""

    @abstractmethod
    def link_phone(self, user, phone, challenge_token, cancel_token=None):
        """Dispatch a code that links ``phone`` to ``user``; returns ConfirmationHandle."""

    @abstractmethod
    def confirm(self, handle, code, cancel_token=None):
        """Confirm a dispatched code; returns the signed-in AuthUser."""

    @abstractmethod
    def decode_token(self, token):
        """Return the claims of an identity token."""

    @property
    @abstractmethod
    def current_user(self):
        """The signed-in AuthUser, or None."""

    @abstractmethod
    def sign_out(self):
        """Forget the signed-in user."""
