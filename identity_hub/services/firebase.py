"""Firebase identity token verification.

The frontend completes authentication with Firebase (phone OTP, password or
Google) and sends the resulting ID token as a bearer token. This service
verifies the token signature against Google's published certificates and
decodes it into ``IdentityClaims``.
"""

import logging
import time
from dataclasses import dataclass, field

import jwt
import requests
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

logger = logging.getLogger(__name__)

# Google's public keys endpoint for verifying Firebase tokens
GOOGLE_CERTS_URL = 'https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com'
KEYS_CACHE_DURATION = 3600  # 1 hour


class InvalidIdentityToken(ValueError):
    """The bearer token is missing, malformed, expired or not trusted."""


@dataclass
class IdentityClaims:
    """Decoded facts from a verified identity token."""

    subject: str
    phone: str = None
    email: str = None
    name: str = None
    provider: str = None
    issued_at: int = None
    auth_time: int = None
    email_verified: bool = False
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload):
        if not payload.get('sub'):
            raise InvalidIdentityToken('Token does not contain subject (user ID)')

        firebase_info = payload.get('firebase') or {}
        return cls(
            subject=payload['sub'],
            phone=payload.get('phone_number'),
            email=payload.get('email'),
            name=payload.get('name'),
            provider=firebase_info.get('sign_in_provider') or payload.get('provider'),
            issued_at=payload.get('iat'),
            auth_time=payload.get('auth_time') or payload.get('iat'),
            email_verified=bool(payload.get('email_verified')),
            raw=payload,
        )


class FirebaseTokenVerifier:
    """Verify RS256 Firebase ID tokens for one project."""

    def __init__(self, project_id, certs_url=GOOGLE_CERTS_URL, cache_duration=KEYS_CACHE_DURATION):
        self.project_id = project_id
        self.issuer = f'https://securetoken.google.com/{project_id}'
        self.certs_url = certs_url
        self.cache_duration = cache_duration
        self._cached_keys = None
        self._keys_fetched_at = 0

    def get_public_keys(self, force_refresh=False):
        """Fetch Google's public keys, cached for ``cache_duration`` seconds.

        Returns a dict mapping key ID to public key object.
        """
        current_time = time.time()

        if (not force_refresh and self._cached_keys
                and (current_time - self._keys_fetched_at) < self.cache_duration):
            return self._cached_keys

        try:
            response = requests.get(self.certs_url, timeout=10)
            response.raise_for_status()
            certs_data = response.json()

            public_keys = {}
            for kid, cert_pem in certs_data.items():
                try:
                    cert = x509.load_pem_x509_certificate(cert_pem.encode('utf-8'), default_backend())
                    public_keys[kid] = cert.public_key()
                except Exception as e:
                    logger.warning(f"Failed to parse certificate for kid {kid}: {e}")
                    continue

            if not public_keys:
                raise InvalidIdentityToken("No valid public keys found in Google's response")

            self._cached_keys = public_keys
            self._keys_fetched_at = current_time
            return self._cached_keys

        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to fetch Google public keys: {e}")
            # Stale keys are better than none
            if self._cached_keys:
                return self._cached_keys
            raise InvalidIdentityToken('Unable to load token signing keys')

    def verify(self, id_token):
        """Verify an ID token and return its claims.

        Args:
            id_token: The Firebase ID token from the frontend

        Returns:
            IdentityClaims

        Raises:
            InvalidIdentityToken: If the token is invalid, expired, or
                verification fails
        """
        if not id_token:
            raise InvalidIdentityToken('ID token is required')

        try:
            unverified_header = jwt.get_unverified_header(id_token)
        except InvalidTokenError as e:
            raise InvalidIdentityToken(f'Invalid token: {e}')

        kid = unverified_header.get('kid')
        alg = unverified_header.get('alg')
        if not kid:
            raise InvalidIdentityToken('Token missing key ID (kid)')
        if alg != 'RS256':
            raise InvalidIdentityToken(f'Unexpected algorithm: {alg}')

        public_keys = self.get_public_keys()
        if kid not in public_keys:
            # Keys rotate; refresh once before giving up
            public_keys = self.get_public_keys(force_refresh=True)
            if kid not in public_keys:
                raise InvalidIdentityToken(f'Token signed with unknown key: {kid}')

        try:
            decoded = jwt.decode(
                id_token,
                public_keys[kid],
                algorithms=['RS256'],
                audience=self.project_id,
                issuer=self.issuer,
            )
        except ExpiredSignatureError:
            raise InvalidIdentityToken('Token has expired')
        except InvalidTokenError as e:
            raise InvalidIdentityToken(f'Invalid token: {e}')

        return IdentityClaims.from_payload(decoded)


class SharedSecretTokenVerifier:
    """HS256 verifier for local development and tests.

    Tokens are minted with PyJWT using the same ``secret`` and carry the
    Firebase claim layout (``sub``, ``phone_number``, ``firebase.sign_in_provider``).
    """

    def __init__(self, secret, audience=None):
        self.secret = secret
        self.audience = audience

    def verify(self, id_token):
        if not id_token:
            raise InvalidIdentityToken('ID token is required')
        options = {'verify_aud': self.audience is not None}
        try:
            decoded = jwt.decode(id_token, self.secret, algorithms=['HS256'],
                                 audience=self.audience, options=options)
        except ExpiredSignatureError:
            raise InvalidIdentityToken('Token has expired')
        except InvalidTokenError as e:
            raise InvalidIdentityToken(f'Invalid token: {e}')
        return IdentityClaims.from_payload(decoded)
