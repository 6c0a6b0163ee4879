"""Firebase Authentication over the Identity Toolkit REST API."""

import logging

import jwt
import requests

from identity_hub.client.cancellation import Cancelled
from identity_hub.client.identity import AuthUser, ConfirmationHandle, IdentityProvider
from identity_hub.errors import ProviderError
from identity_hub.validation import mask_phone

logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = 'https://identitytoolkit.googleapis.com/v1'
REQUEST_TIMEOUT = 10

# Identity Toolkit error message -> stable provider code
REST_ERROR_CODES = {
    'EMAIL_EXISTS': 'email-already-in-use',
    'EMAIL_NOT_FOUND': 'user-not-found',
    'INVALID_PASSWORD': 'wrong-password',
    'INVALID_LOGIN_CREDENTIALS': 'invalid-credential',
    'INVALID_EMAIL': 'invalid-email',
    'MISSING_PASSWORD': 'missing-password',
    'WEAK_PASSWORD': 'weak-password',
    'USER_DISABLED': 'user-disabled',
    'USER_NOT_FOUND': 'user-not-found',
    'OPERATION_NOT_ALLOWED': 'operation-not-allowed',
    'TOO_MANY_ATTEMPTS_TRY_LATER': 'too-many-requests',
    'CREDENTIAL_TOO_OLD_LOGIN_AGAIN': 'requires-recent-login',
    'INVALID_PHONE_NUMBER': 'invalid-phone-number',
    'MISSING_PHONE_NUMBER': 'invalid-phone-number',
    'INVALID_CODE': 'invalid-verification-code',
    'INVALID_SESSION_INFO': 'code-expired',
    'SESSION_EXPIRED': 'code-expired',
    'CODE_EXPIRED': 'code-expired',
    'QUOTA_EXCEEDED': 'quota-exceeded',
    'CAPTCHA_CHECK_FAILED': 'captcha-check-failed',
    'MISSING_RECAPTCHA_TOKEN': 'captcha-check-failed',
    'INVALID_RECAPTCHA_TOKEN': 'captcha-check-failed',
    'PHONE_NUMBER_EXISTS': 'phone-number-already-exists',
    'PROVIDER_ALREADY_LINKED': 'provider-already-linked',
    'CREDENTIAL_ALREADY_IN_USE': 'credential-already-in-use',
}


def provider_code_for(message):
    """Map a REST error message (e.g. ``'WEAK_PASSWORD : Password should be...'``)."""
    key = (message or '').split(' : ', 1)[0].strip()
    return REST_ERROR_CODES.get(key, 'internal-error' if not key else key.lower().replace('_', '-'))


class FirebaseIdentityProvider(IdentityProvider):
    """Identity provider backed by Firebase Authentication."""

    def __init__(self, api_key, base_url=IDENTITY_TOOLKIT_URL, session=None, continue_url='http://localhost'):
        if not api_key:
            raise ValueError('FIREBASE_API_KEY is required')
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.http = session or requests.Session()
        self.continue_url = continue_url
        self._current_user = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _post(self, endpoint, body, cancel_token=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        url = f"{self.base_url}/{endpoint}"
        try:
            response = self.http.post(url, params={'key': self.api_key}, json=body, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            logger.warning(f"Identity Toolkit request {endpoint} failed: {e}")
            raise ProviderError.from_code('network-request-failed', detail=str(e))

        if cancel_token is not None and cancel_token.cancelled:
            raise Cancelled()

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            message = (data.get('error') or {}).get('message', '')
            code = provider_code_for(message)
            logger.info(f"Identity Toolkit {endpoint} rejected: {code}")
            raise ProviderError.from_code(code, detail=message)
        return data

    def _user_from(self, data, fallback=None):
        fallback = fallback or {}
        return AuthUser(
            uid=data.get('localId') or fallback.get('localId'),
            email=data.get('email') or fallback.get('email'),
            email_verified=bool(data.get('emailVerified', fallback.get('emailVerified', False))),
            phone=data.get('phoneNumber') or fallback.get('phoneNumber'),
            display_name=data.get('displayName') or fallback.get('displayName'),
            id_token=data.get('idToken') or fallback.get('idToken'),
            refresh_token=data.get('refreshToken') or fallback.get('refreshToken'),
            providers=[p.get('providerId') for p in data.get('providerUserInfo', []) if p.get('providerId')],
        )

    def _lookup(self, tokens, cancel_token=None):
        data = self._post('accounts:lookup', {'idToken': tokens['idToken']}, cancel_token)
        users = data.get('users') or []
        return self._user_from(users[0] if users else {}, fallback=tokens)

    # ------------------------------------------------------------------
    # IdentityProvider
    # ------------------------------------------------------------------

    def fetch_providers(self, email, cancel_token=None):
        data = self._post('accounts:createAuthUri', {
            'identifier': email,
            'continueUri': self.continue_url,
        }, cancel_token)
        return list(data.get('signinMethods') or [])

    def create_credential(self, email, password, cancel_token=None):
        data = self._post('accounts:signUp', {
            'email': email,
            'password': password,
            'returnSecureToken': True,
        }, cancel_token)
        user = self._user_from(data)
        user.providers = ['password']
        self._current_user = user
        return user

    def delete_credential(self, user, cancel_token=None):
        self._post('accounts:delete', {'idToken': user.id_token}, cancel_token)
        if self._current_user is not None and self._current_user.uid == user.uid:
            self._current_user = None

    def sign_in(self, email, password, cancel_token=None):
        tokens = self._post('accounts:signInWithPassword', {
            'email': email,
            'password': password,
            'returnSecureToken': True,
        }, cancel_token)
        user = self._lookup(tokens, cancel_token)
        self._current_user = user
        return user

    def send_verification_email(self, user, cancel_token=None):
        self._post('accounts:sendOobCode', {
            'requestType': 'VERIFY_EMAIL',
            'idToken': user.id_token,
        }, cancel_token)

    def send_password_reset(self, email, cancel_token=None):
        self._post('accounts:sendOobCode', {
            'requestType': 'PASSWORD_RESET',
            'email': email,
        }, cancel_token)

    def begin_phone_sign_in(self, phone, challenge_token, cancel_token=None):
        data = self._post('accounts:sendVerificationCode', {
            'phoneNumber': phone,
            'recaptchaToken': challenge_token,
        }, cancel_token)
        logger.info(f"Verification code sent to {mask_phone(phone)}")
        return ConfirmationHandle(session_info=data['sessionInfo'], phone=phone)

    def link_phone(self, user, phone, challenge_token, cancel_token=None):
        data = self._post('accounts:sendVerificationCode', {
            'phoneNumber': phone,
            'recaptchaToken': challenge_token,
        }, cancel_token)
        logger.info(f"Link code sent to {mask_phone(phone)} for {user.uid}")
        return ConfirmationHandle(session_info=data['sessionInfo'], phone=phone, link_id_token=user.id_token)

    def confirm(self, handle, code, cancel_token=None):
        body = {'sessionInfo': handle.session_info, 'code': code}
        if handle.is_link:
            body['idToken'] = handle.link_id_token
        tokens = self._post('accounts:signInWithPhoneNumber', body, cancel_token)
        user = self._lookup(tokens, cancel_token)
        self._current_user = user
        return user

    def decode_token(self, token):
        # Signature is verified server-side; the client only reads claims
        return jwt.decode(token, options={'verify_signature': False})

    @property
    def current_user(self):
        return self._current_user

    def sign_out(self):
        self._current_user = None
