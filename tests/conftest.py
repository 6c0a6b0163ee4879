"""
Pytest configuration and fixtures for testing the identity hub.
"""

import os
import sys
import time
from concurrent.futures import Future

import jwt
import pytest
from faker import Faker

# Add the parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from identity_hub import create_app, db
from identity_hub.client.challenge import ChallengeProvider, ChallengeWidget
from identity_hub.client.identity import AuthUser, ConfirmationHandle, IdentityProvider
from identity_hub.client.rate_limiter import MemoryAttemptStore, RateLimiter
from identity_hub.errors import ProviderError
from identity_hub.services.firebase import SharedSecretTokenVerifier

fake = Faker()

TEST_TOKEN_SECRET = 'test-identity-token-secret-for-hs256-signing'


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    os.environ['FLASK_ENV'] = 'testing'

    app = create_app('testing', IDENTITY_TOKEN_VERIFIER=SharedSecretTokenVerifier(TEST_TOKEN_SECRET))

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client for each test function."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create a fresh database session for each test."""
    with app.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        yield db.session
        db.session.rollback()


def make_identity_token(subject=None, phone=None, email=None, name=None, provider='phone',
                        issued_at=None, email_verified=False, secret=TEST_TOKEN_SECRET):
    """Mint an HS256 identity token with the Firebase claim layout."""
    issued_at = int(issued_at if issued_at is not None else time.time())
    payload = {
        'sub': subject or fake.uuid4(),
        'iat': issued_at,
        'exp': issued_at + 3600,
        'auth_time': issued_at,
        'email_verified': email_verified,
        'firebase': {'sign_in_provider': provider},
    }
    if phone:
        payload['phone_number'] = phone
    if email:
        payload['email'] = email
    if name:
        payload['name'] = name
    return jwt.encode(payload, secret, algorithm='HS256')


@pytest.fixture
def identity_token():
    """Factory fixture for identity tokens."""
    return make_identity_token


@pytest.fixture
def auth_headers():
    """Factory fixture for bearer headers carrying a fresh identity token."""
    def _headers(**claims):
        return {'Authorization': f'Bearer {make_identity_token(**claims)}'}
    return _headers


def random_phone():
    return '+91' + fake.numerify('9#########')


# ---------------------------------------------------------------------------
# Client-side fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Controllable clock for time-dependent state machines."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeIdentityProvider(IdentityProvider):
    """In-memory identity provider that records every call."""

    def __init__(self):
        self.accounts = {}        # email -> dict(password, providers, verified, uid)
        self.calls = []
        self.failures = {}        # method name -> ProviderError to raise
        self.expired_codes = set()
        self.valid_code = '123456'
        self._current_user = None

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        error = self.failures.get(name)
        if error is not None:
            raise error

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    def add_account(self, email, password='Secret123', providers=('password',), verified=True):
        uid = fake.uuid4()
        self.accounts[email] = {'password': password, 'providers': list(providers),
                                'verified': verified, 'uid': uid}
        return uid

    def _user(self, email):
        account = self.accounts[email]
        return AuthUser(uid=account['uid'], email=email, email_verified=account['verified'],
                        id_token=f"token-{account['uid']}", providers=list(account['providers']))

    def fetch_providers(self, email, cancel_token=None):
        self._call('fetch_providers', email)
        account = self.accounts.get(email)
        return list(account['providers']) if account else []

    def create_credential(self, email, password, cancel_token=None):
        self._call('create_credential', email)
        if email in self.accounts:
            raise ProviderError.from_code('email-already-in-use')
        self.add_account(email, password, verified=False)
        self._current_user = self._user(email)
        return self._current_user

    def delete_credential(self, user, cancel_token=None):
        self._call('delete_credential', user.email)
        self.accounts.pop(user.email, None)
        self._current_user = None

    def sign_in(self, email, password, cancel_token=None):
        self._call('sign_in', email)
        account = self.accounts.get(email)
        if account is None:
            raise ProviderError.from_code('user-not-found')
        if account['password'] != password:
            raise ProviderError.from_code('wrong-password')
        self._current_user = self._user(email)
        return self._current_user

    def send_verification_email(self, user, cancel_token=None):
        self._call('send_verification_email', user.email)

    def send_password_reset(self, email, cancel_token=None):
        self._call('send_password_reset', email)

    def begin_phone_sign_in(self, phone, challenge_token, cancel_token=None):
        self._call('begin_phone_sign_in', phone, challenge_token)
        return ConfirmationHandle(session_info=f'session-{len(self.calls)}', phone=phone)

    def link_phone(self, user, phone, challenge_token, cancel_token=None):
        self._call('link_phone', phone, challenge_token)
        return ConfirmationHandle(session_info=f'session-{len(self.calls)}', phone=phone,
                                  link_id_token=user.id_token)

    def confirm(self, handle, code, cancel_token=None):
        self._call('confirm', handle.session_info, code)
        if handle.session_info in self.expired_codes:
            raise ProviderError.from_code('code-expired')
        if code != self.valid_code:
            raise ProviderError.from_code('invalid-verification-code')
        if self._current_user is None:
            self._current_user = AuthUser(uid=fake.uuid4(), phone=handle.phone, id_token='phone-token',
                                          providers=['phone'])
        else:
            self._current_user.phone = handle.phone
        return self._current_user

    def decode_token(self, token):
        return {'sub': token}

    @property
    def current_user(self):
        return self._current_user

    def sign_out(self):
        self.calls.append(('sign_out',))
        self._current_user = None


class FakeChallengeProvider(ChallengeProvider):

    def __init__(self):
        self.issued = 0
        self.error = None
        self.disposed = False

    def acquire_token(self, action, cancel_token=None):
        if self.error is not None:
            raise self.error
        self.issued += 1
        return f'challenge-{self.issued}'

    def dispose(self):
        self.disposed = True


class FakeWidget(ChallengeWidget):
    """Widget whose render and execute outcomes are scripted."""

    instances = []

    def __init__(self, render_ready=True, execute_results=None):
        self.render_ready = render_ready
        self.execute_results = list(execute_results or [])
        self.cleared = False
        self.executions = 0
        FakeWidget.instances.append(self)

    def render(self):
        future = Future()
        if self.render_ready is True:
            future.set_result(None)
        elif isinstance(self.render_ready, Exception):
            future.set_exception(self.render_ready)
        return future

    def execute(self, action):
        self.executions += 1
        if self.execute_results:
            result = self.execute_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return f'widget-token-{self.executions}'

    def clear(self):
        self.cleared = True


class FakeProfileApi:
    """Stand-in for ProfileApiClient backed by dicts."""

    def __init__(self):
        self.usernames = {}
        self.providers = {}
        self.upserts = []
        self.sessions = []
        self.upsert_error = None
        self.session_user = {'phone': '+919876543210'}

    def resolve_username(self, username, cancel_token=None):
        return self.usernames.get(username.lower())

    def check_email(self, email, cancel_token=None):
        return list(self.providers.get(email, []))

    def upsert_profile(self, id_token, payload, cancel_token=None):
        self.upserts.append((id_token, payload))
        if self.upsert_error is not None:
            raise self.upsert_error
        return dict(payload)

    def create_session(self, id_token, cancel_token=None):
        self.sessions.append(id_token)
        return {'access_token': f'session-{id_token}', 'user': self.session_user}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(store=MemoryAttemptStore(), clock=clock)


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def challenge():
    return FakeChallengeProvider()


@pytest.fixture
def profile_api():
    return FakeProfileApi()
