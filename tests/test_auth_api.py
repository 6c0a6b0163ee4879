"""
Tests for the auth lookup and session endpoints.
"""

import pytest
from faker import Faker

from conftest import TEST_TOKEN_SECRET
from identity_hub import create_app, limiter
from identity_hub.services.firebase import SharedSecretTokenVerifier

fake = Faker()


def create_profile(client, auth_headers, subject=None, **payload):
    response = client.post('/api/users/upsert', json=payload, headers=auth_headers(subject=subject))
    assert response.status_code == 200
    return response.get_json()['user']


class TestUsernameToEmail:
    """Tests for POST /api/auth/username-to-email"""

    def test_resolves_case_insensitively(self, client, db_session, auth_headers):
        create_profile(client, auth_headers, username='asha', email='asha@example.com')

        response = client.post('/api/auth/username-to-email', json={'username': 'ASHA'})

        assert response.status_code == 200
        assert response.get_json() == {'email': 'asha@example.com'}

    def test_unknown_username(self, client, db_session):
        response = client.post('/api/auth/username-to-email', json={'username': 'nobody'})

        assert response.status_code == 404
        assert response.get_json()['error'] == 'Username not found'

    def test_missing_username(self, client, db_session):
        response = client.post('/api/auth/username-to-email', json={})
        assert response.status_code == 400

    def test_invalid_username(self, client, db_session):
        response = client.post('/api/auth/username-to-email', json={'username': 'a b'})
        assert response.status_code == 400


class TestCheckUsername:
    """Tests for POST /api/auth/check-username"""

    def test_available(self, client, db_session):
        response = client.post('/api/auth/check-username', json={'username': 'Fresh_Name'})

        assert response.status_code == 200
        assert response.get_json() == {'available': True, 'username': 'fresh_name'}

    def test_taken(self, client, db_session, auth_headers):
        create_profile(client, auth_headers, username='asha')

        response = client.post('/api/auth/check-username', json={'username': 'Asha'})

        assert response.get_json()['available'] is False

    def test_reserved(self, client, db_session):
        response = client.post('/api/auth/check-username', json={'username': 'admin'})

        assert response.status_code == 400
        data = response.get_json()
        assert data['available'] is False
        assert 'reserved' in data['error']


@pytest.fixture
def limited_client(app):
    """Client for an app with per-caller lookup limits switched on."""
    limited_app = create_app('testing', RATELIMIT_ENABLED=True,
                             USERNAME_CHECK_LIMIT='2 per minute', USERNAME_LOOKUP_LIMIT='1 per minute',
                             IDENTITY_TOKEN_VERIFIER=SharedSecretTokenVerifier(TEST_TOKEN_SECRET))
    yield limited_app.test_client()
    limiter.reset()
    limiter.enabled = False


class TestLookupRateLimits:

    def test_check_username_limited_per_caller(self, limited_client):
        for _ in range(2):
            response = limited_client.post('/api/auth/check-username', json={'username': 'fresh_name'})
            assert response.status_code == 200

        response = limited_client.post('/api/auth/check-username', json={'username': 'fresh_name'})

        assert response.status_code == 429
        assert response.get_json()['error'] == 'Too many requests'

    def test_username_to_email_limited_per_caller(self, limited_client):
        assert limited_client.post('/api/auth/username-to-email', json={'username': 'nobody'}).status_code == 404

        response = limited_client.post('/api/auth/username-to-email', json={'username': 'nobody'})

        assert response.status_code == 429
        assert 'detail' in response.get_json()


class TestCheckEmail:
    """Tests for GET /api/auth/check-email"""

    def test_known_email(self, client, db_session, auth_headers):
        create_profile(client, auth_headers, email='asha@example.com', providers=['password'])

        response = client.get('/api/auth/check-email?email=Asha@Example.com')

        assert response.status_code == 200
        data = response.get_json()
        assert data['email'] == 'asha@example.com'
        assert data['exists'] is True
        assert 'password' in data['providers']

    def test_unknown_email(self, client, db_session):
        response = client.get('/api/auth/check-email?email=nobody@example.com')

        assert response.get_json() == {'email': 'nobody@example.com', 'exists': False, 'providers': []}

    def test_invalid_email(self, client, db_session):
        response = client.get('/api/auth/check-email?email=nope')
        assert response.status_code == 400


class TestSession:
    """Tests for /api/auth/session"""

    def test_create_session(self, client, db_session, auth_headers):
        subject = fake.uuid4()
        create_profile(client, auth_headers, subject=subject, name='Asha')

        response = client.post('/api/auth/session', headers=auth_headers(subject=subject, provider='password'))

        assert response.status_code == 200
        data = response.get_json()
        assert data['access_token']
        assert data['user']['name'] == 'Asha'
        assert any('access_token_cookie' in c for c in response.headers.getlist('Set-Cookie'))

    def test_create_session_requires_identity_token(self, client, db_session):
        response = client.post('/api/auth/session')
        assert response.status_code == 401

    def test_session_bearer_round_trip(self, client, db_session, auth_headers):
        subject = fake.uuid4()
        create_profile(client, auth_headers, subject=subject, name='Asha')
        token = client.post('/api/auth/session', headers=auth_headers(subject=subject)).get_json()['access_token']

        response = client.get('/api/auth/session', headers={'Authorization': f'Bearer {token}'})

        data = response.get_json()
        assert data['authenticated'] is True
        assert data['subject'] == subject
        assert data['provider'] == 'phone'
        assert data['user']['name'] == 'Asha'

    def test_anonymous_session(self, client, db_session):
        response = client.get('/api/auth/session')

        assert response.status_code == 200
        assert response.get_json() == {'authenticated': False, 'user': None}

    def test_sign_out_clears_cookie(self, client, db_session):
        response = client.delete('/api/auth/session')

        assert response.status_code == 200
        assert response.get_json()['message'] == 'Signed out'


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json() == {'status': 'ok'}
