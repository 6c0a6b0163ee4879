"""
Tests for identity token verification.
"""

import datetime
import time

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from conftest import TEST_TOKEN_SECRET, make_identity_token
from identity_hub.services import firebase
from identity_hub.services.firebase import (
    FirebaseTokenVerifier,
    IdentityClaims,
    InvalidIdentityToken,
    SharedSecretTokenVerifier,
)

PROJECT_ID = 'identity-hub-test'


@pytest.fixture(scope='module')
def signing_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'securetoken')])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=1))
            .sign(key, hashes.SHA256()))
    pem = cert.public_bytes(serialization.Encoding.PEM).decode('utf-8')
    return key, pem


class FakeCertsResponse:

    def __init__(self, certs):
        self.certs = certs

    def raise_for_status(self):
        pass

    def json(self):
        return self.certs


def firebase_token(key, kid='kid-1', **overrides):
    now = int(time.time())
    payload = {
        'iss': f'https://securetoken.google.com/{PROJECT_ID}',
        'aud': PROJECT_ID,
        'sub': 'subject-1',
        'iat': now,
        'exp': now + 3600,
        'phone_number': '+919876543210',
        'firebase': {'sign_in_provider': 'phone'},
    }
    payload.update(overrides)
    return jwt.encode(payload, key, algorithm='RS256', headers={'kid': kid})


class TestFirebaseTokenVerifier:

    def test_verifies_google_signed_token(self, signing_key, monkeypatch):
        key, pem = signing_key
        calls = []

        def fake_get(url, timeout=None):
            calls.append(url)
            return FakeCertsResponse({'kid-1': pem})

        monkeypatch.setattr(firebase.requests, 'get', fake_get)
        verifier = FirebaseTokenVerifier(PROJECT_ID)

        claims = verifier.verify(firebase_token(key))
        verifier.verify(firebase_token(key))

        assert claims.subject == 'subject-1'
        assert claims.phone == '+919876543210'
        assert claims.provider == 'phone'
        assert len(calls) == 1

    def test_wrong_audience_rejected(self, signing_key, monkeypatch):
        key, pem = signing_key
        monkeypatch.setattr(firebase.requests, 'get', lambda url, timeout=None: FakeCertsResponse({'kid-1': pem}))

        with pytest.raises(InvalidIdentityToken):
            FirebaseTokenVerifier(PROJECT_ID).verify(firebase_token(key, aud='other-project'))

    def test_unknown_kid_refreshes_once(self, signing_key, monkeypatch):
        key, pem = signing_key
        calls = []

        def fake_get(url, timeout=None):
            calls.append(url)
            return FakeCertsResponse({'kid-1': pem})

        monkeypatch.setattr(firebase.requests, 'get', fake_get)

        with pytest.raises(InvalidIdentityToken):
            FirebaseTokenVerifier(PROJECT_ID).verify(firebase_token(key, kid='rotated'))
        assert len(calls) == 2

    def test_hs256_token_rejected(self):
        with pytest.raises(InvalidIdentityToken):
            FirebaseTokenVerifier(PROJECT_ID).verify(make_identity_token())

    def test_garbage_rejected(self):
        with pytest.raises(InvalidIdentityToken):
            FirebaseTokenVerifier(PROJECT_ID).verify('not-a-jwt')


class TestSharedSecretTokenVerifier:

    def test_round_trip_claims(self):
        token = make_identity_token(subject='s1', email='a@example.com', email_verified=True, provider='password')

        claims = SharedSecretTokenVerifier(TEST_TOKEN_SECRET).verify(token)

        assert claims.subject == 's1'
        assert claims.email == 'a@example.com'
        assert claims.email_verified is True
        assert claims.provider == 'password'

    def test_wrong_secret(self):
        with pytest.raises(InvalidIdentityToken):
            SharedSecretTokenVerifier('another-secret-long-enough-for-hs256').verify(make_identity_token())

    def test_missing_subject(self):
        with pytest.raises(InvalidIdentityToken):
            IdentityClaims.from_payload({'iat': 1})
