"""
Tests for shared input validators.
"""

import pytest
from faker import Faker

from identity_hub.errors import ValidationError
from identity_hub.validation import (
    is_email,
    is_valid_otp,
    mask_phone,
    normalize_e164,
    username_error,
    validate_email,
    validate_identifier,
    validate_password,
    validate_username,
)

fake = Faker()


class TestEmail:

    def test_valid_email_lowercased(self):
        assert validate_email('  Alice@Example.COM ') == 'alice@example.com'

    def test_faker_emails_accepted(self):
        for _ in range(10):
            email = fake.email()
            assert is_email(email)
            assert validate_email(email) == email.lower()

    @pytest.mark.parametrize('value', ['', None, 'alice', 'alice@', '@example.com', 'a@b'])
    def test_invalid_email_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_email(value)
        assert exc_info.value.field == 'email'


class TestUsername:

    @pytest.mark.parametrize('value', ['alice', 'a_b.c', 'user123', 'ALICE'])
    def test_valid_usernames(self, value):
        assert username_error(value) is None
        assert validate_username(value) == value.lower()

    @pytest.mark.parametrize('value,fragment', [
        ('ab', 'at least 3'),
        ('a' * 21, 'at most 20'),
        ('bad name', 'only contain'),
        ('.alice', 'start or end'),
        ('alice.', 'start or end'),
        ('al..ice', 'consecutive'),
        ('admin', 'reserved'),
        ('', 'required'),
    ])
    def test_invalid_usernames(self, value, fragment):
        assert fragment in username_error(value)
        with pytest.raises(ValidationError):
            validate_username(value)


class TestPassword:

    def test_strong_password_accepted(self):
        assert validate_password('Secret123') == 'Secret123'

    @pytest.mark.parametrize('value', ['', 'Sh0rt', 'alllowercase1', 'ALLUPPERCASE1', 'NoDigitsHere', 'Aa1' * 50])
    def test_weak_password_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_password(value)
        assert exc_info.value.field == 'password'


class TestIdentifier:

    def test_email_identifier(self):
        assert validate_identifier('Alice@Example.com') == ('email', 'alice@example.com')

    def test_username_identifier(self):
        assert validate_identifier(' Alice ') == ('username', 'alice')

    @pytest.mark.parametrize('value', ['', '   ', None, 'a!', 'x@y'])
    def test_invalid_identifier(self, value):
        with pytest.raises(ValidationError):
            validate_identifier(value)


class TestPhone:

    @pytest.mark.parametrize('value,expected', [
        ('+919876543210', '+919876543210'),
        ('+91 98765 43210', '+919876543210'),
        ('+1 (415) 555-0100', '+14155550100'),
        ('+44.20.7946.0958', '+442079460958'),
    ])
    def test_normalized(self, value, expected):
        assert normalize_e164(value) == expected

    @pytest.mark.parametrize('value', ['', None, '9876543210', '+91abc', '+12', '+1234567890123456'])
    def test_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            normalize_e164(value)
        assert exc_info.value.field == 'phone'

    def test_mask_phone(self):
        assert mask_phone('+919876543210') == '***3210'
        assert mask_phone(None) == '<none>'


class TestOtp:

    @pytest.mark.parametrize('value,expected', [
        ('123456', True),
        ('12345', False),
        ('1234567', False),
        ('12a456', False),
        (None, False),
        (123456, False),
    ])
    def test_is_valid_otp(self, value, expected):
        assert is_valid_otp(value) is expected
