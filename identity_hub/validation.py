"""Shared input validators.

Used by the server routes and by the client state machines so that
malformed input is rejected locally before any network call.
"""

import re

from identity_hub.errors import ValidationError

# Email validation regex
EMAIL_REGEX = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

# Username validation: 3-20 chars, lowercase alphanumerics, underscores and dots
USERNAME_REGEX = re.compile(r'^[a-z0-9_.]{3,20}$')

RESERVED_USERNAMES = frozenset({
    'admin', 'administrator', 'root', 'support', 'help', 'system', 'api',
    'www', 'mail', 'info', 'contact', 'moderator', 'staff', 'null', 'undefined',
})

E164_REGEX = re.compile(r'^\+\d{6,15}$')
OTP_REGEX = re.compile(r'^\d{6}$')

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def is_email(value):
    return bool(value) and bool(EMAIL_REGEX.match(value.strip()))


def validate_email(email):
    """Return the trimmed, lower-cased email or raise ValidationError."""
    if not email or not isinstance(email, str):
        raise ValidationError('Email is required.', field='email')
    email = email.strip().lower()
    if not EMAIL_REGEX.match(email):
        raise ValidationError('Please enter a valid email address.', field='email')
    return email


def username_error(username):
    """Return a message describing why ``username`` is unusable, or None."""
    if not username or not isinstance(username, str):
        return 'Username is required'

    username = username.strip().lower()
    if len(username) < 3:
        return 'Username must be at least 3 characters'
    if len(username) > 20:
        return 'Username must be at most 20 characters'
    if not USERNAME_REGEX.match(username):
        return 'Username can only contain letters, numbers, underscores and dots'
    if username.startswith('.') or username.endswith('.'):
        return 'Username cannot start or end with a dot'
    if '..' in username:
        return 'Username cannot contain consecutive dots'
    if username in RESERVED_USERNAMES:
        return 'This username is reserved'
    return None


def validate_username(username):
    """Return the normalized username or raise ValidationError."""
    error = username_error(username)
    if error:
        raise ValidationError(error, field='username')
    return username.strip().lower()


def validate_password(password):
    """Check sign-up password strength.

    Raises:
        ValidationError: If the password is too short, too long, or lacks
            a lowercase letter, an uppercase letter or a digit
    """
    if not password:
        raise ValidationError('Please enter a password.', field='password')
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f'Password must be at least {PASSWORD_MIN_LENGTH} characters.', field='password')
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationError(f'Password must be at most {PASSWORD_MAX_LENGTH} characters.', field='password')
    if not re.search(r'[a-z]', password) or not re.search(r'[A-Z]', password) or not re.search(r'\d', password):
        raise ValidationError(
            'Password must contain an uppercase letter, a lowercase letter and a number.',
            field='password',
        )
    return password


def validate_identifier(identifier):
    """Classify a sign-in identifier.

    Returns:
        Tuple of (kind, value) where kind is 'email' or 'username'

    Raises:
        ValidationError: If the identifier is neither
    """
    if not identifier or not isinstance(identifier, str) or not identifier.strip():
        raise ValidationError('Please enter your email or username.', field='identifier')

    identifier = identifier.strip()
    if '@' in identifier:
        return 'email', validate_email(identifier)
    return 'username', validate_username(identifier)


def normalize_e164(phone):
    """Normalize a phone number to E.164 (``+`` followed by digits only).

    Spaces, dashes, dots and parentheses are stripped. Anything else, or a
    number without a leading ``+``, is rejected.

    Returns:
        Normalized phone number, e.g. '+919876543210'

    Raises:
        ValidationError: If the number is not E.164-like
    """
    if not phone or not isinstance(phone, str):
        raise ValidationError('Phone number is required.', field='phone')

    cleaned = re.sub(r'[\s\-().]', '', phone.strip())
    if not E164_REGEX.match(cleaned):
        raise ValidationError(
            'Enter the phone number with country code, e.g. +919876543210.',
            field='phone',
        )
    return cleaned


def is_valid_otp(code):
    return isinstance(code, str) and bool(OTP_REGEX.match(code))


def mask_phone(phone):
    """Return a log-safe form of a phone number (last four digits)."""
    if not phone:
        return '<none>'
    return f"***{phone[-4:]}"
