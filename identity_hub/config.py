"""Application configuration.

Every value comes from the environment (``.env`` is loaded on package
import), with development-friendly defaults.
"""

import logging
import os
from datetime import timedelta


def _int_env(name, default):
    return int(os.getenv(name, default))


def parse_policy(value):
    """Parse a ``"<max_attempts>/<window_seconds>"`` bucket policy string.

    Returns:
        Tuple of (max_attempts, window_seconds)

    Raises:
        ValueError: If the string is malformed or not positive
    """
    try:
        attempts, window = value.split('/', 1)
        attempts, window = int(attempts), float(window)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid rate limit policy: {value!r}")
    if attempts <= 0 or window <= 0:
        raise ValueError(f"Rate limit policy must be positive: {value!r}")
    return attempts, window


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///identity_hub.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Server-issued session tokens
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(seconds=_int_env('JWT_ACCESS_TOKEN_EXPIRES', 2592000))
    JWT_TOKEN_LOCATION = ['headers', 'cookies']
    JWT_COOKIE_SECURE = os.getenv('JWT_COOKIE_SECURE', 'false').lower() in ('true', '1', 'yes')
    JWT_COOKIE_SAMESITE = 'Lax'

    # Identity provider (Firebase)
    FIREBASE_PROJECT_ID = os.getenv('FIREBASE_PROJECT_ID', 'identity-hub')
    FIREBASE_API_KEY = os.getenv('FIREBASE_API_KEY', '')
    IDENTITY_TOKEN_MAX_AGE = _int_env('IDENTITY_TOKEN_MAX_AGE', 3600)
    IDENTITY_TOKEN_VERIFIER = None

    # Shared state
    REDIS_URL = os.getenv('REDIS_URL')
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', REDIS_URL or 'memory://')
    RATELIMIT_HEADERS_ENABLED = True
    USERNAME_LOOKUP_LIMIT = os.getenv('USERNAME_LOOKUP_LIMIT', '10 per minute')
    USERNAME_CHECK_LIMIT = os.getenv('USERNAME_CHECK_LIMIT', '30 per minute')

    # Client bucket policies, "<max_attempts>/<window_seconds>"
    AUTH_RATE_LIMITS = {
        'sign_in': os.getenv('RATE_LIMIT_SIGN_IN', '5/900'),
        'sign_up': os.getenv('RATE_LIMIT_SIGN_UP', '3/3600'),
        'email_resend': os.getenv('RATE_LIMIT_EMAIL_RESEND', '5/3600'),
        'password_reset': os.getenv('RATE_LIMIT_PASSWORD_RESET', '3/86400'),
        'phone_resend': os.getenv('RATE_LIMIT_PHONE_RESEND', '5/3600'),
    }

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


class DevelopmentConfig(Config):
    DEBUG = False


class ProductionConfig(Config):
    JWT_COOKIE_SECURE = True


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', 'test-secret-key-for-testing-session-tokens')
    JWT_COOKIE_CSRF_PROTECT = False


config_by_name = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
}


def configure_logging(app):
    """Set the application and library log level from LOG_LEVEL."""
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger('identity_hub').setLevel(level)
