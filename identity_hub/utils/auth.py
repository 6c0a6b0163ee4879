"""Shared authentication utilities.

Provides the decorator that protects profile routes with a freshly
verified identity token.
"""

import time
from functools import wraps
from flask import request, jsonify, current_app

from identity_hub.services.firebase import InvalidIdentityToken


def get_bearer_token():
    """Return the token from ``Authorization: Bearer <token>``, or None."""
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    token = auth_header.split(' ', 1)[1].strip()
    return token or None


def verify_identity_token(token):
    """Verify ``token`` with the app's identity verifier and check its age.

    Raises:
        InvalidIdentityToken: If the token fails verification or was issued
            longer ago than IDENTITY_TOKEN_MAX_AGE seconds
    """
    verifier = current_app.extensions['identity_verifier']
    claims = verifier.verify(token)

    max_age = current_app.config.get('IDENTITY_TOKEN_MAX_AGE')
    if max_age and claims.issued_at is not None and time.time() - claims.issued_at > max_age:
        raise InvalidIdentityToken('Token is too old, please sign in again')
    return claims


def identity_token_required(f):
    """
    Decorator to require a valid, fresh identity token.

    Verifies the bearer token and passes the decoded IdentityClaims as the
    first argument to the decorated function.

    Usage:
        @users_bp.route('/profile')
        @identity_token_required
        def get_profile(claims):
            return jsonify({'subject': claims.subject})
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        token = get_bearer_token()

        if not token:
            return jsonify({'error': 'Missing Authorization'}), 401

        try:
            claims = verify_identity_token(token)
        except InvalidIdentityToken as e:
            current_app.logger.warning(f"Rejected identity token: {e}")
            return jsonify({'error': 'Invalid token'}), 401

        return f(claims, *args, **kwargs)
    return decorated
