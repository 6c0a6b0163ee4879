"""Identifier lookup routes: username resolution and availability checks."""

from flask import request, jsonify, current_app
from identity_hub import limiter
from identity_hub.errors import ValidationError
from identity_hub.routes.auth import auth_bp
from identity_hub.services.profile_service import ProfileService
from identity_hub.validation import username_error, validate_email


def _lookup_limit():
    return current_app.config['USERNAME_LOOKUP_LIMIT']


def _check_limit():
    return current_app.config['USERNAME_CHECK_LIMIT']


@auth_bp.route('/username-to-email', methods=['POST'])
@limiter.limit(_lookup_limit)
def username_to_email():
    """Resolve a username to the email it signs in with."""
    data = request.get_json(silent=True) or {}
    username = data.get('username')

    if not username or not isinstance(username, str):
        return jsonify({'error': 'Username is required'}), 400

    error = username_error(username)
    if error:
        return jsonify({'error': error}), 400

    email = ProfileService().resolve_username(username)
    if not email:
        current_app.logger.info(f"Username lookup miss for {username.strip().lower()}")
        return jsonify({'error': 'Username not found'}), 404

    return jsonify({'email': email}), 200


@auth_bp.route('/check-username', methods=['POST'])
@limiter.limit(_check_limit)
def check_username():
    """Check whether a username can be claimed."""
    data = request.get_json(silent=True) or {}
    username = data.get('username')

    if not username or not isinstance(username, str):
        return jsonify({'error': 'Username is required'}), 400

    normalized = username.strip().lower()
    error = username_error(normalized)
    if error:
        return jsonify({'available': False, 'username': normalized, 'error': error}), 400

    available = ProfileService().is_username_available(normalized)
    return jsonify({'available': available, 'username': normalized}), 200


@auth_bp.route('/check-email', methods=['GET'])
@limiter.limit(_check_limit)
def check_email():
    """Return the sign-in providers recorded for an email."""
    try:
        email = validate_email(request.args.get('email', ''))
    except ValidationError as e:
        return jsonify({'error': e.user_message}), 400

    providers = ProfileService().providers_for_email(email)
    return jsonify({'email': email, 'exists': bool(providers), 'providers': providers}), 200
