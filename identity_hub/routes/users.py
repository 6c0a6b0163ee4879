"""Profile routes: reconciliation upsert and fetch."""

from flask import Blueprint, request, jsonify, current_app
from identity_hub.services.profile_mapping import flatten
from identity_hub.services.profile_service import ProfileService, ProfileServiceError
from identity_hub.utils.auth import identity_token_required

users_bp = Blueprint('users', __name__)


@users_bp.route('/upsert', methods=['POST'])
@identity_token_required
def upsert_profile(claims):
    """Merge a partial profile payload into the caller's canonical record."""
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data():
            return jsonify({'ok': False, 'error': 'Request body must be JSON'}), 400
        data = {}

    if not isinstance(data, dict):
        return jsonify({'ok': False, 'error': 'Profile payload must be a JSON object'}), 400

    try:
        record = ProfileService().upsert(claims, data)
    except ProfileServiceError as e:
        current_app.logger.warning(f"Profile upsert rejected for {claims.subject}: {e.message}")
        return jsonify({'ok': False, 'error': e.message}), e.status_code

    return jsonify({'ok': True, 'user': flatten(record)}), 200


@users_bp.route('/profile', methods=['GET'])
@identity_token_required
def get_profile(claims):
    """Return the caller's canonical record, or null if none exists yet."""
    record = ProfileService().fetch(claims)
    return jsonify({'user': flatten(record)}), 200
