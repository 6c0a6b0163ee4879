"""Server session routes.

A client that has completed authentication with the identity provider
exchanges its identity token here for a server session token, issued by
Flask-JWT-Extended and also set as an http-only cookie.
"""

from flask import jsonify, current_app
from flask_jwt_extended import (
    create_access_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    unset_jwt_cookies,
)
from identity_hub.routes.auth import auth_bp
from identity_hub.services.profile_mapping import flatten
from identity_hub.services.profile_service import ProfileService
from identity_hub.utils.auth import identity_token_required


@auth_bp.route('/session', methods=['POST'])
@identity_token_required
def create_session(claims):
    """Issue a session for a verified identity."""
    record = ProfileService().fetch(claims)

    additional_claims = {'provider': claims.provider}
    if record:
        additional_claims['profile_id'] = record['id']

    access_token = create_access_token(identity=claims.subject, additional_claims=additional_claims)
    current_app.logger.info(f"Session created for subject {claims.subject} via {claims.provider}")

    response = jsonify({
        'message': 'Session created',
        'access_token': access_token,
        'user': flatten(record),
    })
    set_access_cookies(response, access_token)
    return response, 200


@auth_bp.route('/session', methods=['GET'])
@jwt_required(optional=True)
def get_session():
    """Return the current session and its profile, if any."""
    subject = get_jwt_identity()
    if not subject:
        return jsonify({'authenticated': False, 'user': None}), 200

    record = ProfileService().fetch_by_subject(subject)
    return jsonify({
        'authenticated': True,
        'subject': subject,
        'provider': get_jwt().get('provider'),
        'user': flatten(record),
    }), 200


@auth_bp.route('/session', methods=['DELETE'])
def delete_session():
    """Clear the session cookie."""
    response = jsonify({'message': 'Signed out'})
    unset_jwt_cookies(response)
    return response, 200
