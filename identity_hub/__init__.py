from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_jwt_extended import JWTManager
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import os
from dotenv import load_dotenv

load_dotenv()

db = SQLAlchemy()
jwt = JWTManager()
limiter = Limiter(key_func=get_remote_address)


def create_app(config_name=None, **overrides):
    app = Flask(__name__)

    from identity_hub.config import config_by_name, configure_logging

    config_name = config_name or os.getenv('FLASK_ENV', 'development')
    app.config.from_object(config_by_name.get(config_name, config_by_name['development']))
    app.config.update(overrides)
    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    jwt.init_app(app)
    limiter.init_app(app)
    CORS(app, supports_credentials=True)

    from identity_hub.services.firebase import FirebaseTokenVerifier

    verifier = app.config.get('IDENTITY_TOKEN_VERIFIER')
    if verifier is None:
        verifier = FirebaseTokenVerifier(app.config['FIREBASE_PROJECT_ID'])
    app.extensions['identity_verifier'] = verifier

    with app.app_context():
        from identity_hub import models  # noqa: F401
        try:
            db.create_all()
        except Exception as e:
            app.logger.warning(f"Could not create database tables: {e}")

    from identity_hub.routes import register_routes
    register_routes(app)

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({'error': 'Too many requests', 'detail': str(e.description)}), 429

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({'error': 'Internal server error'}), 500

    @app.route('/health', methods=['GET'])
    def health():
        return {'status': 'ok'}, 200

    return app
