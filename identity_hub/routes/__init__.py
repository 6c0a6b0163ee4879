"""Routes package for the identity hub."""


def register_routes(app):
    """Register all route blueprints with the application."""
    from .auth import auth_bp
    from .users import users_bp

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(users_bp, url_prefix='/api/users')
