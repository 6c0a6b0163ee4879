"""Auth routes package.

This package organizes authentication-related routes into submodules:
- lookup: username resolution, username availability and provider checks
- session: server session issuance from a verified identity token
"""

from flask import Blueprint

auth_bp = Blueprint('auth', __name__)

# Import all route modules (registers routes on auth_bp)
from identity_hub.routes.auth import lookup  # noqa: E402,F401
from identity_hub.routes.auth import session  # noqa: E402,F401
