# minicrm/extensions.py
"""
Flask extension instances.

Bound to the application inside ``create_app`` so that nothing here holds
application state at import time.
"""

import logging

from flask import jsonify
from flask_jwt_extended import JWTManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
jwt = JWTManager()
migrate = Migrate()

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize the database, migrations and JWT handling."""
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    setup_jwt_callbacks()
    logger.info("Extensions initialized", extra={"env": app.config.get("ENVIRONMENT")})
    return app


def setup_jwt_callbacks():
    """JSON bodies for authentication failures, matching the API error shape."""

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({
            "error": "token_expired",
            "details": "The token has expired. Please sign in again.",
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        return jsonify({
            "error": "invalid_token",
            "details": "Invalid token. Please provide a valid authentication token.",
        }), 401

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        return jsonify({
            "error": "authorization_required",
            "details": "Authentication required. Please provide a valid token.",
        }), 401


__all__ = ["db", "jwt", "migrate", "init_extensions"]
