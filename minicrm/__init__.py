"""
MiniCRM billing service: subscriptions, payment-gateway reconciliation
and plan entitlements.
"""
import logging

from flask import Flask

from minicrm.cli import register_commands
from minicrm.config import get_config
from minicrm.error_handlers import register_error_handlers
from minicrm.extensions import init_extensions
from minicrm.logging_config import setup_logging
from minicrm.middleware.request_id import init_request_id_middleware
from minicrm.routes import register_blueprints
from minicrm.services.gateway_client import build_gateway_client

logger = logging.getLogger(__name__)


def create_app(config_name=None, *, gateway=None):
    """
    Application factory.

    ``gateway`` overrides the client built from BILLING_PROVIDER, which is
    how tests substitute a fake gateway.
    """
    config = get_config(config_name)
    config.validate()

    app = Flask(__name__)
    app.config.from_object(config)

    setup_logging(app)
    init_request_id_middleware(app)
    init_extensions(app)

    # Models must be imported before create_all / migrations see the metadata
    from minicrm import models  # noqa: F401

    app.extensions["billing_gateway"] = gateway or build_gateway_client(app.config)

    register_error_handlers(app)
    register_blueprints(app)
    register_commands(app)

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "ok", "provider": app.extensions["billing_gateway"].name}, 200

    logger.info("Application created", extra={"env": app.config.get("ENVIRONMENT")})
    return app
