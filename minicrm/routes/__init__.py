from .billing_routes import bp as billing_bp
from .webhook_routes import bp as webhooks_bp


def register_blueprints(app):
    app.register_blueprint(billing_bp)
    app.register_blueprint(webhooks_bp)
