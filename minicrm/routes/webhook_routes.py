import logging

from flask import Blueprint, abort, current_app, jsonify, request

from minicrm.errors import InvalidSignature
from minicrm.services.subscription_service import get_subscription_service

bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

logger = logging.getLogger(__name__)


@bp.route("/<provider>", methods=["POST"])
def gateway_webhook(provider):
    """
    Gateway callbacks. Authorized by signature only; the body is handed
    over as raw bytes so verification sees exactly what was sent.
    """
    gateway = current_app.extensions["billing_gateway"]
    if provider != gateway.name:
        logger.warning("Webhook for unconfigured provider", extra={"provider": provider})
        abort(404)

    signature = request.headers.get(gateway.webhook_signature_header)
    if not signature:
        raise InvalidSignature("Missing webhook signature")

    event_id = request.headers.get(gateway.event_id_header) if gateway.event_id_header else None
    raw_body = request.get_data(cache=False)

    result = get_subscription_service().webhook_handler(raw_body, signature, event_id=event_id)
    return jsonify(result), 200
