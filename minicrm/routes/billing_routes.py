from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from minicrm.billing.plans import PLAN_CATALOG
from minicrm.errors import ValidationError
from minicrm.security.auth import admin_required, current_user_id
from minicrm.services.subscription_service import get_subscription_service

bp = Blueprint("billing", __name__, url_prefix="/api/billing")


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@bp.route("/plans", methods=["GET"])
def list_plans():
    return jsonify({"plans": [definition.to_dict() for definition in PLAN_CATALOG.values()]}), 200


@bp.route("/subscriptions", methods=["POST"])
@jwt_required()
def create_subscription():
    """Start a recurring subscription checkout for the current user."""
    data = _json_body()
    if not data.get("plan"):
        raise ValidationError("plan is required")
    result = get_subscription_service().create(current_user_id(), data["plan"])
    return jsonify(result), 201


@bp.route("/subscriptions/cancel", methods=["POST"])
@jwt_required()
def cancel_subscription():
    data = _json_body()
    result = get_subscription_service().cancel(
        current_user_id(),
        data.get("subscriptionRef"),
        data.get("cancelAtCycleEnd", False),
    )
    return jsonify(result), 200


@bp.route("/subscriptions/verify", methods=["POST"])
@jwt_required()
def verify_subscription():
    data = _json_body()
    result = get_subscription_service().verify_after_checkout(
        current_user_id(),
        subscription_ref=data.get("subscriptionRef"),
        order_ref=data.get("orderRef"),
        payment_ref=data.get("paymentRef"),
        signature=data.get("signature"),
    )
    return jsonify(result), 200


@bp.route("/subscriptions/sync", methods=["POST"])
@jwt_required()
def sync_subscription():
    return jsonify(get_subscription_service().sync_own(current_user_id())), 200


@bp.route("/subscriptions/current", methods=["GET"])
@jwt_required()
def current_subscription():
    return jsonify(get_subscription_service().get_current_subscription(current_user_id())), 200


@bp.route("/subscriptions/<subscription_ref>/payment", methods=["GET"])
@jwt_required()
def subscription_payment(subscription_ref):
    result = get_subscription_service().get_payment_details(current_user_id(), subscription_ref)
    return jsonify(result), 200


@bp.route("/one-time/orders", methods=["POST"])
@jwt_required()
def create_one_time_order():
    data = _json_body()
    if not data.get("plan"):
        raise ValidationError("plan is required")
    result = get_subscription_service().start_one_time_purchase(
        current_user_id(),
        data["plan"],
        data.get("durationMonths", 1),
    )
    return jsonify(result), 201


@bp.route("/limits/<resource_kind>", methods=["GET"])
@jwt_required()
def check_limit(resource_kind):
    return jsonify(get_subscription_service().check_can_create(resource_kind, current_user_id())), 200


@bp.route("/admin/sync", methods=["POST"])
@admin_required
def sync_all_subscriptions():
    return jsonify(get_subscription_service().sync_all()), 200
