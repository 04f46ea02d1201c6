import json
from datetime import datetime
from unittest.mock import Mock, patch

import pytest
import requests

from minicrm.billing.security import compute_signature
from minicrm.billing.state_machine import EventKind
from minicrm.errors import GatewayRejected, GatewayUnavailable
from minicrm.services.gateway_client import Capability, GatewayCustomer, supports
from minicrm.services.razorpay_service import RazorpayGateway

NOW = datetime(2024, 1, 1, 0, 0, 0)
REQUEST = "minicrm.services.gateway_client.requests.request"


def response(status_code=200, body=None):
    mock = Mock()
    mock.status_code = status_code
    mock.ok = 200 <= status_code < 300
    mock.content = json.dumps(body or {}).encode()
    mock.json.return_value = body or {}
    return mock


@pytest.fixture
def razorpay():
    return RazorpayGateway("rzp_key", "rzp_secret", "whsec", base_url="https://api.test/v1", clock=lambda: NOW)


@pytest.fixture
def customer():
    return GatewayCustomer(name="Asha Rao", email="Asha@Example.com", phone="+919800000001")


def test_razorpay_supports_every_capability(razorpay):
    for capability in Capability:
        if capability == Capability.PLAN_AMOUNTS:
            assert not supports(razorpay, capability)
        else:
            assert supports(razorpay, capability)


def test_missing_credentials_fail_before_any_request(customer):
    gateway = RazorpayGateway(None, None)

    with patch(REQUEST) as mock_request:
        with pytest.raises(GatewayUnavailable):
            gateway.create_subscription("plan_x", customer, 12)
        with pytest.raises(GatewayUnavailable):
            gateway.create_order(24900, "INR", "rcpt_1")

    mock_request.assert_not_called()


def test_create_subscription_creates_customer_then_subscription(razorpay, customer):
    with patch(REQUEST) as mock_request:
        mock_request.side_effect = [
            response(body={"id": "cust_new"}),
            response(body={"id": "sub_1", "status": "created", "customer_id": "cust_new",
                           "short_url": "https://rzp.io/i/abc"}),
        ]

        ref = razorpay.create_subscription("plan_starter", customer, 12, notes={"user_id": "7"})

    assert ref.id == "sub_1"
    assert ref.customer_ref == "cust_new"
    assert ref.checkout_url == "https://rzp.io/i/abc"

    method, url = mock_request.call_args_list[1].args
    payload = mock_request.call_args_list[1].kwargs["json"]
    assert (method, url) == ("POST", "https://api.test/v1/subscriptions")
    assert payload["plan_id"] == "plan_starter"
    assert payload["customer_id"] == "cust_new"
    assert payload["total_count"] == 12
    assert payload["quantity"] == 1
    assert payload["customer_notify"] == 1
    assert payload["expire_by"] == int((datetime(2024, 1, 31) - datetime(1970, 1, 1)).total_seconds())
    assert payload["notes"] == {"user_id": "7"}
    assert mock_request.call_args_list[1].kwargs["timeout"] == 10
    assert mock_request.call_args_list[1].kwargs["auth"] == ("rzp_key", "rzp_secret")


def test_existing_customer_is_found_by_email(razorpay, customer):
    already_exists = response(400, {"error": {"code": "BAD_REQUEST_ERROR",
                                              "description": "Customer already exists for the merchant"}})
    listing = response(body={"items": [
        {"id": "cust_other", "email": "someone@example.com", "contact": "+911111111111"},
        {"id": "cust_asha", "email": "asha@example.com", "contact": "+919899999999"},
    ]})

    with patch(REQUEST) as mock_request:
        mock_request.side_effect = [already_exists, listing, response(body={"id": "sub_2", "status": "created"})]
        ref = razorpay.create_subscription("plan_pro", customer, 12)

    assert ref.customer_ref == "cust_asha"
    assert mock_request.call_args_list[1].kwargs["params"] == {"count": 100}


def test_existing_customer_is_found_by_contact(razorpay):
    customer = GatewayCustomer(name="No Email", email="", phone="+919800000009")
    already_exists = response(400, {"error": {"description": "Customer already exists for the merchant"}})
    listing = response(body={"items": [{"id": "cust_phone", "email": None, "contact": "+919800000009"}]})

    with patch(REQUEST) as mock_request:
        mock_request.side_effect = [already_exists, listing]
        assert razorpay.resolve_customer(customer) == "cust_phone"


def test_customer_conflict_without_match_is_surfaced(razorpay, customer):
    already_exists = response(400, {"error": {"description": "Customer already exists for the merchant"}})

    with patch(REQUEST) as mock_request:
        mock_request.side_effect = [already_exists, response(body={"items": []})]
        with pytest.raises(GatewayRejected) as exc_info:
            razorpay.create_subscription("plan_pro", customer, 12)

    assert "already exists" in exc_info.value.details


def test_stored_customer_ref_skips_customer_creation(razorpay):
    customer = GatewayCustomer(name="A", email="a@example.com", gateway_customer_ref="cust_saved")

    with patch(REQUEST) as mock_request:
        mock_request.return_value = response(body={"id": "sub_3", "status": "created"})
        ref = razorpay.create_subscription("plan_pro", customer, 6)

    assert mock_request.call_count == 1
    assert ref.customer_ref == "cust_saved"
    assert mock_request.call_args.kwargs["json"]["total_count"] == 6


def test_provider_error_description_is_passed_through(razorpay):
    with patch(REQUEST) as mock_request:
        mock_request.return_value = response(400, {"error": {"code": "BAD_REQUEST_ERROR",
                                                             "description": "The id provided does not exist"}})
        with pytest.raises(GatewayRejected) as exc_info:
            razorpay.fetch_subscription("sub_missing")

    assert exc_info.value.details == "The id provided does not exist"
    assert exc_info.value.http_status == 400
    assert exc_info.value.code == "BAD_REQUEST_ERROR"


def test_network_failure_is_a_rejection_without_retry(razorpay):
    with patch(REQUEST) as mock_request:
        mock_request.side_effect = requests.Timeout("timed out")
        with pytest.raises(GatewayRejected):
            razorpay.fetch_payment("pay_1")

    assert mock_request.call_count == 1


@pytest.mark.parametrize("at_cycle_end, flag", [(True, 1), (False, 0)])
def test_cancel_sends_cycle_end_flag(razorpay, at_cycle_end, flag):
    with patch(REQUEST) as mock_request:
        mock_request.return_value = response(body={"id": "sub_1", "status": "cancelled"})
        snapshot = razorpay.cancel_subscription("sub_1", at_cycle_end)

    assert mock_request.call_args.args == ("POST", "https://api.test/v1/subscriptions/sub_1/cancel")
    assert mock_request.call_args.kwargs["json"] == {"cancel_at_cycle_end": flag}
    assert snapshot.status == "cancelled"


def test_fetch_subscription_converts_unix_timestamps(razorpay):
    body = {
        "id": "sub_1",
        "status": "active",
        "plan_id": "plan_pro",
        "customer_id": "cust_1",
        "start_at": 1704067200,
        "current_start": 1704067200,
        "current_end": 1706745600,
        "charge_at": 1706745600,
        "end_at": None,
        "notes": {"user_id": "3"},
    }
    with patch(REQUEST) as mock_request:
        mock_request.return_value = response(body=body)
        snapshot = razorpay.fetch_subscription("sub_1")

    assert snapshot.start_at == datetime(2024, 1, 1)
    assert snapshot.current_end == datetime(2024, 2, 1)
    assert snapshot.charge_at == datetime(2024, 2, 1)
    assert snapshot.end_at is None
    assert snapshot.notes == {"user_id": "3"}


def test_create_order(razorpay):
    with patch(REQUEST) as mock_request:
        mock_request.return_value = response(body={"id": "order_9", "amount": 49900, "currency": "INR",
                                                   "receipt": "rcpt_1", "status": "created"})
        order = razorpay.create_order(49900, "INR", "rcpt_1", {"plan": "pro"})

    assert order.id == "order_9"
    assert mock_request.call_args.kwargs["json"] == {
        "amount": 49900, "currency": "INR", "receipt": "rcpt_1", "notes": {"plan": "pro"},
    }


def test_payment_signature(razorpay):
    signature = compute_signature("rzp_secret", b"order_1|pay_1")

    assert razorpay.verify_payment_signature("order_1", "pay_1", signature) is True
    assert razorpay.verify_payment_signature("order_1", "pay_2", signature) is False


def test_parse_charged_event(razorpay):
    payload = {
        "event": "subscription.charged",
        "payload": {
            "subscription": {"entity": {"id": "sub_1", "status": "active", "plan_id": "plan_pro",
                                        "charge_at": 1706745600}},
            "payment": {"entity": {"id": "pay_1", "status": "captured", "amount": 49900, "currency": "INR"}},
        },
    }

    event = razorpay.parse_webhook_event(payload, event_id="evt_1")

    assert event.kind == EventKind.CHARGED
    assert event.subscription_ref == "sub_1"
    assert event.subscription.charge_at == datetime(2024, 2, 1)
    assert event.payment.status == "captured"
    assert event.payment.amount == 49900
    assert event.event_id == "evt_1"


def test_parse_unknown_event_has_no_kind(razorpay):
    event = razorpay.parse_webhook_event({"event": "invoice.paid", "payload": {}})

    assert event.kind is None
    assert event.subscription_ref is None


def test_latest_subscription_payment_follows_the_latest_invoice(razorpay):
    invoices = {"items": [{"id": "inv_1", "subscription_id": "sub_1", "payment_id": "pay_7"}]}
    payment = {
        "id": "pay_7",
        "status": "captured",
        "amount": 49900,
        "currency": "INR",
        "method": "card",
        "card": {"last4": "1111", "network": "Visa", "type": "credit", "issuer": "HDFC", "name": "Asha"},
        "email": "asha@example.com",
        "contact": "+919800000001",
        "created_at": 1704067200,
    }
    with patch(REQUEST) as mock_request:
        mock_request.side_effect = [response(body=invoices), response(body=payment)]
        snapshot = razorpay.latest_subscription_payment("sub_1")

    first, second = mock_request.call_args_list
    assert first.args == ("GET", "https://api.test/v1/invoices")
    assert first.kwargs["params"] == {"subscription_id": "sub_1", "count": 1}
    assert second.args == ("GET", "https://api.test/v1/payments/pay_7")
    assert snapshot.to_dict() == {
        "id": "pay_7",
        "status": "captured",
        "amount": 49900,
        "currency": "INR",
        "method": "card",
        "card": {"last4": "1111", "network": "Visa", "type": "credit", "issuer": "HDFC"},
        "vpa": None,
        "bank": None,
        "wallet": None,
        "email": "asha@example.com",
        "contact": "+919800000001",
        "createdAt": "2024-01-01T00:00:00",
    }


def test_latest_subscription_payment_without_paid_invoice(razorpay):
    with patch(REQUEST) as mock_request:
        mock_request.return_value = response(body={"items": [{"id": "inv_1", "payment_id": None}]})

        assert razorpay.latest_subscription_payment("sub_1") is None

    assert mock_request.call_count == 1
