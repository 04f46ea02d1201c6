import hashlib
import hmac


def compute_signature(secret, message):
    """Hex HMAC-SHA256 of ``message`` (bytes) keyed by ``secret``."""
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_hmac_signature(raw_body, signature, secret):
    """
    Verify a webhook signature over the untouched request body.

    ``raw_body`` must be the bytes received on the wire; a parsed or
    re-serialized payload is rejected outright since its bytes differ.
    """
    if not isinstance(raw_body, (bytes, bytearray)):
        raise TypeError("Webhook signatures are verified over the raw request bytes")
    if not secret or not signature:
        return False
    expected = compute_signature(secret, bytes(raw_body))
    return hmac.compare_digest(expected, signature.strip())


def verify_payment_signature(order_ref, payment_ref, signature, secret):
    """Checkout signature: HMAC-SHA256 over ``"<order_ref>|<payment_ref>"``."""
    if not secret or not signature or not order_ref or not payment_ref:
        return False
    expected = compute_signature(secret, f"{order_ref}|{payment_ref}".encode())
    return hmac.compare_digest(expected, signature)
