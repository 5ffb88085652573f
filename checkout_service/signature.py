"""HMAC-SHA256 signatures issued by Razorpay.

Checkout callbacks are signed over ``"{order_id}|{payment_id}"`` with the API
key secret; webhooks are signed over the raw request body with the webhook
secret. Both digests are lowercase hex and compared case-sensitively.
"""

import hashlib
import hmac

from checkout_service.errors import ConfigurationError


def _hex_hmac(secret: str, message: bytes) -> str:
    if not secret:
        # A missing key is a deployment problem, never a bad signature
        raise ConfigurationError()
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _matches(expected: str, claimed) -> bool:
    if not claimed:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), str(claimed).encode("utf-8"))


def compute_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    body = f"{gateway_order_id}|{gateway_payment_id}"
    return _hex_hmac(secret, body.encode("utf-8"))


def verify_signature(gateway_order_id: str, gateway_payment_id: str, secret: str, signature: str) -> bool:
    return _matches(compute_signature(gateway_order_id, gateway_payment_id, secret), signature)


def compute_webhook_signature(body: bytes, secret: str) -> str:
    return _hex_hmac(secret, body)


def verify_webhook_signature(body: bytes, secret: str, signature: str) -> bool:
    return _matches(compute_webhook_signature(body, secret), signature)
