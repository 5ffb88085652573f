class CheckoutError(Exception):
    status_code = 500
    message = "Payment verification failed"

    def __init__(self, message: str = None, **details):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details

    def to_response(self) -> dict:
        body = {"error": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ConfigurationError(CheckoutError):
    status_code = 500
    message = "Payment service configuration error"


class InvalidRequest(CheckoutError):
    status_code = 400
    message = "Invalid request"


class OrderNotFound(InvalidRequest):
    status_code = 404
    message = "Order not found"


class GatewayUnavailable(CheckoutError):
    # Only reaches the caller when signature fallback is switched off
    status_code = 503
    message = "Payment status could not be confirmed, please retry shortly"


class GatewayError(CheckoutError):
    status_code = 502
    message = "Failed to create payment order"


class SignatureMismatch(CheckoutError):
    status_code = 400
    message = "Invalid payment signature"

    def __init__(self, message: str = None, **details):
        details.setdefault("action", "contact_support")
        super().__init__(message, **details)


class PaymentFailed(CheckoutError):
    status_code = 400
    message = "Payment failed"


class PersistenceError(CheckoutError):
    status_code = 500
    message = "Payment verified but order status could not be recorded"
