import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import structlog

from checkout_service.config import Settings
from checkout_service.errors import GatewayError

logger = structlog.get_logger(component="gateway")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def fetch_attempts(settings: Settings) -> int:
    return 1 + max(settings.gateway_max_retries, 0)


def backoff_delay(settings: Settings, attempt: int) -> float:
    return settings.gateway_retry_backoff_seconds * attempt


def fetch_budget(settings: Settings) -> float:
    """Upper bound on one ``fetch_payment`` call: each attempt's timeout and
    the sleeps between attempts, plus one timeout of headroom."""
    attempts = fetch_attempts(settings)
    sleeps = sum(backoff_delay(settings, attempt) for attempt in range(1, attempts))
    return settings.gateway_timeout_seconds * (attempts + 1) + sleeps


class ProbeKind(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class GatewayPayment:
    payment_id: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    order_id: Optional[str] = None
    method: Optional[str] = None


@dataclass(frozen=True)
class ProbeResult:
    kind: ProbeKind
    payment: Optional[GatewayPayment] = None
    reason: Optional[str] = None

    @classmethod
    def found(cls, payment: GatewayPayment) -> "ProbeResult":
        return cls(ProbeKind.FOUND, payment=payment)

    @classmethod
    def not_found(cls) -> "ProbeResult":
        return cls(ProbeKind.NOT_FOUND, reason="payment_not_found")

    @classmethod
    def unavailable(cls, reason: str) -> "ProbeResult":
        return cls(ProbeKind.UNAVAILABLE, reason=reason)


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount: int
    currency: str


class RazorpayClient:
    """Thin async client over the Razorpay REST API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.razorpay_api_url,
            auth=(self.settings.razorpay_key_id or "", self.settings.razorpay_key_secret or ""),
            timeout=self.settings.gateway_timeout_seconds,
            transport=self._transport,
        )

    async def fetch_payment(self, payment_id: str) -> ProbeResult:
        """Ask the gateway for its own record of ``payment_id``.

        Never raises for network trouble: timeouts, transport errors and
        unexpected responses come back as ``ProbeKind.UNAVAILABLE`` so the
        caller can fall back to signature verification.
        """
        attempts = fetch_attempts(self.settings)
        reason = "not_attempted"

        async with self._client() as client:
            for attempt in range(1, attempts + 1):
                try:
                    response = await client.get(f"/v1/payments/{payment_id}")
                except httpx.TimeoutException:
                    reason = "timeout"
                except httpx.TransportError as exc:
                    reason = f"transport_error: {exc.__class__.__name__}"
                else:
                    if response.status_code == 404:
                        logger.info("probe_not_found", payment_id=payment_id)
                        return ProbeResult.not_found()
                    if response.is_success:
                        return self._parse_payment(payment_id, response)
                    reason = f"http_{response.status_code}"
                    if response.status_code not in RETRYABLE_STATUS_CODES:
                        break

                logger.warning("probe_attempt_failed", payment_id=payment_id, attempt=attempt, reason=reason)
                if attempt < attempts and self.settings.gateway_retry_backoff_seconds > 0:
                    await asyncio.sleep(backoff_delay(self.settings, attempt))

        logger.warning("probe_unavailable", payment_id=payment_id, reason=reason)
        return ProbeResult.unavailable(reason)

    @staticmethod
    def _parse_payment(payment_id: str, response: httpx.Response) -> ProbeResult:
        try:
            data = response.json()
        except ValueError:
            return ProbeResult.unavailable("invalid_json")

        status = data.get("status")
        if not status:
            return ProbeResult.unavailable("missing_status")

        payment = GatewayPayment(
            payment_id=data.get("id") or payment_id,
            status=str(status),
            amount=data.get("amount"),
            currency=data.get("currency"),
            order_id=data.get("order_id"),
            method=data.get("method"),
        )
        logger.info("probe_found", payment_id=payment.payment_id, status=payment.status)
        return ProbeResult.found(payment)

    async def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        payload = {"amount": amount, "currency": currency, "receipt": receipt}
        try:
            async with self._client() as client:
                response = await client.post("/v1/orders", json=payload)
                response.raise_for_status()
                data = response.json()
            order = GatewayOrder(
                order_id=data["id"],
                amount=data.get("amount", amount),
                currency=data.get("currency", currency),
            )
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("gateway_order_failed", receipt=receipt, error=str(exc))
            raise GatewayError()

        logger.info("gateway_order_created", receipt=receipt, gateway_order_id=order.order_id)
        return order
