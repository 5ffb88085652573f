"""Payment verification and order reconciliation.

Three sources have to agree before an order leaves ``pending``: what the
browser relayed from the checkout widget, what Razorpay itself reports for the
payment, and the local order row. Verification is split in two steps:

1. decide (no side effects): ask the gateway first; only when its answer is
   unavailable or ambiguous, fall back to the callback signature;
2. commit: a single conditional UPDATE that only succeeds while the row is
   still ``pending``.

A caller that loses the race on step 2 reports whatever the winner stored, so
duplicate submissions always see the same terminal state.
"""

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import structlog
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from checkout_service.config import Settings
from checkout_service.errors import (
    CheckoutError,
    GatewayUnavailable,
    InvalidRequest,
    OrderNotFound,
    PaymentFailed,
    PersistenceError,
    SignatureMismatch,
)
from checkout_service.gateway import GatewayPayment, ProbeKind, ProbeResult, fetch_budget
from checkout_service.models import Order, OrderStatus, utcnow
from checkout_service.signature import verify_signature

logger = structlog.get_logger(component="reconciler")

CONFIRMED_GATEWAY_STATUSES = frozenset({"captured", "authorized"})
FAILED_GATEWAY_STATUSES = frozenset({"failed"})

SIGNATURE_MISMATCH = "signature_mismatch"
AMOUNT_MISMATCH = "amount_mismatch"


@dataclass(frozen=True)
class VerificationAttempt:
    gateway_order_id: str
    gateway_payment_id: str
    signature: Optional[str]
    order_id: str


class Decision(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class Outcome:
    decision: Decision
    source: str                      # gateway | signature
    gateway_status: Optional[str] = None
    reason: Optional[str] = None


def decide_from_probe(
    probe: ProbeResult,
    attempt: VerificationAttempt,
    expected_amount: Optional[int] = None,
    expected_currency: Optional[str] = None,
) -> Outcome:
    if probe.kind is ProbeKind.NOT_FOUND:
        return Outcome(Decision.FAILED, "gateway", reason="payment_not_found")

    if probe.kind is not ProbeKind.FOUND:
        return Outcome(Decision.INCONCLUSIVE, "gateway", reason=probe.reason)

    payment = probe.payment
    status = payment.status.lower()

    # A genuine payment always points back at the gateway order it was made for
    if payment.order_id and payment.order_id != attempt.gateway_order_id:
        return Outcome(Decision.INCONCLUSIVE, "gateway", status, "gateway_order_mismatch")

    if status in CONFIRMED_GATEWAY_STATUSES:
        if expected_amount is not None and payment.amount is None:
            return Outcome(Decision.INCONCLUSIVE, "gateway", status, "amount_unknown")
        if not _charge_matches(payment, expected_amount, expected_currency):
            return Outcome(Decision.FAILED, "gateway", status, AMOUNT_MISMATCH)
        return Outcome(Decision.CONFIRMED, "gateway", status)
    if status in FAILED_GATEWAY_STATUSES:
        return Outcome(Decision.FAILED, "gateway", status, "payment_failed")
    return Outcome(Decision.INCONCLUSIVE, "gateway", status, f"payment_{status}")


def _charge_matches(payment: GatewayPayment, expected_amount, expected_currency) -> bool:
    if expected_amount is not None and payment.amount != expected_amount:
        return False
    if expected_currency and payment.currency and payment.currency.upper() != expected_currency.upper():
        return False
    return True


def decide_from_signature(attempt: VerificationAttempt, secret: str) -> Outcome:
    if verify_signature(attempt.gateway_order_id, attempt.gateway_payment_id, secret, attempt.signature):
        return Outcome(Decision.CONFIRMED, "signature")
    return Outcome(Decision.FAILED, "signature", reason=SIGNATURE_MISMATCH)


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: str
    user_id: str
    status: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    total_amount: Optional[int] = None
    currency: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in OrderStatus.TERMINAL

    @classmethod
    def from_order(cls, order: Order) -> "OrderSnapshot":
        return cls(
            order_id=order.id,
            user_id=order.user_id,
            status=order.status,
            gateway_order_id=order.gateway_order_id,
            gateway_payment_id=order.gateway_payment_id,
            failure_reason=order.failure_reason,
            total_amount=order.total_amount,
            currency=order.currency,
        )


class OrderReconciler:
    """Sole writer of ``orders.status``."""

    def __init__(self, session_factory, payment_method: str = "Razorpay"):
        self.session_factory = session_factory
        self.payment_method = payment_method

    def _load(self, **criteria) -> Optional[OrderSnapshot]:
        db = self.session_factory()
        try:
            order = db.query(Order).filter_by(**criteria).first()
            return OrderSnapshot.from_order(order) if order else None
        except SQLAlchemyError as exc:
            logger.error("order_load_failed", error=str(exc), **criteria)
            raise CheckoutError()
        finally:
            db.close()

    def snapshot(self, order_id: str) -> OrderSnapshot:
        snapshot = self._load(id=order_id)
        if snapshot is None:
            raise OrderNotFound(order_id=order_id)
        return snapshot

    def find_by_gateway_order(self, gateway_order_id: str) -> Optional[OrderSnapshot]:
        return self._load(gateway_order_id=gateway_order_id)

    def commit(self, snapshot: OrderSnapshot, attempt: VerificationAttempt, outcome: Outcome):
        """Move a pending order to its terminal state.

        Returns ``(transitioned, snapshot)``. When another request got there
        first, ``transitioned`` is False and the snapshot is the stored row.
        """
        if outcome.decision is Decision.INCONCLUSIVE:
            raise ValueError("an inconclusive outcome cannot be committed")

        confirmed = outcome.decision is Decision.CONFIRMED
        values = {
            "status": OrderStatus.CONFIRMED if confirmed else OrderStatus.FAILED,
            "gateway_order_id": attempt.gateway_order_id or snapshot.gateway_order_id,
            "gateway_payment_id": attempt.gateway_payment_id,
            "failure_reason": None if confirmed else outcome.reason,
            "updated_at": utcnow(),
        }
        if confirmed:
            values["payment_method"] = self.payment_method

        db = self.session_factory()
        try:
            updated = (
                db.query(Order)
                .filter(Order.id == snapshot.order_id, Order.status == OrderStatus.PENDING)
                .update(values, synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "order_commit_failed",
                order_id=snapshot.order_id,
                payment_id=attempt.gateway_payment_id,
                decision=outcome.decision.value,
                error=str(exc),
            )
            message = None if confirmed else "Payment verification result could not be recorded"
            raise PersistenceError(
                message,
                payment_id=attempt.gateway_payment_id,
                order_id=snapshot.order_id,
            )
        finally:
            db.close()

        if not updated:
            return False, self.snapshot(snapshot.order_id)

        logger.info("order_transitioned", order_id=snapshot.order_id, status=values["status"], source=outcome.source)
        return True, replace(
            snapshot,
            status=values["status"],
            gateway_order_id=values["gateway_order_id"],
            gateway_payment_id=values["gateway_payment_id"],
            failure_reason=values["failure_reason"],
        )


@dataclass(frozen=True)
class VerificationResult:
    order_id: str
    payment_id: str
    newly_confirmed: bool
    recorded_payment_id: Optional[str] = None

    def to_response(self) -> dict:
        message = "Payment verified successfully" if self.newly_confirmed else "Payment already verified"
        body = {
            "success": True,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "message": message,
        }
        if self.recorded_payment_id and self.recorded_payment_id != self.payment_id:
            body["recorded_payment_id"] = self.recorded_payment_id
        return body


def failure_error(reason, payment_id, order_id, gateway_status=None, recorded_payment_id=None) -> CheckoutError:
    if recorded_payment_id == payment_id:
        recorded_payment_id = None
    if reason == SIGNATURE_MISMATCH:
        return SignatureMismatch(payment_id=payment_id, order_id=order_id, recorded_payment_id=recorded_payment_id)
    if reason == AMOUNT_MISMATCH:
        return PaymentFailed(
            "Payment amount does not match order total",
            payment_id=payment_id,
            order_id=order_id,
            gateway_status=gateway_status,
            reason=reason,
            recorded_payment_id=recorded_payment_id,
            action="contact_support",
        )
    return PaymentFailed(
        payment_id=payment_id,
        order_id=order_id,
        gateway_status=gateway_status,
        reason=reason,
        recorded_payment_id=recorded_payment_id,
    )


class PaymentVerifier:
    def __init__(self, settings: Settings, prober, reconciler: OrderReconciler):
        self.settings = settings
        self.prober = prober
        self.reconciler = reconciler

    async def probe(self, payment_id: str) -> ProbeResult:
        try:
            return await asyncio.wait_for(self.prober.fetch_payment(payment_id), timeout=fetch_budget(self.settings))
        except asyncio.TimeoutError:
            return ProbeResult.unavailable("timeout")
        except GatewayUnavailable:
            return ProbeResult.unavailable("gateway_unavailable")

    async def decide(self, attempt: VerificationAttempt, snapshot: Optional[OrderSnapshot] = None) -> Outcome:
        probe = await self.probe(attempt.gateway_payment_id)
        outcome = decide_from_probe(
            probe,
            attempt,
            expected_amount=snapshot.total_amount if snapshot else None,
            expected_currency=snapshot.currency if snapshot else None,
        )
        if outcome.decision is not Decision.INCONCLUSIVE:
            return outcome

        if not self.settings.signature_fallback_enabled:
            raise GatewayUnavailable(payment_id=attempt.gateway_payment_id, order_id=attempt.order_id)

        # Weaker path: reachable whenever the gateway can't be asked
        logger.warning(
            "signature_fallback_used",
            order_id=attempt.order_id,
            payment_id=attempt.gateway_payment_id,
            reason=outcome.reason,
        )
        return decide_from_signature(attempt, self.settings.razorpay_key_secret)

    def _from_stored(self, snapshot: OrderSnapshot, attempt: VerificationAttempt) -> VerificationResult:
        payment_id = attempt.gateway_payment_id
        if snapshot.status == OrderStatus.CONFIRMED:
            return VerificationResult(
                snapshot.order_id, payment_id, newly_confirmed=False, recorded_payment_id=snapshot.gateway_payment_id
            )
        raise failure_error(
            snapshot.failure_reason, payment_id, snapshot.order_id, recorded_payment_id=snapshot.gateway_payment_id
        )

    async def verify(self, attempt: VerificationAttempt, user_id: Optional[str] = None) -> VerificationResult:
        """Verify one checkout callback for ``attempt.order_id``.

        When ``user_id`` is given, orders owned by anyone else are reported as
        not found before the gateway is contacted.
        """
        self.settings.require_gateway_credentials()
        log = logger.bind(order_id=attempt.order_id, payment_id=attempt.gateway_payment_id)

        snapshot = await run_in_threadpool(self.reconciler.snapshot, attempt.order_id)
        if user_id is not None and snapshot.user_id != user_id:
            log.warning("verification_owner_mismatch", user_id=user_id)
            raise OrderNotFound(order_id=attempt.order_id)

        if snapshot.terminal:
            log.info("verification_short_circuit", status=snapshot.status)
            return self._from_stored(snapshot, attempt)

        if snapshot.gateway_order_id and snapshot.gateway_order_id != attempt.gateway_order_id:
            log.warning("gateway_order_mismatch", expected=snapshot.gateway_order_id, received=attempt.gateway_order_id)
            raise InvalidRequest(
                "Payment does not belong to this order",
                payment_id=attempt.gateway_payment_id,
                order_id=attempt.order_id,
            )

        outcome = await self.decide(attempt, snapshot)
        log.info("verification_decided", decision=outcome.decision.value, source=outcome.source,
                 gateway_status=outcome.gateway_status, reason=outcome.reason)

        transitioned, stored = await run_in_threadpool(self.reconciler.commit, snapshot, attempt, outcome)
        if not transitioned:
            log.info("verification_lost_race", status=stored.status)
            return self._from_stored(stored, attempt)

        if outcome.decision is Decision.CONFIRMED:
            return VerificationResult(attempt.order_id, attempt.gateway_payment_id, newly_confirmed=True)
        raise failure_error(outcome.reason, attempt.gateway_payment_id, attempt.order_id, outcome.gateway_status)

    async def apply_gateway_event(
        self,
        gateway_order_id: str,
        payment_id: str,
        status: str,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
    ):
        """Apply a server-to-server payment event to the order bound to ``gateway_order_id``.

        Only confirmations are written. A failed payment is one attempt on the
        order, and the buyer may still retry with another payment, so the order
        stays ``pending``.

        Returns ``(transitioned, snapshot)``, or ``None`` when no order is bound.
        """
        snapshot = await run_in_threadpool(self.reconciler.find_by_gateway_order, gateway_order_id)
        if snapshot is None:
            return None
        if snapshot.terminal:
            return False, snapshot

        attempt = VerificationAttempt(gateway_order_id, payment_id, None, snapshot.order_id)
        payment = GatewayPayment(
            payment_id=payment_id, status=status, amount=amount, currency=currency, order_id=gateway_order_id
        )
        outcome = decide_from_probe(ProbeResult.found(payment), attempt, snapshot.total_amount, snapshot.currency)
        if outcome.decision is Decision.FAILED:
            logger.info(
                "gateway_event_not_applied",
                order_id=snapshot.order_id,
                payment_id=payment_id,
                gateway_status=outcome.gateway_status,
                reason=outcome.reason,
            )
        if outcome.decision is not Decision.CONFIRMED:
            return False, snapshot
        return await run_in_threadpool(self.reconciler.commit, snapshot, attempt, outcome)
