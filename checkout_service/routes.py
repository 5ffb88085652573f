import time
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from checkout_service.auth import verify_token
from checkout_service.config import Settings, load_settings
from checkout_service.database import SessionLocal
from checkout_service.enrollment import enroll_order, materialize_enrollments
from checkout_service.errors import InvalidRequest, OrderNotFound
from checkout_service.gateway import RazorpayClient
from checkout_service.models import Order, OrderItem, OrderStatus, utcnow
from checkout_service.reconciler import OrderReconciler, PaymentVerifier, VerificationAttempt

router = APIRouter()
logger = structlog.get_logger(component="routes")


def get_settings() -> Settings:
    return load_settings()


def get_gateway(settings: Settings = Depends(get_settings)) -> RazorpayClient:
    return RazorpayClient(settings)


class OrderItemRequest(BaseModel):
    course_id: str = Field(min_length=1)
    price: int


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest]
    currency: Optional[str] = None


class GatewayOrderRequest(BaseModel):
    amount: int
    currency: Optional[str] = None
    order_id: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    order_id: str = Field(min_length=1)

    def to_attempt(self) -> VerificationAttempt:
        return VerificationAttempt(
            gateway_order_id=self.razorpay_order_id,
            gateway_payment_id=self.razorpay_payment_id,
            signature=self.razorpay_signature,
            order_id=self.order_id,
        )


def _order_response(order: Order) -> dict:
    return {
        "order_id": order.id,
        "status": order.status,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "payment_method": order.payment_method,
        "payment_id": order.gateway_payment_id,
        "failure_reason": order.failure_reason,
        "course_ids": [item.course_id for item in order.items],
    }


def _owned_order(db, order_id: str, user_id: str) -> Order:
    order = db.get(Order, order_id)
    if not order or order.user_id != user_id:
        raise OrderNotFound(order_id=order_id)
    return order


@router.post("/orders")
def create_order(
    request: CreateOrderRequest,
    settings: Settings = Depends(get_settings),
    user_id: str = Depends(verify_token)
):
    if not request.items:
        raise InvalidRequest("Order must contain at least one course")
    if any(item.price < 0 for item in request.items):
        raise InvalidRequest("Invalid course price")

    total = sum(item.price for item in request.items)
    if total <= 0:
        raise InvalidRequest("Invalid amount")

    db = SessionLocal()
    try:
        order = Order(
            user_id=user_id,
            total_amount=total,
            currency=request.currency or settings.default_currency,
            status=OrderStatus.PENDING,
            payment_method=settings.payment_method_label,
        )
        order.items = [OrderItem(course_id=item.course_id, price=item.price) for item in request.items]
        db.add(order)
        db.commit()
        logger.info("order_created", order_id=order.id, user_id=user_id, total_amount=total)
        return _order_response(order)
    finally:
        db.close()


@router.get("/orders/{order_id}")
def get_order(order_id: str, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return _order_response(_owned_order(db, order_id, user_id))
    finally:
        db.close()


@router.post("/orders/{order_id}/enroll")
def enroll_confirmed_order(order_id: str, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        order = _owned_order(db, order_id, user_id)
        if order.status != OrderStatus.CONFIRMED:
            raise InvalidRequest("Order is not confirmed", order_id=order_id, status=order.status)
        result = enroll_order(db, order)
        return {"order_id": order_id, **result}
    finally:
        db.close()


def _check_payable(order_id: str, user_id: str, amount: int):
    db = SessionLocal()
    try:
        order = _owned_order(db, order_id, user_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidRequest("Order is no longer pending", order_id=order_id, status=order.status)
        if order.total_amount != amount:
            raise InvalidRequest("Amount does not match order total", order_id=order_id)
    finally:
        db.close()


def _store_gateway_order_id(order_id: str, gateway_order_id: str):
    db = SessionLocal()
    try:
        db.query(Order).filter(
            Order.id == order_id, Order.status == OrderStatus.PENDING
        ).update({"gateway_order_id": gateway_order_id, "updated_at": utcnow()}, synchronize_session=False)
        db.commit()
    finally:
        db.close()


@router.post("/create-razorpay-order")
async def create_razorpay_order(
    request: GatewayOrderRequest,
    settings: Settings = Depends(get_settings),
    gateway: RazorpayClient = Depends(get_gateway),
    user_id: str = Depends(verify_token)
):
    if request.amount <= 0:
        raise InvalidRequest("Invalid amount")
    settings.require_gateway_credentials()

    currency = request.currency or settings.default_currency
    if request.order_id:
        await run_in_threadpool(_check_payable, request.order_id, user_id, request.amount)
        receipt = f"receipt_{request.order_id}"
    else:
        receipt = f"receipt_{int(time.time() * 1000)}"

    gateway_order = await gateway.create_order(request.amount, currency, receipt)

    if request.order_id:
        await run_in_threadpool(_store_gateway_order_id, request.order_id, gateway_order.order_id)

    return {
        "order_id": gateway_order.order_id,
        "amount": gateway_order.amount,
        "currency": gateway_order.currency,
        "key_id": settings.razorpay_key_id,
    }


@router.post("/verify-razorpay-payment")
async def verify_razorpay_payment(
    request: VerifyPaymentRequest,
    settings: Settings = Depends(get_settings),
    gateway: RazorpayClient = Depends(get_gateway),
    user_id: str = Depends(verify_token)
):
    reconciler = OrderReconciler(SessionLocal, settings.payment_method_label)
    verifier = PaymentVerifier(settings, gateway, reconciler)

    result = await verifier.verify(request.to_attempt(), user_id=user_id)

    body = result.to_response()
    if result.newly_confirmed:
        body["enrolled_courses"] = await run_in_threadpool(materialize_enrollments, SessionLocal, result.order_id)
    return body
