import json
import logging

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from checkout_service.config import Settings
from checkout_service.database import Base, engine, SessionLocal
from checkout_service.enrollment import materialize_enrollments
from checkout_service.errors import CheckoutError, InvalidRequest
from checkout_service.models import OrderStatus
from checkout_service.reconciler import OrderReconciler, PaymentVerifier
from checkout_service.routes import get_settings, router
from checkout_service.signature import verify_webhook_signature

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(component="api")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

WEBHOOK_EVENTS = {"payment.captured", "payment.authorized", "payment.failed"}

app = FastAPI(title="Course Checkout Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.middleware("http")
async def cors(request: Request, call_next):
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    logger.warning("request_failed", path=request.url.path, error=exc.message, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = InvalidRequest(details=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_response())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unexpected_error", path=request.url.path)
    error = CheckoutError()
    return JSONResponse(status_code=error.status_code, content=error.to_response(), headers=CORS_HEADERS)


@app.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(None),
    settings: Settings = Depends(get_settings)
):
    payload = await request.body()
    secret = settings.require_webhook_secret()

    if not verify_webhook_signature(payload, secret, x_razorpay_signature):
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    if not isinstance(event, dict) or event.get("event") not in WEBHOOK_EVENTS:
        return {"ok": True}

    payment = (((event.get("payload") or {}).get("payment") or {}).get("entity")) or {}
    if not payment.get("order_id") or not payment.get("id") or not payment.get("status"):
        return {"ok": True}

    verifier = PaymentVerifier(settings, None, OrderReconciler(SessionLocal, settings.payment_method_label))
    applied = await verifier.apply_gateway_event(
        payment["order_id"],
        payment["id"],
        payment["status"],
        amount=payment.get("amount"),
        currency=payment.get("currency"),
    )
    if applied is None:
        logger.info("webhook_unknown_order", gateway_order_id=payment["order_id"], payment_id=payment["id"])
        return {"ok": True}

    transitioned, snapshot = applied
    if transitioned and snapshot.status == OrderStatus.CONFIRMED:
        await run_in_threadpool(materialize_enrollments, SessionLocal, snapshot.order_id)

    return {"ok": True}
