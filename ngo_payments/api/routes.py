"""
API routes for donation orders, ECPay checkout and callbacks.
"""
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from ngo_payments.config import get_settings
from ngo_payments.core.exceptions import (
    PaymentValidationError,
    ReconciliationError,
    ResubmissionRejectedError,
    TradeNotFoundError,
)
from ngo_payments.core.order_lines import TransactionStatus
from ngo_payments.core.order_service import OrderService
from ngo_payments.core.reconciliation import ReconciliationEngine
from ngo_payments.core.resubmission import ResubmissionManager
from ngo_payments.database.connection import get_db
from ngo_payments.integrations.callback_handler import ACK_REJECTED, CallbackHandler
from ngo_payments.integrations.ecpay_client import CheckoutRequest, EcpayClient
from ngo_payments.monitoring.health import HealthCheck
from ngo_payments.monitoring.metrics import metrics

from .schemas import (
    CheckoutRequestBody,
    CheckoutResponse,
    CreateOrderRequest,
    HealthCheckResponse,
    MarkPaidResponse,
    OrderResponse,
    RecoveryResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
settings = get_settings()
order_service = OrderService()
ecpay_client = EcpayClient()
reconciliation_engine = ReconciliationEngine()
callback_handler = CallbackHandler(
    checksum=ecpay_client.checksum, reconciliation_engine=reconciliation_engine
)
resubmission_manager = ResubmissionManager(ecpay_client=ecpay_client)
health_check = HealthCheck()


def _checkout_response(checkout: CheckoutRequest) -> Dict[str, Any]:
    return {
        "trade_no": checkout.trade_no,
        "action_url": checkout.action_url,
        "fields": checkout.fields,
        "form_html": checkout.to_form_html(),
    }


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a donation order",
    description="Checkout boundary used by the donation screens",
)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Create a pending order with its line items."""
    try:
        order = await order_service.create_order(
            db,
            kind=request.kind,
            lines=[line.to_line() for line in request.lines],
            user_id=request.user_id,
            trade_no=request.trade_no,
        )
    except PaymentValidationError as e:
        logger.warning("api_create_order_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return await order_service.get_order_status(db, order.trade_no)


@order_router.get(
    "/{trade_no}",
    response_model=OrderResponse,
    summary="Get order status",
    description="Order and ECPay transaction status by trade number",
)
async def get_order_status(
    trade_no: str,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Get order status by trade number."""
    order_status = await order_service.get_order_status(db, trade_no)
    if order_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order_status


@payment_router.post(
    "/{order_id}/checkout",
    response_model=CheckoutResponse,
    summary="Start ECPay checkout",
    description="Sign the ECPay payload for an order and record the transaction",
)
async def checkout(
    order_id: int,
    body: Optional[CheckoutRequestBody] = None,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Build the signed ECPay checkout for an order."""
    body = body or CheckoutRequestBody()
    order = await order_service.get_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    try:
        checkout_request = await ecpay_client.create_payment(
            order,
            body.return_url or settings.callback_url,
            body.client_back_url or settings.client_back_url(order.trade_no),
            db,
        )
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return _checkout_response(checkout_request)


@payment_router.post(
    "/{order_id}/resubmit",
    response_model=CheckoutResponse,
    summary="Retry payment",
    description="Retry an unpaid order under a new trade number",
)
async def resubmit(
    order_id: int,
    body: Optional[CheckoutRequestBody] = None,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Retry payment for a pending or failed order."""
    body = body or CheckoutRequestBody()
    try:
        checkout_request = await resubmission_manager.resubmit(
            db,
            order_id,
            body.return_url or settings.callback_url,
            body.client_back_url,
        )
    except ResubmissionRejectedError as e:
        status_code = (
            status.HTTP_404_NOT_FOUND
            if e.reason == "order not found"
            else status.HTTP_409_CONFLICT
        )
        raise HTTPException(status_code=status_code, detail=e.reason)

    return _checkout_response(checkout_request)


@webhook_router.post(
    "/ecpay",
    response_class=PlainTextResponse,
    summary="ECPay ReturnURL callback",
    description="Answers with 1|OK or 0|ERROR as the gateway expects",
)
async def ecpay_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> PlainTextResponse:
    """
    Handle the ECPay payment-result callback.

    Empty form fields are kept: they are part of the signed payload.
    """
    try:
        body = await request.body()
        payload = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning("api_callback_unreadable_body", error=str(e))
        return PlainTextResponse(ACK_REJECTED)

    logger.info(
        "api_callback_received",
        **{field: payload.get(field) for field in ("MerchantTradeNo", "RtnCode", "TradeNo")},
    )
    ack = await callback_handler.handle(payload, db)
    return PlainTextResponse(ack)


@admin_router.post(
    "/orders/{trade_no}/mark-paid",
    response_model=MarkPaidResponse,
    summary="Mark an order paid",
    description="Apply a payment confirmed out of band through the same settlement unit",
)
async def mark_paid(
    trade_no: str,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Synchronously settle an order."""
    try:
        applied = await reconciliation_engine.settle(db, trade_no)
    except TradeNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ReconciliationError as e:
        metrics.record_reconciliation_failure()
        logger.error("api_mark_paid_failed", trade_no=trade_no, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Settlement failed: {str(e)}",
        )

    if not applied:
        order_status = await order_service.get_order_status(db, trade_no)
        transaction_status = order_status["transaction_status"] if order_status else None
        if transaction_status != TransactionStatus.SUCCESS.value:
            # Never checked out, or already marked failed: nothing to settle
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Trade {trade_no} cannot be settled "
                f"(transaction status: {transaction_status or 'none'})",
            )

    return {"trade_no": trade_no, "applied": applied}


@admin_router.post(
    "/reconcile/stuck",
    response_model=RecoveryResponse,
    summary="Recover stuck settlements",
    description="Re-drive settlement for acknowledged payments that were never applied",
)
async def recover_stuck(
    min_age_seconds: int = 0,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Run stuck-settlement recovery now."""
    return await reconciliation_engine.recover_stuck_settlements(db, min_age_seconds)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
