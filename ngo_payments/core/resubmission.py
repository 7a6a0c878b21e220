"""
Payment retry for pending or failed donation orders.

ECPay refuses a MerchantTradeNo it has already seen, so a retry runs under a
new trade number derived from the original: the base is cut to 15
characters and an "R" plus the minute/second of the retry is appended,
keeping the result within the gateway's 20-character limit.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ngo_payments.config import Settings, get_settings
from ngo_payments.core.exceptions import PaymentValidationError, ResubmissionRejectedError
from ngo_payments.core.order_lines import OrderStatus, TransactionStatus
from ngo_payments.core.order_service import MAX_TRADE_NO_LENGTH
from ngo_payments.core.reconciliation import SUCCESS_RETURN_CODE
from ngo_payments.database.models import Order, PaymentTransaction, as_utc
from ngo_payments.integrations.ecpay_client import CheckoutRequest, EcpayClient
from ngo_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RETRY_MARKER = "R"
RETRY_BASE_LENGTH = 15
RETRYABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.FAILED.value)


def derive_retry_trade_no(trade_no: str, now: datetime) -> str:
    """
    Derive a retry trade number, e.g. NGO20250727143052 -> NGO202507271430R0915.

    A previous retry suffix is replaced rather than stacked.
    """
    base = trade_no
    if RETRY_MARKER in base and len(base) > MAX_TRADE_NO_LENGTH - 2:
        base = base[: base.rindex(RETRY_MARKER)]
    base = base[:RETRY_BASE_LENGTH]
    return f"{base}{RETRY_MARKER}{now.strftime('%M%S')}"


class ResubmissionManager:
    """Re-enters the ECPay checkout for an unpaid order under a fresh trade number."""

    def __init__(
        self,
        ecpay_client: Optional[EcpayClient] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.ecpay_client = ecpay_client or EcpayClient(settings=self.settings)
        self.window = timedelta(hours=self.settings.resubmission_window_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _reject(self, order_id: int, reason: str) -> ResubmissionRejectedError:
        metrics.record_resubmission("rejected")
        logger.warning("resubmission_rejected", order_id=order_id, reason=reason)
        return ResubmissionRejectedError(order_id, reason)

    async def _has_unsettled_success(self, db: AsyncSession, order: Order) -> bool:
        result = await db.execute(
            select(PaymentTransaction).where(PaymentTransaction.order_id == order.id)
        )
        transaction = result.scalar_one_or_none()
        return (
            transaction is not None
            and transaction.status == TransactionStatus.PROCESSING.value
            and (transaction.response_data or {}).get("RtnCode") == SUCCESS_RETURN_CODE
        )

    async def check_eligibility(self, db: AsyncSession, order_id: int) -> Order:
        """
        Load an order and make sure it may be retried.

        Raises:
            ResubmissionRejectedError: If the order is missing, settled or too old
        """
        order = await db.get(Order, order_id)
        if order is None:
            raise self._reject(order_id, "order not found")

        if order.payment_status == OrderStatus.PAID.value:
            raise self._reject(order_id, "order is already paid")

        if order.payment_status not in RETRYABLE_STATUSES:
            raise self._reject(order_id, f"order status {order.payment_status} is not retryable")

        # A success callback that failed to settle is still owed to the donor;
        # renaming the trade would hide it from stuck-settlement recovery.
        if await self._has_unsettled_success(db, order):
            raise self._reject(
                order_id, "payment already confirmed by gateway, settlement pending"
            )

        age = self._clock() - as_utc(order.created_at)
        if age > self.window:
            raise self._reject(
                order_id,
                f"order is older than {self.settings.resubmission_window_hours} hours",
            )

        try:
            self.ecpay_client.validate_order(order)
        except PaymentValidationError as e:
            raise self._reject(order_id, str(e)) from e

        return order

    async def resubmit(
        self,
        db: AsyncSession,
        order_id: int,
        return_url: str,
        client_back_url: Optional[str] = None,
    ) -> CheckoutRequest:
        """
        Retry payment for an order.

        Args:
            db: Database session
            order_id: Order to retry
            return_url: Server-to-server callback URL
            client_back_url: Browser redirect URL; built from settings for the
                new trade number when omitted

        Returns:
            CheckoutRequest: Signed payload under the new trade number

        Raises:
            ResubmissionRejectedError: If the order is not eligible
        """
        order = await self.check_eligibility(db, order_id)

        previous_trade_no = order.trade_no
        new_trade_no = derive_retry_trade_no(previous_trade_no, self._clock())
        if new_trade_no == previous_trade_no:
            raise self._reject(order_id, "retried too recently, try again in a second")

        clash = await db.execute(
            select(Order.id).where(Order.trade_no == new_trade_no, Order.id != order.id)
        )
        if clash.scalar_one_or_none() is not None:
            raise self._reject(order_id, f"trade number {new_trade_no} is already in use")

        order.trade_no = new_trade_no
        order.payment_status = OrderStatus.PENDING.value

        result = await db.execute(
            select(PaymentTransaction).where(PaymentTransaction.order_id == order.id)
        )
        transaction = result.scalar_one_or_none()
        if transaction is not None:
            transaction.status = TransactionStatus.PENDING.value
        await db.commit()

        logger.info(
            "order_resubmitted",
            order_id=order.id,
            previous_trade_no=previous_trade_no,
            trade_no=new_trade_no,
        )
        metrics.record_resubmission("accepted")

        return await self.ecpay_client.create_payment(
            order,
            return_url,
            client_back_url or self.settings.client_back_url(new_trade_no),
            db,
        )
