"""
ECPay all-in-one (AIO) checkout client.

Builds the signed field set the donor's browser posts to ECPay and records
the pending gateway transaction before the donor leaves the site.
"""
import html
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ngo_payments.config import Settings, get_settings
from ngo_payments.core.checksum import CHECK_MAC_FIELD, CheckMacValue
from ngo_payments.core.exceptions import PaymentValidationError
from ngo_payments.core.order_lines import OrderStatus, TransactionStatus
from ngo_payments.core.order_service import MAX_TRADE_NO_LENGTH
from ngo_payments.database.models import Order, PaymentTransaction, utcnow
from ngo_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRADE_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


@dataclass(frozen=True)
class CheckoutRequest:
    """Signed checkout payload ready to be posted to ECPay."""

    action_url: str
    fields: Dict[str, str]

    @property
    def trade_no(self) -> str:
        return self.fields["MerchantTradeNo"]

    def to_form_html(self) -> str:
        """Render an auto-submitting HTML form posting the fields to ECPay."""
        inputs = "\n".join(
            f'<input type="hidden" name="{html.escape(name)}" value="{html.escape(value)}" />'
            for name, value in self.fields.items()
        )
        return (
            f'<form id="ecpayForm" method="post" action="{html.escape(self.action_url)}">\n'
            f"{inputs}\n"
            '<input type="submit" value="Proceed to payment" />\n'
            "</form>\n"
            '<script>document.getElementById("ecpayForm").submit();</script>'
        )


class EcpayClient:
    """
    Builds ECPay checkout requests.

    Features:
    - Fixed AIO field set with CheckMacValue appended last
    - Transaction upsert (status processing) before the payload is returned
    - Re-payment reuses the order's existing transaction row
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        checksum: Optional[CheckMacValue] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize ECPay client.

        Args:
            settings: Optional settings (uses config if not provided)
            checksum: Optional CheckMacValue engine (built from settings if not provided)
            clock: Optional clock returning the trade time
        """
        self.settings = settings or get_settings()
        self.checksum = checksum or CheckMacValue(
            self.settings.ecpay_hash_key, self.settings.ecpay_hash_iv
        )
        self._clock = clock or (lambda: datetime.now(ZoneInfo(self.settings.ecpay_timezone)))

        logger.info(
            "ecpay_client_initialized",
            merchant_id=self.settings.ecpay_merchant_id,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def validate_order(order: Order) -> None:
        """
        Validate that an order can be sent to ECPay.

        Raises:
            PaymentValidationError: If validation fails
        """
        if order.total_amount is None or order.total_amount <= 0:
            raise PaymentValidationError("Order total amount must be positive")

        if not order.trade_no:
            raise PaymentValidationError("Order has no trade number")

        if len(order.trade_no) > MAX_TRADE_NO_LENGTH:
            raise PaymentValidationError(
                f"Trade number {order.trade_no} exceeds {MAX_TRADE_NO_LENGTH} characters"
            )

        if order.payment_status == OrderStatus.PAID.value:
            raise PaymentValidationError(f"Order {order.trade_no} is already paid")

    def build_fields(
        self, order: Order, return_url: str, client_back_url: str
    ) -> Dict[str, str]:
        """
        Build the signed outbound field set for an order.

        Args:
            order: Order to charge
            return_url: Server-to-server callback URL (ReturnURL)
            client_back_url: Browser redirect after payment (ClientBackURL)

        Returns:
            Dict[str, str]: Fields in posting order, CheckMacValue last
        """
        fields = {
            "MerchantID": self.settings.ecpay_merchant_id,
            "MerchantTradeNo": order.trade_no,
            "MerchantTradeDate": self._clock().strftime(TRADE_DATE_FORMAT),
            "PaymentType": "aio",
            "TotalAmount": str(int(order.total_amount)),
            "TradeDesc": self.settings.ecpay_trade_desc,
            "ItemName": self.settings.ecpay_item_name,
            "ReturnURL": return_url,
            "ClientBackURL": client_back_url,
            "ChoosePayment": "ALL",
            "EncryptType": "1",
        }
        fields = {key: value for key, value in fields.items() if value}
        fields[CHECK_MAC_FIELD] = self.checksum.sign(fields)
        return fields

    async def _upsert_transaction(self, db: AsyncSession, order: Order) -> PaymentTransaction:
        result = await db.execute(
            select(PaymentTransaction).where(PaymentTransaction.order_id == order.id)
        )
        transaction = result.scalar_one_or_none()

        if transaction is None:
            transaction = PaymentTransaction(
                order_id=order.id,
                trade_no=order.trade_no,
                status=TransactionStatus.PROCESSING.value,
            )
            db.add(transaction)
        else:
            # Re-payment: the gateway sees a fresh attempt under the current trade number
            transaction.trade_no = order.trade_no
            transaction.status = TransactionStatus.PROCESSING.value
            transaction.gateway_trade_no = None
            transaction.response_data = None
            transaction.created_at = utcnow()

        await db.commit()
        return transaction

    async def create_payment(
        self,
        order: Order,
        return_url: str,
        client_back_url: str,
        db: AsyncSession,
    ) -> CheckoutRequest:
        """
        Create a checkout request and record the processing transaction.

        Args:
            order: Order to charge
            return_url: Server-to-server callback URL
            client_back_url: Browser redirect URL after payment
            db: Database session

        Returns:
            CheckoutRequest: Signed payload for the browser to post

        Raises:
            PaymentValidationError: If the order cannot be charged; nothing is written
        """
        try:
            self.validate_order(order)
        except PaymentValidationError as e:
            metrics.record_checkout("rejected")
            logger.warning(
                "ecpay_checkout_rejected",
                order_id=order.id,
                trade_no=order.trade_no,
                error=str(e),
            )
            raise

        fields = self.build_fields(order, return_url, client_back_url)
        transaction = await self._upsert_transaction(db, order)

        metrics.record_checkout("created", order.total_amount)
        logger.info(
            "ecpay_checkout_created",
            order_id=order.id,
            trade_no=order.trade_no,
            transaction_id=transaction.id,
            total_amount=order.total_amount,
        )

        return CheckoutRequest(action_url=self.settings.ecpay_payment_url, fields=fields)
