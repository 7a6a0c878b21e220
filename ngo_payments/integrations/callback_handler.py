"""
ECPay payment-result callback handler.

Implements:
- CheckMacValue verification over the untrusted form body
- Audit copy of the last callback on the transaction
- Outcome routing to the reconciliation engine
- The gateway's two-token acknowledgement protocol

ECPay retries a callback until it receives "1|OK", so every verified
callback for a known trade number is acknowledged, including duplicates and
those whose reconciliation failed locally.
"""
import time
from typing import Mapping, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ngo_payments.config import get_settings
from ngo_payments.core.checksum import CHECK_MAC_FIELD, CheckMacValue
from ngo_payments.core.exceptions import (
    PaymentValidationError,
    ReconciliationError,
    SignatureMismatchError,
    TradeNotFoundError,
)
from ngo_payments.core.reconciliation import SUCCESS_RETURN_CODE, ReconciliationEngine
from ngo_payments.database.models import Order, PaymentTransaction
from ngo_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ACK_ACCEPTED = "1|OK"
ACK_REJECTED = "0|ERROR"


class CallbackHandler:
    """
    Handles ECPay ReturnURL callbacks.

    The handler never raises: every path ends in ACK_ACCEPTED or ACK_REJECTED.
    """

    def __init__(
        self,
        checksum: Optional[CheckMacValue] = None,
        reconciliation_engine: Optional[ReconciliationEngine] = None,
    ):
        """
        Initialize callback handler.

        Args:
            checksum: Optional CheckMacValue engine (built from config if not provided)
            reconciliation_engine: Optional reconciliation engine
        """
        if checksum is None:
            settings = get_settings()
            checksum = CheckMacValue(settings.ecpay_hash_key, settings.ecpay_hash_iv)
        self.checksum = checksum
        self.reconciliation_engine = reconciliation_engine or ReconciliationEngine()

        logger.info("callback_handler_initialized")

    def verify(self, payload: Mapping[str, str]) -> str:
        """
        Check required fields and the CheckMacValue.

        Returns:
            str: The verified merchant trade number

        Raises:
            PaymentValidationError: If MerchantTradeNo or CheckMacValue is missing
            SignatureMismatchError: If the CheckMacValue does not match
        """
        trade_no = payload.get("MerchantTradeNo")
        if not trade_no or not payload.get(CHECK_MAC_FIELD):
            raise PaymentValidationError("Callback is missing MerchantTradeNo or CheckMacValue")

        if not self.checksum.verify(payload):
            raise SignatureMismatchError(f"CheckMacValue mismatch for trade {trade_no}")

        return trade_no

    async def _record_payload(
        self, db: AsyncSession, trade_no: str, payload: Mapping[str, str]
    ) -> None:
        """Store the callback on the transaction; runs before any outcome is applied."""
        order = (
            await db.execute(select(Order.id).where(Order.trade_no == trade_no))
        ).scalar_one_or_none()
        transaction = (
            await db.execute(
                select(PaymentTransaction).where(PaymentTransaction.trade_no == trade_no)
            )
        ).scalar_one_or_none()

        if order is None or transaction is None:
            await db.rollback()
            raise TradeNotFoundError(trade_no)

        transaction.response_data = dict(payload)
        await db.commit()

    async def _apply_outcome(
        self, db: AsyncSession, trade_no: str, payload: Mapping[str, str]
    ) -> str:
        rtn_code = payload.get("RtnCode")
        gateway_trade_no = payload.get("TradeNo")

        if rtn_code != SUCCESS_RETURN_CODE:
            applied = await self.reconciliation_engine.fail(db, trade_no, gateway_trade_no)
            return "failed" if applied else "duplicate"

        try:
            applied = await self.reconciliation_engine.settle(db, trade_no, gateway_trade_no)
        except ReconciliationError as e:
            # Acknowledged anyway; the failure metric is the alerting channel
            metrics.record_reconciliation_failure()
            logger.error(
                "callback_reconciliation_failed",
                trade_no=trade_no,
                gateway_trade_no=gateway_trade_no,
                error=str(e),
            )
            return "reconciliation_failed"

        return "paid" if applied else "duplicate"

    async def _process(
        self, payload: Mapping[str, str], db: AsyncSession
    ) -> Tuple[str, str]:
        try:
            trade_no = self.verify(payload)
        except PaymentValidationError as e:
            logger.warning("callback_malformed", error=str(e), fields=sorted(payload))
            return ACK_REJECTED, "malformed"
        except SignatureMismatchError as e:
            logger.error(
                "callback_signature_mismatch",
                trade_no=payload.get("MerchantTradeNo"),
                error=str(e),
            )
            return ACK_REJECTED, "signature_mismatch"

        try:
            await self._record_payload(db, trade_no, payload)
        except TradeNotFoundError as e:
            logger.warning("callback_trade_not_found", trade_no=trade_no, error=str(e))
            return ACK_REJECTED, "not_found"

        outcome = await self._apply_outcome(db, trade_no, payload)
        logger.info(
            "callback_processed",
            trade_no=trade_no,
            rtn_code=payload.get("RtnCode"),
            rtn_msg=payload.get("RtnMsg"),
            outcome=outcome,
        )
        return ACK_ACCEPTED, outcome

    async def handle(self, payload: Mapping[str, str], db: AsyncSession) -> str:
        """
        Process a callback and return the acknowledgement body.

        Args:
            payload: Untrusted form fields posted by ECPay
            db: Database session

        Returns:
            str: "1|OK" or "0|ERROR"
        """
        start_time = time.time()
        try:
            ack, outcome = await self._process(payload, db)
        except Exception as e:
            await db.rollback()
            logger.error(
                "callback_processing_error",
                trade_no=payload.get("MerchantTradeNo"),
                error=str(e),
                error_type=type(e).__name__,
            )
            ack, outcome = ACK_REJECTED, "error"

        metrics.record_callback(outcome, time.time() - start_time)
        return ack
