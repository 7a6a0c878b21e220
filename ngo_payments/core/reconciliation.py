"""
Reconciliation engine for applying verified ECPay outcomes.

A successful payment:
- moves the transaction processing -> success (compare-and-set)
- marks the order paid
- replenishes supply stock, or adds to an emergency need's collected quantity

All of it commits as one database transaction. The compare-and-set on the
transaction row is the serialization point: a duplicate or concurrent
callback matches zero rows and becomes a no-op.
"""
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ngo_payments.core.exceptions import ReconciliationError, TradeNotFoundError
from ngo_payments.core.order_lines import (
    EmergencyLine,
    EmergencyNeedStatus,
    OrderStatus,
    SupplyLine,
    TransactionStatus,
)
from ngo_payments.database.models import (
    EmergencyNeed,
    Order,
    PaymentTransaction,
    Supply,
    as_utc,
    utcnow,
)
from ngo_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUCCESS_RETURN_CODE = "1"


class ReconciliationEngine:
    """
    Applies payment outcomes to orders, stock and emergency needs exactly once.
    """

    async def _transition(
        self,
        db: AsyncSession,
        trade_no: str,
        target: TransactionStatus,
        gateway_trade_no: Optional[str],
    ) -> bool:
        """Move a processing transaction to a terminal status; False if already moved."""
        values: Dict[str, Any] = {"status": target.value, "updated_at": utcnow()}
        if gateway_trade_no:
            values["gateway_trade_no"] = gateway_trade_no

        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.trade_no == trade_no,
                PaymentTransaction.status == TransactionStatus.PROCESSING.value,
            )
            .values(**values)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def _load_order(self, db: AsyncSession, trade_no: str) -> Order:
        result = await db.execute(
            select(Order).where(Order.trade_no == trade_no).with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise TradeNotFoundError(trade_no)
        return order

    async def _replenish_supply(self, db: AsyncSession, line: SupplyLine) -> None:
        result = await db.execute(
            update(Supply)
            .where(Supply.id == line.supply_id)
            .values(stock=Supply.stock + line.quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ReconciliationError(f"Supply {line.supply_id} not found")

    async def _collect_for_need(self, db: AsyncSession, line: EmergencyLine) -> None:
        result = await db.execute(
            update(EmergencyNeed)
            .where(EmergencyNeed.id == line.emergency_need_id)
            .values(
                collected_quantity=EmergencyNeed.collected_quantity + line.quantity,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ReconciliationError(f"Emergency need {line.emergency_need_id} not found")

        completed = await db.execute(
            update(EmergencyNeed)
            .where(
                EmergencyNeed.id == line.emergency_need_id,
                EmergencyNeed.status == EmergencyNeedStatus.FUNDRAISING.value,
                EmergencyNeed.collected_quantity >= EmergencyNeed.requested_quantity,
            )
            .values(status=EmergencyNeedStatus.COMPLETED.value)
            .execution_options(synchronize_session=False)
        )
        if completed.rowcount:
            logger.info("emergency_need_completed", emergency_need_id=line.emergency_need_id)

    async def _apply_lines(self, db: AsyncSession, order: Order) -> None:
        for line in order.lines:
            match line:
                case SupplyLine():
                    await self._replenish_supply(db, line)
                case EmergencyLine():
                    await self._collect_for_need(db, line)

    async def settle(
        self,
        db: AsyncSession,
        trade_no: str,
        gateway_trade_no: Optional[str] = None,
    ) -> bool:
        """
        Apply a verified successful payment.

        Args:
            db: Database session (no transaction in progress)
            trade_no: Merchant trade number
            gateway_trade_no: ECPay's own trade reference

        Returns:
            bool: True if applied, False if the transaction was no longer processing

        Raises:
            TradeNotFoundError: If the order does not exist
            ReconciliationError: If any aggregate update fails; nothing is applied
        """
        start_time = time.time()
        try:
            order = await self._load_order(db, trade_no)

            if not await self._transition(
                db, trade_no, TransactionStatus.SUCCESS, gateway_trade_no
            ):
                await db.rollback()
                logger.info("settlement_skipped_not_processing", trade_no=trade_no)
                return False

            order.payment_status = OrderStatus.PAID.value
            await self._apply_lines(db, order)
            await db.commit()

        except TradeNotFoundError:
            await db.rollback()
            raise
        except ReconciliationError as e:
            await db.rollback()
            logger.error("settlement_failed", trade_no=trade_no, error=str(e))
            raise
        except Exception as e:
            await db.rollback()
            logger.error("settlement_failed", trade_no=trade_no, error=str(e))
            raise ReconciliationError(f"Settlement of {trade_no} failed: {str(e)}") from e

        duration = time.time() - start_time
        metrics.record_reconciliation("paid", duration)
        logger.info(
            "settlement_applied",
            trade_no=trade_no,
            order_id=order.id,
            kind=order.kind,
            duration_seconds=duration,
        )
        return True

    async def fail(
        self,
        db: AsyncSession,
        trade_no: str,
        gateway_trade_no: Optional[str] = None,
    ) -> bool:
        """
        Record a failed payment. No stock or need is touched.

        Returns:
            bool: True if applied, False if the transaction was no longer processing
        """
        start_time = time.time()
        try:
            order = await self._load_order(db, trade_no)

            if not await self._transition(
                db, trade_no, TransactionStatus.FAILED, gateway_trade_no
            ):
                await db.rollback()
                logger.info("failure_skipped_not_processing", trade_no=trade_no)
                return False

            order.payment_status = OrderStatus.FAILED.value
            await db.commit()

        except Exception:
            await db.rollback()
            raise

        metrics.record_reconciliation("failed", time.time() - start_time)
        logger.info("payment_failure_applied", trade_no=trade_no, order_id=order.id)
        return True

    async def find_stuck_settlements(
        self, db: AsyncSession, min_age_seconds: int = 0
    ) -> List[PaymentTransaction]:
        """
        Transactions still processing although ECPay reported success.

        These are left behind when a settlement failed after the callback was
        acknowledged.
        """
        cutoff = utcnow() - timedelta(seconds=min_age_seconds)
        result = await db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.status == TransactionStatus.PROCESSING.value,
                PaymentTransaction.response_data.isnot(None),
            )
        )
        return [
            transaction
            for transaction in result.scalars().all()
            if (transaction.response_data or {}).get("RtnCode") == SUCCESS_RETURN_CODE
            and as_utc(transaction.updated_at) <= cutoff
        ]

    async def recover_stuck_settlements(
        self, db: AsyncSession, min_age_seconds: int = 0
    ) -> Dict[str, Any]:
        """
        Re-drive settlement for stuck transactions.

        Returns:
            Dict[str, Any]: Counts of recovered and still failing trade numbers
        """
        stuck = await self.find_stuck_settlements(db, min_age_seconds)
        trade_refs = [
            (transaction.trade_no, (transaction.response_data or {}).get("TradeNo"))
            for transaction in stuck
        ]
        await db.rollback()

        recovered: List[str] = []
        failed: List[str] = []
        for trade_no, gateway_trade_no in trade_refs:
            try:
                if await self.settle(db, trade_no, gateway_trade_no):
                    recovered.append(trade_no)
            except (ReconciliationError, TradeNotFoundError) as e:
                metrics.record_reconciliation_failure()
                logger.error("stuck_settlement_retry_failed", trade_no=trade_no, error=str(e))
                failed.append(trade_no)

        metrics.set_recovery_metrics(len(failed))
        logger.info(
            "stuck_settlements_recovered",
            found=len(trade_refs),
            recovered=len(recovered),
            failed=len(failed),
        )
        return {"found": len(trade_refs), "recovered": recovered, "failed": failed}
