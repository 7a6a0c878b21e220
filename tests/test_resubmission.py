"""
Tests for payment resubmission.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ngo_payments.config import Settings
from ngo_payments.core.checksum import CheckMacValue
from ngo_payments.core.exceptions import ReconciliationError, ResubmissionRejectedError
from ngo_payments.core.order_lines import OrderStatus, TransactionStatus
from ngo_payments.core.reconciliation import ReconciliationEngine
from ngo_payments.core.resubmission import ResubmissionManager, derive_retry_trade_no
from ngo_payments.database.models import Order, PaymentTransaction, Supply
from ngo_payments.integrations.callback_handler import ACK_ACCEPTED, CallbackHandler
from ngo_payments.integrations.ecpay_client import EcpayClient

from .conftest import CLIENT_BACK_URL, RETURN_URL, callback_payload, sign_callback

RETRY_TIME = datetime(2025, 7, 27, 14, 9, 15, tzinfo=timezone.utc)


@pytest.fixture
def resubmission_manager(
    ecpay_client: EcpayClient, test_settings: Settings
) -> ResubmissionManager:
    return ResubmissionManager(ecpay_client=ecpay_client, settings=test_settings)


class TestRetryTradeNumber:
    """Test derivation of retry trade numbers."""

    @pytest.mark.unit
    def test_first_retry(self) -> None:
        """17-char original: cut to 15, append R + minute/second."""
        assert derive_retry_trade_no("NGO20250727143052", RETRY_TIME) == "NGO202507271430R0915"

    @pytest.mark.unit
    def test_retry_of_retry_replaces_suffix(self) -> None:
        """A previous R suffix is stripped rather than stacked."""
        new = derive_retry_trade_no("NGO202507271430R0915", RETRY_TIME + timedelta(seconds=3))

        assert new == "NGO202507271430R0918"

    @pytest.mark.unit
    def test_short_trade_number_kept_whole(self) -> None:
        assert derive_retry_trade_no("NGO123", RETRY_TIME) == "NGO123R0915"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "trade_no",
        ["NGO20250727143052", "NGO202507271430R0915", "ORDER-WITH-R-IN-IT-1", "A" * 20],
    )
    def test_never_exceeds_twenty_characters(self, trade_no: str) -> None:
        assert len(derive_retry_trade_no(trade_no, RETRY_TIME)) <= 20


class TestResubmissionManager:
    """Test eligibility rules and the retry flow."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_after_failure_then_success(
        self,
        test_db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        ecpay_client: EcpayClient,
        resubmission_manager: ResubmissionManager,
        callback_handler: CallbackHandler,
        checksum: CheckMacValue,
        make_order: Callable[..., Any],
    ) -> None:
        """Failed payment, retry under a new trade number, then pay it."""
        order = await make_order()
        original_trade_no = order.trade_no
        await ecpay_client.create_payment(order, RETURN_URL, CLIENT_BACK_URL, test_db)
        await callback_handler.handle(
            sign_callback(checksum, callback_payload(original_trade_no, 705, rtn_code="0")),
            test_db,
        )

        checkout = await resubmission_manager.resubmit(test_db, order.id, RETURN_URL)

        assert checkout.trade_no != original_trade_no
        assert checkout.trade_no.startswith(original_trade_no[:15] + "R")
        assert len(checkout.trade_no) == 20
        assert checkout.fields["ClientBackURL"] == (
            f"https://ngo.example.org/orders/{checkout.trade_no}"
        )
        assert checksum.verify(checkout.fields)

        async with session_factory() as session:
            retried = await session.get(Order, order.id)
            assert retried.trade_no == checkout.trade_no
            assert retried.payment_status == OrderStatus.PENDING.value
            transaction = (
                await session.execute(
                    select(PaymentTransaction).where(PaymentTransaction.order_id == order.id)
                )
            ).scalar_one()
            assert transaction.trade_no == checkout.trade_no
            assert transaction.status == TransactionStatus.PROCESSING.value

        ack = await callback_handler.handle(
            sign_callback(checksum, callback_payload(checkout.trade_no, 705)), test_db
        )

        assert ack == ACK_ACCEPTED
        async with session_factory() as session:
            assert (await session.get(Order, order.id)).payment_status == OrderStatus.PAID.value
            assert (await session.get(Supply, 14)).stock == 12

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_order_may_be_retried(
        self,
        test_db: AsyncSession,
        resubmission_manager: ResubmissionManager,
        make_order: Callable[..., Any],
    ) -> None:
        """An abandoned checkout (still pending) can be retried."""
        order = await make_order()

        checkout = await resubmission_manager.resubmit(
            test_db, order.id, RETURN_URL, CLIENT_BACK_URL
        )

        assert checkout.fields["ClientBackURL"] == CLIENT_BACK_URL
        assert checkout.fields["TotalAmount"] == "705"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_order_rejected(
        self,
        test_db: AsyncSession,
        resubmission_manager: ResubmissionManager,
        make_order: Callable[..., Any],
    ) -> None:
        """Orders older than 24 hours are rejected and no transaction is created."""
        order = await make_order()
        await test_db.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=25))
        )
        await test_db.commit()

        with pytest.raises(ResubmissionRejectedError) as exc_info:
            await resubmission_manager.resubmit(test_db, order.id, RETURN_URL)

        assert "24 hours" in exc_info.value.reason
        transactions = (await test_db.execute(select(PaymentTransaction))).scalars().all()
        assert transactions == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_order_rejected(
        self,
        test_db: AsyncSession,
        ecpay_client: EcpayClient,
        reconciliation_engine: Any,
        resubmission_manager: ResubmissionManager,
        make_order: Callable[..., Any],
    ) -> None:
        """A paid order is never sent to the gateway again."""
        order = await make_order()
        await ecpay_client.create_payment(order, RETURN_URL, CLIENT_BACK_URL, test_db)
        await reconciliation_engine.settle(test_db, order.trade_no)

        with pytest.raises(ResubmissionRejectedError, match="already paid"):
            await resubmission_manager.resubmit(test_db, order.id, RETURN_URL)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_order_rejected(
        self,
        test_db: AsyncSession,
        resubmission_manager: ResubmissionManager,
    ) -> None:
        with pytest.raises(ResubmissionRejectedError) as exc_info:
            await resubmission_manager.resubmit(test_db, 424242, RETURN_URL)

        assert exc_info.value.reason == "order not found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clashing_trade_number_rejected(
        self,
        test_db: AsyncSession,
        ecpay_client: EcpayClient,
        test_settings: Settings,
        make_order: Callable[..., Any],
    ) -> None:
        """The derived number must not belong to another order."""
        manager = ResubmissionManager(
            ecpay_client=ecpay_client, settings=test_settings, clock=lambda: RETRY_TIME
        )
        order = await make_order(trade_no="NGO20250727143052")
        await make_order(trade_no="NGO202507271430R0915")

        with pytest.raises(ResubmissionRejectedError, match="already in use"):
            await manager.resubmit(test_db, order.id, RETURN_URL)

        await test_db.refresh(order)
        assert order.trade_no == "NGO20250727143052"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmed_but_unsettled_payment_rejected(
        self,
        test_db: AsyncSession,
        ecpay_client: EcpayClient,
        resubmission_manager: ResubmissionManager,
        checksum: CheckMacValue,
        make_order: Callable[..., Any],
    ) -> None:
        """
        ECPay confirmed the payment but settlement failed locally.

        The retry is refused and the payment stays visible to recovery.
        """
        order = await make_order()
        await ecpay_client.create_payment(order, RETURN_URL, CLIENT_BACK_URL, test_db)
        failing_engine = ReconciliationEngine()
        failing_engine.settle = AsyncMock(side_effect=ReconciliationError("stock update failed"))
        handler = CallbackHandler(checksum=checksum, reconciliation_engine=failing_engine)
        ack = await handler.handle(
            sign_callback(checksum, callback_payload(order.trade_no, 705)), test_db
        )
        assert ack == ACK_ACCEPTED

        with pytest.raises(ResubmissionRejectedError, match="already confirmed by gateway"):
            await resubmission_manager.resubmit(test_db, order.id, RETURN_URL)

        result = await ReconciliationEngine().recover_stuck_settlements(test_db)
        assert result["found"] == 1
        assert result["recovered"] == [order.trade_no]
