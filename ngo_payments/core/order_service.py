"""
Checkout boundary: creates donation orders and reads their payment state.

The donation screens call this when a donor confirms a checkout; the order
starts out pending and is handed to the ECPay client afterwards.
"""
import secrets
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ngo_payments.core.exceptions import PaymentValidationError
from ngo_payments.core.order_lines import (
    EmergencyLine,
    OrderKind,
    OrderLine,
    OrderStatus,
    SupplyLine,
)
from ngo_payments.database.models import (
    EmergencyNeed,
    Order,
    OrderDetail,
    PaymentTransaction,
    Supply,
)

logger = structlog.get_logger(__name__)

TRADE_NO_PREFIX = "NGO"
TRADE_NO_SUFFIX_DIGITS = 3
MAX_TRADE_NO_LENGTH = 20
MAX_TRADE_NO_ATTEMPTS = 5


def generate_trade_no(now: Optional[datetime] = None) -> str:
    """
    Generate a merchant trade number: NGO + yyyyMMddHHmmss + 3 random digits.

    The random tail keeps checkouts within the same second apart while
    staying inside ECPay's 20-character limit.
    """
    now = now or datetime.now()
    suffix = secrets.randbelow(10**TRADE_NO_SUFFIX_DIGITS)
    return f"{TRADE_NO_PREFIX}{now.strftime('%Y%m%d%H%M%S')}{suffix:0{TRADE_NO_SUFFIX_DIGITS}d}"


class OrderService:
    """Creates orders with their line items and reports their status."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now

    @staticmethod
    def _validate_order_request(kind: OrderKind, lines: Sequence[OrderLine]) -> None:
        """
        Validate order creation parameters.

        Raises:
            PaymentValidationError: If validation fails
        """
        if not lines:
            raise PaymentValidationError("Order must contain at least one line")

        for line in lines:
            if line.quantity <= 0:
                raise PaymentValidationError("Line quantity must be positive")
            if line.unit_price < 0:
                raise PaymentValidationError("Unit price cannot be negative")

        emergency = [line for line in lines if isinstance(line, EmergencyLine)]
        if kind is OrderKind.EMERGENCY and len(emergency) != len(lines):
            raise PaymentValidationError("Emergency orders may only contain emergency lines")
        if kind is not OrderKind.EMERGENCY and emergency:
            raise PaymentValidationError(f"{kind.value} orders may only contain supply lines")

        if sum(line.subtotal for line in lines) <= 0:
            raise PaymentValidationError("Order total must be positive")

    async def _check_references(self, db: AsyncSession, lines: Sequence[OrderLine]) -> None:
        for line in lines:
            match line:
                case SupplyLine(supply_id=supply_id):
                    if await db.get(Supply, supply_id) is None:
                        raise PaymentValidationError(f"Supply {supply_id} does not exist")
                case EmergencyLine(emergency_need_id=need_id):
                    if await db.get(EmergencyNeed, need_id) is None:
                        raise PaymentValidationError(f"Emergency need {need_id} does not exist")

    async def create_order(
        self,
        db: AsyncSession,
        kind: OrderKind,
        lines: Sequence[OrderLine],
        user_id: Optional[int] = None,
        trade_no: Optional[str] = None,
    ) -> Order:
        """
        Persist a pending order and its line items.

        Args:
            db: Database session
            kind: Order kind (regular, package, emergency)
            lines: Supply or emergency lines
            user_id: Optional donor account
            trade_no: Explicit trade number (generated when omitted)

        Returns:
            Order: The committed order

        Raises:
            PaymentValidationError: If the order is malformed or an explicit
                trade number is already in use
        """
        self._validate_order_request(kind, lines)
        if trade_no is not None and len(trade_no) > MAX_TRADE_NO_LENGTH:
            raise PaymentValidationError(
                f"Trade number exceeds {MAX_TRADE_NO_LENGTH} characters"
            )

        await self._check_references(db, lines)

        emergency_need_ids = {
            line.emergency_need_id for line in lines if isinstance(line, EmergencyLine)
        }

        attempts = 1 if trade_no is not None else MAX_TRADE_NO_ATTEMPTS
        for attempt in range(1, attempts + 1):
            candidate = trade_no or generate_trade_no(self._clock())

            existing = await db.execute(select(Order.id).where(Order.trade_no == candidate))
            if existing.scalar_one_or_none() is None:
                order = Order(
                    trade_no=candidate,
                    user_id=user_id,
                    total_amount=sum(line.subtotal for line in lines),
                    payment_status=OrderStatus.PENDING.value,
                    kind=kind.value,
                    emergency_need_id=(
                        next(iter(emergency_need_ids)) if len(emergency_need_ids) == 1 else None
                    ),
                    details=[OrderDetail.from_line(line) for line in lines],
                )
                db.add(order)
                try:
                    await db.commit()
                    break
                except IntegrityError:
                    # Lost a race for the same trade number
                    await db.rollback()

            logger.warning("trade_no_collision", trade_no=candidate, attempt=attempt)
        else:
            if trade_no is not None:
                raise PaymentValidationError(f"Trade number {trade_no} is already in use")
            raise PaymentValidationError("Could not allocate a unique trade number")

        logger.info(
            "order_created",
            order_id=order.id,
            trade_no=order.trade_no,
            kind=order.kind,
            total_amount=order.total_amount,
            line_count=len(lines),
        )
        return order

    async def get_order(self, db: AsyncSession, order_id: int) -> Optional[Order]:
        return await db.get(Order, order_id)

    async def get_order_status(
        self, db: AsyncSession, trade_no: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get order and transaction status by trade number.

        Returns:
            Optional[Dict[str, Any]]: Status data or None if not found
        """
        result = await db.execute(select(Order).where(Order.trade_no == trade_no))
        order = result.scalar_one_or_none()
        if order is None:
            return None

        result = await db.execute(
            select(PaymentTransaction).where(PaymentTransaction.order_id == order.id)
        )
        transaction = result.scalar_one_or_none()

        return {
            "order_id": order.id,
            "trade_no": order.trade_no,
            "kind": order.kind,
            "total_amount": order.total_amount,
            "payment_status": order.payment_status,
            "transaction_status": transaction.status if transaction else None,
            "gateway_trade_no": transaction.gateway_trade_no if transaction else None,
            "created_at": order.created_at.isoformat(),
        }
