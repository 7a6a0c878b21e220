"""SQLAlchemy database models for donation orders and ECPay transactions."""
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ngo_payments.core.order_lines import (
    EmergencyLine,
    EmergencyNeedStatus,
    OrderKind,
    OrderLine,
    OrderStatus,
    SupplyLine,
    TransactionStatus,
)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp; SQLite hands back naive datetimes."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Supply(Base):
    """
    Regular supply inventory (owned by the supply management screens).

    Only `stock` is touched by payments: a paid donation replenishes it.
    """

    __tablename__ = "supplies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (CheckConstraint("stock >= 0", name="non_negative_stock"),)

    def __repr__(self) -> str:
        """String representation of Supply."""
        return f"<Supply(id={self.id}, name={self.name}, stock={self.stock})>"


class EmergencyNeed(Base):
    """
    Emergency fundraising target raised by a social worker for a case.

    Collected quantity grows with paid donations; the need completes once
    it reaches the requested quantity.
    """

    __tablename__ = "emergency_needs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    supply_name: Mapped[str] = mapped_column(String(100), nullable=False)
    requested_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    collected_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EmergencyNeedStatus.FUNDRAISING.value
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("requested_quantity > 0", name="positive_requested_quantity"),
        CheckConstraint(
            "status IN ('fundraising', 'completed')", name="valid_emergency_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of EmergencyNeed."""
        return (
            f"<EmergencyNeed(id={self.id}, collected={self.collected_quantity}/"
            f"{self.requested_quantity}, status={self.status})>"
        )


class Order(Base):
    """
    Donation order created at checkout.

    The trade number is the MerchantTradeNo sent to ECPay and is limited to
    20 characters by the gateway.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_no: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderKind.REGULAR.value)
    emergency_need_id: Mapped[int | None] = mapped_column(
        ForeignKey("emergency_needs.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    details: Mapped[List["OrderDetail"]] = relationship(
        back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'failed')", name="valid_payment_status"
        ),
        CheckConstraint(
            "kind IN ('regular', 'package', 'emergency')", name="valid_order_kind"
        ),
        Index("idx_orders_status_created", "payment_status", "created_at"),
    )

    @property
    def lines(self) -> List[OrderLine]:
        return [detail.line for detail in self.details]

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, trade_no={self.trade_no}, "
            f"amount={self.total_amount}, status={self.payment_status})>"
        )


class OrderDetail(Base):
    """
    Order line item. Immutable once written.

    Exactly one of supply_id / emergency_need_id is set.
    """

    __tablename__ = "order_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    supply_id: Mapped[int | None] = mapped_column(ForeignKey("supplies.id"), nullable=True)
    emergency_need_id: Mapped[int | None] = mapped_column(
        ForeignKey("emergency_needs.id"), nullable=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="details")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price >= 0", name="non_negative_unit_price"),
        CheckConstraint(
            "(supply_id IS NOT NULL AND emergency_need_id IS NULL) OR "
            "(supply_id IS NULL AND emergency_need_id IS NOT NULL)",
            name="single_line_target",
        ),
    )

    @classmethod
    def from_line(cls, line: OrderLine) -> "OrderDetail":
        match line:
            case SupplyLine(supply_id=supply_id):
                return cls(supply_id=supply_id, quantity=line.quantity, unit_price=line.unit_price)
            case EmergencyLine(emergency_need_id=need_id):
                return cls(
                    emergency_need_id=need_id, quantity=line.quantity, unit_price=line.unit_price
                )
        raise TypeError(f"Unsupported order line: {line!r}")

    @property
    def line(self) -> OrderLine:
        """The line as its tagged variant."""
        if self.supply_id is not None:
            return SupplyLine(
                supply_id=self.supply_id, quantity=self.quantity, unit_price=self.unit_price
            )
        if self.emergency_need_id is not None:
            return EmergencyLine(
                emergency_need_id=self.emergency_need_id,
                quantity=self.quantity,
                unit_price=self.unit_price,
            )
        raise ValueError(f"Order detail {self.id} has no supply or emergency need")

    def __repr__(self) -> str:
        """String representation of OrderDetail."""
        return f"<OrderDetail(id={self.id}, order_id={self.order_id}, qty={self.quantity})>"


class PaymentTransaction(Base):
    """
    ECPay transaction record, one per order.

    Created by the checkout adapter, transitioned by the callback handler.
    The last callback payload is kept verbatim for audit.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id"), unique=True, nullable=False
    )
    trade_no: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True
    )
    gateway_trade_no: Mapped[str | None] = mapped_column(String(50), nullable=True)
    response_data: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'success', 'failed')",
            name="valid_transaction_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, trade_no={self.trade_no}, "
            f"status={self.status})>"
        )
