"""
Order vocabulary shared by the checkout, gateway and reconciliation code.

An order line is a closed variant: it either replenishes a regular supply
or contributes to an emergency need. Reconciliation pattern-matches on the
variant instead of comparing order-kind strings.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Union


class OrderKind(str, Enum):
    """Where the order came from on the donation site."""

    REGULAR = "regular"
    PACKAGE = "package"
    EMERGENCY = "emergency"


class OrderStatus(str, Enum):
    """Payment status of an order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    """Processing status of the gateway transaction backing an order."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class EmergencyNeedStatus(str, Enum):
    FUNDRAISING = "fundraising"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SupplyLine:
    """A donation that buys `quantity` units of a regular supply."""

    supply_id: int
    quantity: int
    unit_price: int

    @property
    def subtotal(self) -> int:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class EmergencyLine:
    """A donation towards an emergency need raised for a case."""

    emergency_need_id: int
    quantity: int
    unit_price: int

    @property
    def subtotal(self) -> int:
        return self.quantity * self.unit_price


OrderLine = Union[SupplyLine, EmergencyLine]
