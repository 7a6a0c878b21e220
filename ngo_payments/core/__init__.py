"""Core payment logic: CheckMacValue, order vocabulary and errors.

Database-backed services (order_service, reconciliation, resubmission) are
imported from their modules directly.
"""
from .checksum import CheckMacValue
from .exceptions import (
    PaymentError,
    PaymentValidationError,
    ReconciliationError,
    ResubmissionRejectedError,
    SignatureMismatchError,
    TradeNotFoundError,
)
from .order_lines import EmergencyLine, OrderKind, OrderStatus, SupplyLine, TransactionStatus

__all__ = [
    "CheckMacValue",
    "EmergencyLine",
    "OrderKind",
    "OrderStatus",
    "PaymentError",
    "PaymentValidationError",
    "ReconciliationError",
    "ResubmissionRejectedError",
    "SignatureMismatchError",
    "SupplyLine",
    "TradeNotFoundError",
    "TransactionStatus",
]
