"""Database package for NGO payments."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    EmergencyNeed,
    Order,
    OrderDetail,
    PaymentTransaction,
    Supply,
)

__all__ = [
    "Base",
    "EmergencyNeed",
    "Order",
    "OrderDetail",
    "PaymentTransaction",
    "Supply",
    "get_db",
    "get_session_factory",
    "init_db",
]
