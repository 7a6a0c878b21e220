"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CheckoutResponse,
    CreateOrderRequest,
    OrderLineRequest,
    OrderResponse,
)

__all__ = [
    "app",
    "CheckoutResponse",
    "CreateOrderRequest",
    "OrderLineRequest",
    "OrderResponse",
]
