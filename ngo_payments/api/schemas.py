"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ngo_payments.core.order_lines import EmergencyLine, OrderKind, OrderLine, SupplyLine


class OrderLineRequest(BaseModel):
    """One donated item: a regular supply or an emergency need."""

    supply_id: Optional[int] = Field(default=None, description="Regular supply ID")
    emergency_need_id: Optional[int] = Field(default=None, description="Emergency need ID")
    quantity: int = Field(..., gt=0, description="Quantity donated")
    unit_price: int = Field(..., ge=0, description="Unit price in whole currency units")

    @model_validator(mode="after")
    def validate_single_target(self) -> "OrderLineRequest":
        """Exactly one of supply_id / emergency_need_id must be set."""
        if (self.supply_id is None) == (self.emergency_need_id is None):
            raise ValueError("Provide exactly one of supply_id or emergency_need_id")
        return self

    def to_line(self) -> OrderLine:
        if self.supply_id is not None:
            return SupplyLine(
                supply_id=self.supply_id, quantity=self.quantity, unit_price=self.unit_price
            )
        return EmergencyLine(
            emergency_need_id=self.emergency_need_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
        )


class CreateOrderRequest(BaseModel):
    """Request schema for creating a donation order."""

    kind: OrderKind = Field(default=OrderKind.REGULAR, description="Order kind")
    lines: List[OrderLineRequest] = Field(..., min_length=1, description="Line items")
    user_id: Optional[int] = Field(default=None, description="Donor account ID")
    trade_no: Optional[str] = Field(
        default=None, max_length=20, description="Explicit merchant trade number"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "kind": "package",
                    "lines": [
                        {"supply_id": 14, "quantity": 2, "unit_price": 80},
                        {"supply_id": 15, "quantity": 2, "unit_price": 60},
                        {"supply_id": 18, "quantity": 2, "unit_price": 150},
                        {"supply_id": 19, "quantity": 5, "unit_price": 25},
                    ],
                    "user_id": 7,
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """Response schema for order status."""

    order_id: int = Field(..., description="Order ID")
    trade_no: str = Field(..., description="Merchant trade number")
    kind: str = Field(..., description="Order kind")
    total_amount: int = Field(..., description="Total amount")
    payment_status: str = Field(..., description="Order payment status")
    transaction_status: Optional[str] = Field(default=None, description="Gateway transaction status")
    gateway_trade_no: Optional[str] = Field(default=None, description="ECPay trade reference")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")


class CheckoutRequestBody(BaseModel):
    """Optional URL overrides for a checkout."""

    return_url: Optional[str] = Field(default=None, description="Server callback URL override")
    client_back_url: Optional[str] = Field(
        default=None, description="Browser redirect URL override"
    )


class CheckoutResponse(BaseModel):
    """Signed ECPay checkout payload."""

    trade_no: str = Field(..., description="Merchant trade number sent to ECPay")
    action_url: str = Field(..., description="ECPay checkout endpoint")
    fields: Dict[str, str] = Field(..., description="Form fields, CheckMacValue last")
    form_html: str = Field(..., description="Auto-submitting HTML form")


class MarkPaidResponse(BaseModel):
    """Response schema for the synchronous mark-paid path."""

    trade_no: str = Field(..., description="Merchant trade number")
    applied: bool = Field(..., description="False if the payment had already been settled")


class RecoveryResponse(BaseModel):
    """Response schema for stuck-settlement recovery."""

    found: int = Field(..., description="Stuck transactions found")
    recovered: List[str] = Field(..., description="Trade numbers settled by this run")
    failed: List[str] = Field(..., description="Trade numbers still failing")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
