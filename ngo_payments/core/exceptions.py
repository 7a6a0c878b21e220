"""Exceptions raised along the checkout, callback and reconciliation paths."""


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when an order cannot be turned into a checkout request."""

    pass


class SignatureMismatchError(PaymentError):
    """Raised when a callback's CheckMacValue is missing or does not match."""

    pass


class TradeNotFoundError(PaymentError):
    """Raised when a trade number has no matching order or transaction."""

    def __init__(self, trade_no: str):
        super().__init__(f"No order or transaction for trade number {trade_no!r}")
        self.trade_no = trade_no


class ReconciliationError(PaymentError):
    """Raised when applying a verified payment to stock or needs fails."""

    pass


class ResubmissionRejectedError(PaymentError):
    """Raised when an order may not be sent to the gateway again."""

    def __init__(self, order_id: int, reason: str):
        super().__init__(f"Order {order_id} cannot be resubmitted: {reason}")
        self.order_id = order_id
        self.reason = reason
