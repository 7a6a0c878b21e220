"""ECPay integration: checkout client and callback handler."""
from .callback_handler import ACK_ACCEPTED, ACK_REJECTED, CallbackHandler
from .ecpay_client import CheckoutRequest, EcpayClient

__all__ = ["ACK_ACCEPTED", "ACK_REJECTED", "CallbackHandler", "CheckoutRequest", "EcpayClient"]
