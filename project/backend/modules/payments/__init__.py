"""
Payments: order creation, webhook crediting and repair.
"""

from modules.payments.orders import CREDIT_PACKS, PaymentService, RazorpayGateway
from modules.payments.repair import process_authorized_orders
from modules.payments.webhook import PaymentWebhookHandler

__all__ = [
    "CREDIT_PACKS",
    "PaymentService",
    "PaymentWebhookHandler",
    "RazorpayGateway",
    "process_authorized_orders",
]
