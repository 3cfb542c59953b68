"""
Processing Module

Order and refund pipelines live in orderflow.processing.orders and
orderflow.processing.refunds.
"""
from .errors import OrderFlowError, is_retryable
from .schemas import OrderPayload, NotificationType

__all__ = [
    "OrderFlowError",
    "is_retryable",
    "OrderPayload",
    "NotificationType",
]
