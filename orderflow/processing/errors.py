"""
Processing Errors

Failure taxonomy shared by the pipelines and the job consumer. The
consumer only looks at ``retryable``: permanent failures are
acknowledged (their outcome is already recorded on the Order/Refund
row), retryable ones go back on the topic until the attempt budget is
spent and then to the dead-letter topic.
"""

from decimal import Decimal
from typing import Any, Optional


class OrderFlowError(Exception):
    """Base class for pipeline failures"""

    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


# =============================================================================
# PERMANENT
# =============================================================================

class ValidationFailure(OrderFlowError):
    """Input or state rejected; retrying cannot change the outcome"""


class InvalidPayload(ValidationFailure):
    """Job payload does not match the expected schema"""


class RefundValidationError(ValidationFailure):
    """Refund is not eligible for settlement"""


class NotFoundError(ValidationFailure):
    """Referenced record does not exist"""


class OrderNotFound(NotFoundError):
    pass


class RefundNotFound(NotFoundError):
    pass


class ResourceUnavailable(OrderFlowError):
    """A resource the job needs is exhausted for this attempt"""


class InsufficientStock(ResourceUnavailable):
    """Stock reservation failed for a line item"""

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        super().__init__(
            "Insufficient stock for order",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


# =============================================================================
# RETRYABLE
# =============================================================================

class TransientGatewayFailure(OrderFlowError):
    """Gateway declined or errored; the refund path may retry"""

    retryable = True


class GatewayError(TransientGatewayFailure):
    pass


class InfrastructureFailure(OrderFlowError):
    """Store or transaction failure; safe to retry"""

    retryable = True


class CompensationError(InfrastructureFailure):
    """Refund settled at the gateway but local compensations did not commit"""

    def __init__(self, refund_id: int, transaction_id: Optional[str], cause: str):
        super().__init__(
            "Refund compensation failed after settlement",
            refund_id=refund_id,
            transaction_id=transaction_id,
            cause=cause,
        )
        self.refund_id = refund_id
        self.transaction_id = transaction_id


class RefundInvariantViolation(CompensationError):
    """Settled refunds for an order would exceed its original amount"""

    def __init__(self, refund_id: int, transaction_id: Optional[str], settled: Decimal, limit: Decimal):
        super().__init__(
            refund_id,
            transaction_id,
            f"settled refunds {settled} exceed original amount {limit}",
        )
        # Needs an operator, not another attempt
        self.retryable = False


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are treated as infrastructure failures."""
    if isinstance(exc, OrderFlowError):
        return exc.retryable
    return True
