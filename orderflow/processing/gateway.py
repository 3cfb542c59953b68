"""
Payment Gateway Interface

The pipelines depend only on PaymentGateway. SimulatedPaymentGateway is
the stand-in used for local runs and tests: it succeeds with a
configurable probability and fabricates reference ids.
"""

import random
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog

from orderflow.config import get_settings
from orderflow.database.models import Order, Refund
from orderflow.processing.schemas import (
    ChargeResult,
    PaymentData,
    RefundGatewayData,
    RefundResult,
)

logger = structlog.get_logger(__name__)
settings = get_settings()


class PaymentGateway(ABC):
    """Abstract payment gateway"""

    @abstractmethod
    async def charge(self, order: Order) -> ChargeResult:
        """Charge the order total. A decline is a result, not an exception."""
        pass

    @abstractmethod
    async def refund(self, refund: Refund) -> RefundResult:
        """
        Return ``refund.refund_amount`` to the customer.

        ``refund.refund_number`` is the idempotency key. The settlement is
        committed only after this call returns, so a job retried after a
        lost commit calls again with the same refund; implementations must
        return the original successful result instead of paying twice.
        """
        pass


def _reference(prefix: str, length: int = 12) -> str:
    return f"{prefix}{uuid.uuid4().hex[:length].upper()}"


class SimulatedPaymentGateway(PaymentGateway):
    """
    Probabilistic gateway.

    Example:
        gateway = SimulatedPaymentGateway(charge_success_rate=1.0)
        result = await gateway.charge(order)
    """

    def __init__(
        self,
        charge_success_rate: Optional[float] = None,
        refund_success_rate: Optional[float] = None,
        seed: Optional[int] = None,
    ):
        self.charge_success_rate = (
            settings.processing.charge_success_rate if charge_success_rate is None else charge_success_rate
        )
        self.refund_success_rate = (
            settings.processing.refund_success_rate if refund_success_rate is None else refund_success_rate
        )
        self._rng = random.Random(seed)
        self._settled: Dict[str, RefundResult] = {}

    async def charge(self, order: Order) -> ChargeResult:
        if self._rng.random() >= self.charge_success_rate:
            logger.info("Simulated charge declined", order_id=order.id)
            return ChargeResult(success=False, error="Payment declined")

        transaction_id = _reference("TXN-")
        return ChargeResult(
            success=True,
            transaction_id=transaction_id,
            payment=PaymentData(
                transaction_id=transaction_id,
                payment_method="credit_card",
                gateway="simulated",
                processed_at=datetime.now(timezone.utc),
            ),
        )

    async def refund(self, refund: Refund) -> RefundResult:
        settled = self._settled.get(refund.refund_number)
        if settled is not None:
            logger.info("Simulated refund replayed", refund_id=refund.id, transaction_id=settled.transaction_id)
            return settled

        if self._rng.random() >= self.refund_success_rate:
            logger.info("Simulated refund declined", refund_id=refund.id)
            return RefundResult(success=False, error="Payment gateway declined refund")

        result = RefundResult(
            success=True,
            transaction_id=_reference("REF-TXN-"),
            gateway_data=RefundGatewayData(
                gateway="simulated",
                refund_reference=f"re_{uuid.uuid4().hex[:24]}",
                processed_at=datetime.now(timezone.utc),
            ),
        )
        self._settled[refund.refund_number] = result
        return result
