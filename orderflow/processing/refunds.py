"""
Refund Processing Pipeline

State machine ``pending -> processing -> completed | failed`` with
``completed`` absorbing. A run is split into two transactions:

1. Settlement: lock the order, check eligibility, call the gateway and
   durably record the gateway transaction id. The refund stays
   ``processing``; from here on it counts against the order's
   refundable amount.
2. Compensations: re-check the cumulative refund invariant, update the
   order, release stock (full refunds only), adjust customer stats,
   decrement the metrics ledger and mark the refund ``completed``.

A failure in (2) leaves the settlement in place. Re-running the job
finds a settled refund, skips the gateway and retries (2). The metrics
decrement carries a per-refund token, so a replay never subtracts the
same refund twice.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Dict, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from orderflow.config import get_settings
from orderflow.database.models import (
    FULFILLED_ORDER_STATUSES,
    Order,
    OrderStatus,
    PaymentStatus,
    Refund,
    RefundStatus,
)
from orderflow.ledger.customers import decrement_total_spent, recompute_customer_stats, to_decimal
from orderflow.ledger.kpis import recompute_leaderboard
from orderflow.ledger.metrics import MetricsLedger, scope_keys_for
from orderflow.ledger.stock import release_items
from orderflow.processing.errors import (
    CompensationError,
    GatewayError,
    OrderFlowError,
    OrderNotFound,
    RefundInvariantViolation,
    RefundNotFound,
    RefundValidationError,
)
from orderflow.processing.gateway import PaymentGateway
from orderflow.processing.notifications import NotificationDispatcher
from orderflow.processing.schemas import NotificationType

logger = structlog.get_logger(__name__)
settings = get_settings()


@dataclass
class RefundOutcome:
    """Result of one refund job attempt"""
    refund_id: int
    refund_number: str
    order_id: int
    status: RefundStatus
    refund_amount: Decimal
    transaction_id: Optional[str]
    order_status: OrderStatus
    payment_status: PaymentStatus
    already_completed: bool = False

    @property
    def completed(self) -> bool:
        return self.status == RefundStatus.COMPLETED

    @classmethod
    def build(cls, refund: Refund, order: Order, already_completed: bool = False) -> "RefundOutcome":
        return cls(
            refund_id=refund.id,
            refund_number=refund.refund_number,
            order_id=order.id,
            status=refund.status,
            refund_amount=to_decimal(refund.refund_amount),
            transaction_id=refund.transaction_id,
            order_status=order.status,
            payment_status=order.payment_status,
            already_completed=already_completed,
        )


async def settled_refund_total(
    session: AsyncSession,
    order_id: int,
    exclude_refund_id: Optional[int] = None,
) -> Decimal:
    """Sum of refunds on ``order_id`` whose money has left the gateway."""
    query = select(func.coalesce(func.sum(Refund.refund_amount), 0)).where(
        Refund.order_id == order_id,
        Refund.settled_clause(),
    )
    if exclude_refund_id is not None:
        query = query.where(Refund.id != exclude_refund_id)
    return to_decimal(await session.scalar(query))


async def lock_order(session: AsyncSession, order_id: int, with_items: bool = False) -> Order:
    """Load and row-lock an order for the rest of the transaction."""
    query = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if with_items:
        query = query.options(selectinload(Order.items))
    order = await session.scalar(query)
    if order is None:
        raise OrderNotFound("Order not found", order_id=order_id)
    return order


class RefundProcessor:
    """
    Refund settlement state machine.

    Example:
        processor = RefundProcessor(get_session_factory(), gateway, MetricsLedger(store))
        outcome = await processor.process(refund_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        ledger: MetricsLedger,
        dispatcher: Optional[NotificationDispatcher] = None,
        leaderboard_size: Optional[int] = None,
        processed_by: str = "orderflow-worker",
    ):
        self._session_factory = session_factory
        self.gateway = gateway
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.leaderboard_size = leaderboard_size or settings.processing.leaderboard_size
        self.processed_by = processed_by
        self._order_locks: Dict[int, asyncio.Lock] = {}
        self._lock_holders: Dict[int, int] = defaultdict(int)

    async def process(self, refund_id: int) -> RefundOutcome:
        """
        Run one refund job attempt.

        Raises:
            RefundNotFound: no such refund
            RefundValidationError: refund is not eligible; recorded as failed
            GatewayError: gateway declined; recorded as failed, retryable
            CompensationError: settled but compensations did not commit
        """
        order_id = await self._order_id_for(refund_id)

        async with self._order_lock(order_id):
            outcome = await self._settle(refund_id, order_id)
            if outcome.already_completed:
                logger.info("Refund already completed", refund_id=refund_id)
                return outcome

            outcome = await self._run_compensations(refund_id, order_id, outcome.transaction_id)
            if outcome.already_completed:
                return outcome

            logger.info(
                "Refund completed",
                refund_id=refund_id,
                order_id=order_id,
                refund_amount=str(outcome.refund_amount),
                transaction_id=outcome.transaction_id,
            )

            if self.dispatcher is not None:
                await self.dispatcher.notify(order_id, NotificationType.REFUND_COMPLETED)
            await self._refresh_leaderboard()

        return outcome

    @asynccontextmanager
    async def _order_lock(self, order_id: int) -> AsyncIterator[None]:
        """Serialize runs for one order; the lock is dropped once no run holds or awaits it."""
        lock = self._order_locks.setdefault(order_id, asyncio.Lock())
        self._lock_holders[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[order_id] -= 1
            if self._lock_holders[order_id] == 0:
                del self._lock_holders[order_id]
                del self._order_locks[order_id]

    async def _order_id_for(self, refund_id: int) -> int:
        async with self._session_factory() as session:
            order_id = await session.scalar(select(Refund.order_id).where(Refund.id == refund_id))
        if order_id is None:
            logger.warning("Refund not found", refund_id=refund_id)
            raise RefundNotFound("Refund not found", refund_id=refund_id)
        return order_id

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    async def _settle(self, refund_id: int, order_id: int) -> RefundOutcome:
        failure: Optional[OrderFlowError] = None

        async with self._session_factory() as session:
            async with session.begin():
                order = await lock_order(session, order_id)
                refund = await session.get(Refund, refund_id, populate_existing=True)

                if refund.status == RefundStatus.COMPLETED:
                    return RefundOutcome.build(refund, order, already_completed=True)

                if refund.is_settled:
                    logger.warning(
                        "Resuming compensations for settled refund",
                        refund_id=refund_id,
                        transaction_id=refund.transaction_id,
                        previous_error=refund.compensation_error,
                    )
                    return RefundOutcome.build(refund, order)

                refund.mark_processing()
                refund.processed_by = self.processed_by

                reason = await self._eligibility_error(session, order, refund)
                if reason is not None:
                    refund.mark_failed(reason)
                    failure = RefundValidationError(reason, refund_id=refund_id, order_id=order_id)
                else:
                    # refund_number is the gateway idempotency key; a retry after a
                    # lost commit must get the original settlement back
                    result = await self.gateway.refund(refund)
                    if result.success:
                        refund.record_settlement(
                            result.transaction_id,
                            result.gateway_data.model_dump(mode="json") if result.gateway_data else None,
                        )
                        logger.info(
                            "Refund settled at gateway",
                            refund_id=refund_id,
                            transaction_id=result.transaction_id,
                        )
                    else:
                        error = result.error or "Payment gateway refund failed"
                        refund.mark_failed(error)
                        failure = GatewayError(error, refund_id=refund_id, order_id=order_id)

                outcome = RefundOutcome.build(refund, order)

        if failure is not None:
            logger.warning(
                "Refund failed",
                refund_id=refund_id,
                error=failure.message,
                retryable=failure.retryable,
            )
            raise failure
        return outcome

    async def _eligibility_error(self, session: AsyncSession, order: Order, refund: Refund) -> Optional[str]:
        if order.status not in FULFILLED_ORDER_STATUSES:
            return f"Order status '{order.status.value}' is not refundable"

        amount = to_decimal(refund.refund_amount)
        limit = to_decimal(refund.original_amount)
        if amount <= 0:
            return "Refund amount must be greater than zero"
        if amount > limit:
            return f"Refund amount {amount} exceeds original amount {limit}"

        already = await settled_refund_total(session, order.id, exclude_refund_id=refund.id)
        if already + amount > limit:
            return f"Cumulative refunds {already + amount} would exceed original amount {limit}"
        return None

    # -------------------------------------------------------------------------
    # Compensations
    # -------------------------------------------------------------------------

    async def _run_compensations(
        self,
        refund_id: int,
        order_id: int,
        transaction_id: Optional[str],
    ) -> RefundOutcome:
        try:
            return await self._compensate(refund_id, order_id)
        except RefundInvariantViolation as e:
            await self._record_compensation_error(refund_id, e.context["cause"])
            logger.error(
                "Refund invariant violated after settlement",
                refund_id=refund_id,
                order_id=order_id,
                transaction_id=transaction_id,
                cause=e.context["cause"],
            )
            raise
        except Exception as e:
            await self._record_compensation_error(refund_id, str(e))
            logger.error(
                "Refund compensation failed after settlement",
                refund_id=refund_id,
                order_id=order_id,
                transaction_id=transaction_id,
                error=str(e),
            )
            raise CompensationError(refund_id, transaction_id, str(e)) from e

    async def _compensate(self, refund_id: int, order_id: int) -> RefundOutcome:
        async with self._session_factory() as session:
            async with session.begin():
                order = await lock_order(session, order_id, with_items=True)
                refund = await session.get(Refund, refund_id, populate_existing=True)

                if refund.status == RefundStatus.COMPLETED:
                    return RefundOutcome.build(refund, order, already_completed=True)

                settled = await settled_refund_total(session, order_id)
                limit = to_decimal(refund.original_amount)
                if settled > limit:
                    raise RefundInvariantViolation(refund_id, refund.transaction_id, settled, limit)

                if refund.is_full_refund:
                    order.status = OrderStatus.CANCELLED
                    order.payment_status = PaymentStatus.REFUNDED
                    await release_items(session, [(item.product_id, item.quantity) for item in order.items])
                else:
                    order.payment_status = PaymentStatus.PARTIALLY_REFUNDED

                await decrement_total_spent(session, refund.customer_id, refund.refund_amount)
                await recompute_customer_stats(session, refund.customer_id)

                await self.ledger.decrement_revenue(
                    scope_keys_for(refund.created_at),
                    to_decimal(refund.refund_amount),
                    token=f"refund:{refund.id}",
                )

                refund.mark_completed()
                return RefundOutcome.build(refund, order)

    async def _record_compensation_error(self, refund_id: int, error: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(Refund)
                        .where(Refund.id == refund_id)
                        .values(compensation_error=error)
                    )
        except Exception as e:
            logger.error("Could not record compensation error", refund_id=refund_id, error=str(e))

    async def _refresh_leaderboard(self) -> None:
        try:
            async with self._session_factory() as session:
                await recompute_leaderboard(session, self.ledger, self.leaderboard_size)
        except Exception as e:
            logger.warning("Leaderboard recompute failed", error=str(e))
