"""
Refund Records

Creation and lookup of refund requests. Creating a refund only records
it as ``pending``; settlement happens in the refund job
(orderflow.processing.refunds).
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database.models import (
    FULFILLED_ORDER_STATUSES,
    Order,
    Refund,
    RefundStatus,
    RefundType,
)
from orderflow.ledger.customers import to_decimal
from orderflow.processing.errors import OrderNotFound, RefundNotFound, RefundValidationError
from orderflow.processing.refunds import settled_refund_total

logger = structlog.get_logger(__name__)


@dataclass
class OrderRefunds:
    order_id: int
    refunds: List[Refund] = field(default_factory=list)
    total_refunded: Decimal = Decimal("0.00")


def generate_refund_number() -> str:
    return f"REF-{uuid.uuid4().hex[:8].upper()}"


async def create_refund(
    session: AsyncSession,
    order_id: int,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> Refund:
    """
    Record a pending refund for an order.

    Omitting ``amount`` requests a full refund. The checks here are a
    fast rejection for obviously invalid requests; the refund job
    re-checks eligibility under the order lock.

    Raises:
        OrderNotFound: no such order
        RefundValidationError: amount or order state is not refundable
    """
    order = await session.get(Order, order_id)
    if order is None:
        raise OrderNotFound("Order not found", order_id=order_id)

    if order.status not in FULFILLED_ORDER_STATUSES:
        raise RefundValidationError(
            f"Order status '{order.status.value}' is not refundable",
            order_id=order_id,
        )

    original = to_decimal(order.total_amount)
    amount = original if amount is None else to_decimal(amount)

    if amount <= 0:
        raise RefundValidationError("Refund amount must be greater than zero", order_id=order_id)
    if amount > original:
        raise RefundValidationError(
            f"Refund amount {amount} exceeds order total {original}",
            order_id=order_id,
        )

    already = await settled_refund_total(session, order_id)
    if already + amount > original:
        raise RefundValidationError(
            f"Cumulative refunds {already + amount} would exceed order total {original}",
            order_id=order_id,
        )

    refund = Refund(
        order_id=order.id,
        customer_id=order.customer_id,
        refund_number=generate_refund_number(),
        refund_amount=amount,
        original_amount=original,
        type=RefundType.FULL if amount == original else RefundType.PARTIAL,
        status=RefundStatus.PENDING,
        reason=reason,
        notes=notes,
    )
    session.add(refund)
    await session.flush()

    logger.info(
        "Refund created",
        refund_id=refund.id,
        order_id=order_id,
        amount=str(amount),
        type=refund.type.value,
    )
    return refund


async def get_refund(session: AsyncSession, refund_id: int) -> Refund:
    refund = await session.get(Refund, refund_id)
    if refund is None:
        raise RefundNotFound("Refund not found", refund_id=refund_id)
    return refund


async def list_order_refunds(session: AsyncSession, order_id: int) -> OrderRefunds:
    """All refunds for an order, newest first, with the settled total."""
    result = await session.execute(
        select(Refund)
        .where(Refund.order_id == order_id)
        .order_by(Refund.created_at.desc(), Refund.id.desc())
    )
    return OrderRefunds(
        order_id=order_id,
        refunds=list(result.scalars()),
        total_refunded=await settled_refund_total(session, order_id),
    )


async def list_recent_refunds(session: AsyncSession, limit: int = 20) -> List[Refund]:
    result = await session.execute(
        select(Refund).order_by(Refund.created_at.desc(), Refund.id.desc()).limit(limit)
    )
    return list(result.scalars())
