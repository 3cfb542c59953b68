"""
Customer Stats Aggregator

total_spent and total_orders are always recomputed from the orders
table; nothing here increments them in place.

total_spent is net of settled refunds: a partially refunded order
contributes its total minus what was returned to the customer, and a
fully refunded order is cancelled and contributes nothing.
"""

from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database.models import Customer, Order, OrderStatus, Refund

logger = structlog.get_logger(__name__)


def to_decimal(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


async def find_or_create_customer(
    session: AsyncSession,
    email: str,
    name: str,
    phone: Optional[str] = None,
    address: Optional[str] = None,
) -> Customer:
    """
    Resolve a customer by email, creating it on first sight.

    A concurrent insert of the same email fails the unique constraint;
    the job attempt is then retried and finds the row.
    """
    customer = await session.scalar(select(Customer).where(Customer.email == email))
    if customer is not None:
        return customer

    customer = Customer(email=email, name=name, phone=phone, address=address)
    session.add(customer)
    await session.flush()
    logger.info("Customer created", customer_id=customer.id)
    return customer


async def recompute_customer_stats(session: AsyncSession, customer_id: int) -> Customer:
    """Set derived totals from a fresh aggregate over non-cancelled orders."""
    await session.flush()

    order_totals = (
        await session.execute(
            select(
                func.coalesce(func.sum(Order.total_amount), 0),
                func.count(Order.id),
            ).where(
                Order.customer_id == customer_id,
                Order.status != OrderStatus.CANCELLED,
            )
        )
    ).one()

    refunded = await session.scalar(
        select(func.coalesce(func.sum(Refund.refund_amount), 0))
        .join(Order, Refund.order_id == Order.id)
        .where(
            Order.customer_id == customer_id,
            Order.status != OrderStatus.CANCELLED,
            Refund.settled_clause(),
        )
    )

    customer = await session.get(Customer, customer_id, populate_existing=True)
    customer.total_spent = max(Decimal("0.00"), to_decimal(order_totals[0]) - to_decimal(refunded))
    customer.total_orders = int(order_totals[1])
    await session.flush()

    logger.debug(
        "Customer stats recomputed",
        customer_id=customer_id,
        total_spent=str(customer.total_spent),
        total_orders=customer.total_orders,
    )
    return customer


async def decrement_total_spent(session: AsyncSession, customer_id: int, amount: Decimal) -> Customer:
    """
    Subtract a refunded amount, floored at zero.

    Always follow with recompute_customer_stats(); the recompute is the
    authoritative value.
    """
    customer = await session.get(Customer, customer_id)
    customer.total_spent = max(Decimal("0.00"), to_decimal(customer.total_spent) - to_decimal(amount))
    await session.flush()
    return customer
