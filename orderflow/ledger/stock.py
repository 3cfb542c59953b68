"""
Product Stock Ledger

Reservations are conditional UPDATEs evaluated by the database, so two
workers reserving the same product cannot both pass the availability
check. Callers run these inside the job's transaction.
"""

from typing import Iterable, List, Tuple

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database.models import Product
from orderflow.processing.errors import InsufficientStock

logger = structlog.get_logger(__name__)

# (product_id, quantity)
StockLine = Tuple[int, int]


async def available_quantity(session: AsyncSession, product_id: int) -> int:
    """Current available stock read straight from the row."""
    value = await session.scalar(
        select(Product.stock_quantity - Product.reserved_quantity).where(Product.id == product_id)
    )
    return int(value or 0)


async def reserve(session: AsyncSession, product_id: int, quantity: int) -> bool:
    """
    Reserve stock if at least ``quantity`` is available.

    Returns:
        True if reserved, False (and nothing changed) otherwise
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    result = await session.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.stock_quantity - Product.reserved_quantity >= quantity,
        )
        .values(reserved_quantity=Product.reserved_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    reserved = result.rowcount == 1
    if not reserved:
        logger.info("Stock reservation refused", product_id=product_id, quantity=quantity)
    return reserved


async def release(session: AsyncSession, product_id: int, quantity: int) -> None:
    """
    Return reserved stock to availability.

    Releasing more than is reserved floors reserved_quantity at zero, so
    rollback paths may call this without a matching reservation.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(
            reserved_quantity=case(
                (Product.reserved_quantity >= quantity, Product.reserved_quantity - quantity),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )


async def reserve_items(session: AsyncSession, lines: Iterable[StockLine]) -> None:
    """
    Reserve every line or none of them.

    Raises:
        InsufficientStock: for the first line that cannot be reserved,
            after releasing the lines reserved before it
    """
    reserved: List[StockLine] = []
    for product_id, quantity in lines:
        if await reserve(session, product_id, quantity):
            reserved.append((product_id, quantity))
            continue

        available = await available_quantity(session, product_id)
        await release_items(session, reserved)
        raise InsufficientStock(product_id=product_id, requested=quantity, available=available)


async def release_items(session: AsyncSession, lines: Iterable[StockLine]) -> None:
    for product_id, quantity in lines:
        await release(session, product_id, quantity)
