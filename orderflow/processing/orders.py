"""
Order Processing Pipeline

Turns a raw order payload into a paid or cancelled order:

    received -> customer_resolved -> order_created -> stock_reserved
             -> payment_attempted -> paid | cancelled

Everything from customer resolution to finalize/rollback runs in one
transaction, so a crash mid-way leaves neither an order nor a
reservation behind. Notifications are buffered and dispatched after the
commit.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.database.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
    utcnow,
)
from orderflow.ledger.customers import find_or_create_customer, recompute_customer_stats, to_decimal
from orderflow.ledger.stock import release_items, reserve_items
from orderflow.processing.errors import InvalidPayload
from orderflow.processing.gateway import PaymentGateway
from orderflow.processing.notifications import NotificationDispatcher
from orderflow.processing.schemas import NotificationType, OrderPayload

logger = structlog.get_logger(__name__)


@dataclass
class OrderOutcome:
    """Result of one order job attempt"""
    order_id: int
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    duplicate: bool = False

    @property
    def paid(self) -> bool:
        return self.status == OrderStatus.PAID

    @classmethod
    def from_order(cls, order: Order, duplicate: bool = False) -> "OrderOutcome":
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            total_amount=to_decimal(order.total_amount),
            duplicate=duplicate,
        )


def generate_order_number() -> str:
    return f"ORD-{uuid.uuid4().hex[:8].upper()}"


def parse_payload(payload: Union[OrderPayload, Dict[str, Any]]) -> OrderPayload:
    if isinstance(payload, OrderPayload):
        return payload
    try:
        return OrderPayload.model_validate(payload)
    except (ValidationError, ValueError) as e:
        raise InvalidPayload("Order payload rejected", error=str(e))


class OrderProcessor:
    """
    Order fulfilment state machine.

    Example:
        processor = OrderProcessor(get_session_factory(), SimulatedPaymentGateway())
        outcome = await processor.process({"email": "a@b.c", "name": "A", "products": [...]})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self._session_factory = session_factory
        self.gateway = gateway
        self.dispatcher = dispatcher

    async def process(self, payload: Union[OrderPayload, Dict[str, Any]]) -> OrderOutcome:
        """
        Run one order job attempt.

        Raises:
            InvalidPayload: payload does not validate
            InsufficientStock: a line could not be reserved; nothing is persisted
        """
        payload = parse_payload(payload)
        events: List[NotificationType] = []

        async with self._session_factory() as session:
            async with session.begin():
                if payload.request_id:
                    existing = await session.scalar(
                        select(Order).where(Order.request_id == payload.request_id)
                    )
                    if existing is not None:
                        logger.info(
                            "Order already processed for request",
                            request_id=payload.request_id,
                            order_id=existing.id,
                        )
                        return OrderOutcome.from_order(existing, duplicate=True)

                order = await self._create_order(session, payload)
                events.append(NotificationType.PROCESSING)

                lines = [(item.product_id, item.quantity) for item in order.items]
                await reserve_items(session, lines)

                order.status = OrderStatus.PROCESSING
                order.payment_status = PaymentStatus.PROCESSING

                charge = await self.gateway.charge(order)

                if charge.success:
                    order.status = OrderStatus.PAID
                    order.payment_status = PaymentStatus.PAID
                    order.paid_at = utcnow()
                    if charge.payment is not None:
                        order.payment_data = charge.payment.model_dump(mode="json")
                    events.append(NotificationType.SUCCESS)
                else:
                    await release_items(session, lines)
                    order.status = OrderStatus.CANCELLED
                    order.payment_status = PaymentStatus.FAILED
                    events.append(NotificationType.FAILURE)

                await recompute_customer_stats(session, order.customer_id)
                outcome = OrderOutcome.from_order(order)

        logger.info(
            "Order processed",
            order_id=outcome.order_id,
            order_number=outcome.order_number,
            status=outcome.status.value,
            total_amount=str(outcome.total_amount),
        )

        await self._dispatch(outcome.order_id, events)
        return outcome

    async def _create_order(self, session: AsyncSession, payload: OrderPayload) -> Order:
        customer = await find_or_create_customer(
            session,
            email=payload.customer_email,
            name=payload.customer_name,
            phone=payload.phone,
            address=payload.address,
        )

        skus = sorted({line.sku for line in payload.products})
        result = await session.execute(select(Product).where(Product.sku.in_(skus)))
        catalog = {product.sku: product for product in result.scalars()}

        priced: List[Tuple[Product, int]] = []
        for line in payload.products:
            product = catalog.get(line.sku)
            if product is None:
                logger.warning("Unknown SKU skipped", sku=line.sku)
                continue
            priced.append((product, line.quantity))

        total = sum((to_decimal(product.price) * quantity for product, quantity in priced), Decimal("0.00"))

        order = Order(
            customer_id=customer.id,
            order_number=generate_order_number(),
            request_id=payload.request_id,
            total_amount=total,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            items=[
                OrderItem(
                    product_id=product.id,
                    quantity=quantity,
                    unit_price=to_decimal(product.price),
                    total_price=to_decimal(product.price) * quantity,
                )
                for product, quantity in priced
            ],
        )
        session.add(order)
        await session.flush()

        logger.info(
            "Order created",
            order_id=order.id,
            customer_id=customer.id,
            items=len(priced),
            total_amount=str(total),
        )
        return order

    async def _dispatch(self, order_id: int, events: List[NotificationType]) -> None:
        if self.dispatcher is None:
            return
        for notification_type in events:
            await self.dispatcher.notify(order_id, notification_type)
