"""
Unit Tests - Order Processing Pipeline
"""
import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from orderflow.database.models import (
    Customer,
    Notification,
    NotificationStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
)
from orderflow.ledger.customers import recompute_customer_stats
from orderflow.processing.errors import InsufficientStock, InvalidPayload
from orderflow.processing.orders import OrderProcessor
from orderflow.processing.schemas import PaymentData


async def _available(session_factory, product_id: int) -> int:
    async with session_factory() as session:
        product = await session.get(Product, product_id)
        return product.available_quantity


async def _customer(session_factory, email: str) -> Customer:
    async with session_factory() as session:
        return await session.scalar(select(Customer).where(Customer.email == email))


async def _notification_types(session_factory, order_id: int):
    async with session_factory() as session:
        result = await session.execute(
            select(Notification).where(Notification.order_id == order_id).order_by(Notification.id)
        )
        return [(n.type, n.status) for n in result.scalars()]


class TestSuccessfulOrder:
    """Tests for the paid path"""

    async def test_two_line_order_is_paid(self, paid_order, session_factory, catalog):
        """Test 2 x $10 + 1 x $15 totals $35 and ends paid"""
        assert paid_order.total_amount == Decimal("35.00")
        assert paid_order.status == OrderStatus.PAID
        assert paid_order.payment_status == PaymentStatus.PAID
        assert paid_order.order_number.startswith("ORD-")
        assert len(paid_order.order_number) == 12

        async with session_factory() as session:
            order = await session.get(Order, paid_order.order_id)
            assert order.paid_at is not None
            payment = PaymentData.model_validate(order.payment_data)
            assert payment.transaction_id.startswith("TXN-")

    async def test_line_items_sum_to_total(self, paid_order, session_factory):
        """Test line item totals equal the order total"""
        async with session_factory() as session:
            items_total = await session.scalar(
                select(func.sum(OrderItem.total_price)).where(OrderItem.order_id == paid_order.order_id)
            )
            unit_prices = (
                await session.execute(
                    select(OrderItem.unit_price, OrderItem.quantity)
                    .where(OrderItem.order_id == paid_order.order_id)
                    .order_by(OrderItem.id)
                )
            ).all()

        assert Decimal(str(items_total)) == paid_order.total_amount
        assert [(Decimal(str(p)), q) for p, q in unit_prices] == [(Decimal("10.00"), 2), (Decimal("15.00"), 1)]

    async def test_stock_stays_reserved(self, paid_order, session_factory, catalog):
        """Test a paid order keeps its reservation"""
        assert await _available(session_factory, catalog["SKU-A"].id) == 8
        assert await _available(session_factory, catalog["SKU-B"].id) == 4

    async def test_customer_stats_updated(self, paid_order, session_factory):
        """Test total_spent grows by the order total"""
        customer = await _customer(session_factory, "ada@example.com")

        assert customer.total_spent == Decimal("35.00")
        assert customer.total_orders == 1
        assert customer.phone == "555-0100"

    async def test_notifications_recorded(self, paid_order, session_factory):
        """Test processing and success events are dispatched after commit"""
        events = await _notification_types(session_factory, paid_order.order_id)

        assert events == [
            ("processing", NotificationStatus.SENT),
            ("success", NotificationStatus.SENT),
        ]

    async def test_returning_customer_accumulates(self, order_processor, catalog, sample_payload, session_factory):
        """Test a second order updates the same customer"""
        await order_processor.process(sample_payload)
        await order_processor.process({**sample_payload, "products": [{"sku": "SKU-A", "quantity": 1}]})

        async with session_factory() as session:
            count = await session.scalar(select(func.count(Customer.id)))
        customer = await _customer(session_factory, "ada@example.com")

        assert count == 1
        assert customer.total_spent == Decimal("45.00")
        assert customer.total_orders == 2


class TestDeclinedOrder:
    """Tests for the rollback path"""

    @pytest.fixture
    def declining_processor(self, session_factory, declining_gateway, dispatcher):
        return OrderProcessor(session_factory, declining_gateway, dispatcher)

    async def test_decline_cancels_order(self, declining_processor, catalog, sample_payload):
        """Test a decline ends cancelled with payment failed"""
        outcome = await declining_processor.process(sample_payload)

        assert outcome.status == OrderStatus.CANCELLED
        assert outcome.payment_status == PaymentStatus.FAILED
        assert outcome.paid is False

    async def test_decline_releases_stock(self, declining_processor, catalog, sample_payload, session_factory):
        """Test available stock after rollback equals stock before"""
        before = {sku: await _available(session_factory, p.id) for sku, p in catalog.items()}

        await declining_processor.process(sample_payload)

        after = {sku: await _available(session_factory, p.id) for sku, p in catalog.items()}
        assert after == before

    async def test_decline_leaves_customer_totals_at_zero(self, declining_processor, catalog, sample_payload, session_factory):
        """Test cancelled orders do not count towards customer stats"""
        await declining_processor.process(sample_payload)

        customer = await _customer(session_factory, "ada@example.com")
        assert customer.total_spent == Decimal("0.00")
        assert customer.total_orders == 0

    async def test_decline_notifies_failure(self, declining_processor, catalog, sample_payload, session_factory):
        """Test the failure event is dispatched"""
        outcome = await declining_processor.process(sample_payload)

        events = await _notification_types(session_factory, outcome.order_id)
        assert [event for event, _ in events] == ["processing", "failure"]


class TestOrderEdgeCases:
    """Tests for payload and stock edge cases"""

    async def test_insufficient_stock_persists_nothing(self, order_processor, catalog, sample_payload, session_factory):
        """Test a failed reservation rolls back the whole job"""
        payload = {**sample_payload, "products": [{"sku": "SKU-A", "quantity": 2}, {"sku": "SKU-B", "quantity": 6}]}

        with pytest.raises(InsufficientStock):
            await order_processor.process(payload)

        async with session_factory() as session:
            assert await session.scalar(select(func.count(Order.id))) == 0
            assert await session.scalar(select(func.count(Customer.id))) == 0
        assert await _available(session_factory, catalog["SKU-A"].id) == 10
        assert await _available(session_factory, catalog["SKU-B"].id) == 5

    async def test_unknown_sku_is_skipped(self, order_processor, catalog, sample_payload, session_factory):
        """Test the total reflects only known SKUs"""
        payload = {**sample_payload, "products": [{"sku": "SKU-A", "quantity": 1}, {"sku": "SKU-404", "quantity": 3}]}

        outcome = await order_processor.process(payload)

        async with session_factory() as session:
            items = (await session.execute(
                select(OrderItem).where(OrderItem.order_id == outcome.order_id)
            )).scalars().all()

        assert outcome.total_amount == Decimal("10.00")
        assert len(items) == 1
        assert items[0].product_id == catalog["SKU-A"].id

    async def test_request_id_makes_redelivery_idempotent(self, order_processor, catalog, sample_payload, session_factory):
        """Test a re-delivered job returns the existing order"""
        payload = {**sample_payload, "request_id": "import-42"}

        first = await order_processor.process(payload)
        second = await order_processor.process(payload)

        assert second.duplicate is True
        assert second.order_id == first.order_id
        async with session_factory() as session:
            assert await session.scalar(select(func.count(Order.id))) == 1
        assert await _available(session_factory, catalog["SKU-A"].id) == 8

    async def test_importer_payload_shape(self, order_processor, catalog):
        """Test JSON-encoded products and short field names are accepted"""
        outcome = await order_processor.process({
            "email": "  Bob@Example.COM ",
            "name": "Bob",
            "products": json.dumps([{"sku": "SKU-B", "quantity": 2}]),
        })

        assert outcome.total_amount == Decimal("30.00")

    async def test_invalid_payload(self, order_processor, catalog):
        """Test a payload without an email is rejected permanently"""
        with pytest.raises(InvalidPayload) as exc_info:
            await order_processor.process({"name": "Nobody", "products": []})

        assert exc_info.value.retryable is False

    async def test_stats_match_recompute(self, order_processor, declining_gateway, catalog, sample_payload, session_factory):
        """Test incremental results equal a fresh recompute after mixed outcomes"""
        await order_processor.process(sample_payload)
        await OrderProcessor(session_factory, declining_gateway).process(sample_payload)
        await order_processor.process({**sample_payload, "products": [{"sku": "SKU-B", "quantity": 1}]})

        stored = await _customer(session_factory, "ada@example.com")
        async with session_factory() as session:
            fresh = await recompute_customer_stats(session, stored.id)

        assert (stored.total_spent, stored.total_orders) == (fresh.total_spent, fresh.total_orders)
        assert stored.total_spent == Decimal("50.00")
