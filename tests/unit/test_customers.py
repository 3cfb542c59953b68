"""
Unit Tests - Customer Stats Aggregator
"""
from decimal import Decimal

from sqlalchemy import func, select

from orderflow.database.models import Customer, Order, OrderStatus, PaymentStatus
from orderflow.ledger.customers import (
    decrement_total_spent,
    find_or_create_customer,
    recompute_customer_stats,
)


def _order(customer_id: int, number: str, amount: str, status: OrderStatus) -> Order:
    return Order(
        customer_id=customer_id,
        order_number=number,
        total_amount=Decimal(amount),
        status=status,
        payment_status=PaymentStatus.PAID if status != OrderStatus.CANCELLED else PaymentStatus.FAILED,
    )


class TestFindOrCreateCustomer:
    """Tests for customer resolution by email"""

    async def test_creates_on_first_sight(self, test_db):
        """Test a new email creates a customer with zeroed stats"""
        customer = await find_or_create_customer(test_db, "grace@example.com", "Grace", phone="555-0101")

        assert customer.id is not None
        assert customer.name == "Grace"
        assert customer.phone == "555-0101"
        assert customer.total_spent == Decimal("0")
        assert customer.total_orders == 0

    async def test_returns_existing_customer(self, test_db):
        """Test the same email resolves to the same row"""
        first = await find_or_create_customer(test_db, "grace@example.com", "Grace")
        second = await find_or_create_customer(test_db, "grace@example.com", "Grace Hopper")

        assert second.id == first.id
        count = await test_db.scalar(select(func.count(Customer.id)))
        assert count == 1


class TestRecomputeCustomerStats:
    """Tests for derived customer totals"""

    async def test_excludes_cancelled_orders(self, test_db):
        """Test totals only count non-cancelled orders"""
        customer = await find_or_create_customer(test_db, "grace@example.com", "Grace")
        test_db.add_all([
            _order(customer.id, "ORD-1", "35.00", OrderStatus.PAID),
            _order(customer.id, "ORD-2", "12.50", OrderStatus.DELIVERED),
            _order(customer.id, "ORD-3", "99.00", OrderStatus.CANCELLED),
        ])

        customer = await recompute_customer_stats(test_db, customer.id)

        assert customer.total_spent == Decimal("47.50")
        assert customer.total_orders == 2

    async def test_recompute_is_idempotent(self, test_db):
        """Test re-running the recompute changes nothing"""
        customer = await find_or_create_customer(test_db, "grace@example.com", "Grace")
        test_db.add(_order(customer.id, "ORD-1", "20.00", OrderStatus.PAID))

        first = await recompute_customer_stats(test_db, customer.id)
        first_values = (first.total_spent, first.total_orders)
        second = await recompute_customer_stats(test_db, customer.id)

        assert (second.total_spent, second.total_orders) == first_values

    async def test_recompute_overrides_drifted_decrement(self, test_db):
        """Test the recompute is authoritative after a decrement"""
        customer = await find_or_create_customer(test_db, "grace@example.com", "Grace")
        test_db.add(_order(customer.id, "ORD-1", "20.00", OrderStatus.PAID))
        await recompute_customer_stats(test_db, customer.id)

        customer = await decrement_total_spent(test_db, customer.id, Decimal("50.00"))
        assert customer.total_spent == Decimal("0.00")

        customer = await recompute_customer_stats(test_db, customer.id)
        assert customer.total_spent == Decimal("20.00")
