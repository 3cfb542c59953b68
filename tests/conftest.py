"""
Test Suite Configuration
"""
from decimal import Decimal
from typing import AsyncGenerator, Dict

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from orderflow.database.connection import create_session_factory
from orderflow.database.models import Base, Product
from orderflow.ledger.metrics import MetricsLedger
from orderflow.ledger.store import InMemoryMetricsStore
from orderflow.processing.gateway import SimulatedPaymentGateway
from orderflow.processing.notifications import NotificationDispatcher
from orderflow.processing.orders import OrderOutcome, OrderProcessor
from orderflow.processing.refunds import RefundProcessor


@pytest.fixture
async def test_engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def catalog(session_factory) -> Dict[str, Product]:
    """SKU-A $10 with 10 in stock, SKU-B $15 with 5 in stock"""
    products = {
        "SKU-A": Product(sku="SKU-A", name="Widget A", price=Decimal("10.00"), stock_quantity=10),
        "SKU-B": Product(sku="SKU-B", name="Widget B", price=Decimal("15.00"), stock_quantity=5),
    }
    async with session_factory() as session:
        async with session.begin():
            session.add_all(products.values())
    return products


@pytest.fixture
def store() -> InMemoryMetricsStore:
    return InMemoryMetricsStore()


@pytest.fixture
def ledger(store) -> MetricsLedger:
    return MetricsLedger(store, ttl_seconds=3600)


@pytest.fixture
def approving_gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(charge_success_rate=1.0, refund_success_rate=1.0, seed=7)


@pytest.fixture
def declining_gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(charge_success_rate=0.0, refund_success_rate=0.0, seed=7)


@pytest.fixture
def dispatcher(session_factory) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory)


@pytest.fixture
def order_processor(session_factory, approving_gateway, dispatcher) -> OrderProcessor:
    return OrderProcessor(session_factory, approving_gateway, dispatcher)


@pytest.fixture
def refund_processor(session_factory, approving_gateway, ledger, dispatcher) -> RefundProcessor:
    return RefundProcessor(session_factory, approving_gateway, ledger, dispatcher)


@pytest.fixture
def sample_payload() -> dict:
    """Two A at $10 and one B at $15: $35"""
    return {
        "email": "ada@example.com",
        "name": "Ada Lovelace",
        "phone": "555-0100",
        "address": "12 Analytical Row",
        "products": [
            {"sku": "SKU-A", "quantity": 2},
            {"sku": "SKU-B", "quantity": 1},
        ],
    }


@pytest.fixture
async def paid_order(order_processor, catalog, sample_payload) -> OrderOutcome:
    outcome = await order_processor.process(sample_payload)
    assert outcome.paid
    return outcome
