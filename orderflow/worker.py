"""
Job Worker Entry Point

Runs one Kafka consumer bound to the order and refund pipelines. Start
as many worker processes as needed; they share the consumer group.

Usage:
    orderflow-worker
    python -m orderflow.worker
"""

import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from orderflow.config import get_settings
from orderflow.config.logging import configure_logging
from orderflow.database.connection import close_database, create_all, get_session_factory, init_database
from orderflow.ingestion.jobs import JobConsumer, JobProducer, build_handlers
from orderflow.ledger.metrics import MetricsLedger
from orderflow.ledger.store import RedisMetricsStore, close_redis, init_redis
from orderflow.processing.gateway import SimulatedPaymentGateway
from orderflow.processing.notifications import NotificationDispatcher
from orderflow.processing.orders import OrderProcessor
from orderflow.processing.refunds import RefundProcessor

logger = structlog.get_logger(__name__)
settings = get_settings()


async def run_worker() -> None:
    await init_database()
    await create_all()
    redis = await init_redis()

    session_factory = get_session_factory()
    ledger = MetricsLedger(RedisMetricsStore(redis))
    gateway = SimulatedPaymentGateway()
    dispatcher = NotificationDispatcher(session_factory, settings.processing.notification_channel)

    producer = JobProducer()
    await producer.start()

    consumer = JobConsumer(producer=producer)
    handlers = build_handlers(
        OrderProcessor(session_factory, gateway, dispatcher),
        RefundProcessor(session_factory, gateway, ledger, dispatcher),
    )
    for job_type, handler in handlers.items():
        consumer.register_handler(job_type, handler)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(consumer.stop()))

    try:
        await consumer.start()
    finally:
        await producer.stop()
        await close_redis()
        await close_database()


def main() -> None:
    configure_logging()
    start_http_server(settings.monitoring.prometheus_port)
    logger.info("Prometheus metrics exposed", port=settings.monitoring.prometheus_port)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
