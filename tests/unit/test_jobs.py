"""
Unit Tests - Job Transport and Notifications
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from orderflow.database.models import Notification, NotificationStatus
from orderflow.ingestion.jobs import (
    ConsumerConfig,
    JobConsumer,
    JobEnvelope,
    JobProducer,
    JobStatus,
    JobType,
    build_handlers,
    topic_for,
)
from orderflow.processing import refund_service
from orderflow.processing.errors import (
    CompensationError,
    GatewayError,
    InsufficientStock,
    InvalidPayload,
    OrderNotFound,
    RefundInvariantViolation,
    RefundValidationError,
    is_retryable,
)
from orderflow.processing.schemas import NotificationChannel, NotificationType


class FakeKafkaProducer:
    """Records send_and_wait calls instead of talking to a broker"""

    def __init__(self):
        self.sent = []

    async def send_and_wait(self, topic, value=None, key=None):
        self.sent.append((topic, value, key))

    def topics(self):
        return [topic for topic, _, _ in self.sent]


@pytest.fixture
def kafka():
    return FakeKafkaProducer()


@pytest.fixture
def producer(kafka):
    return JobProducer(producer=kafka)


@pytest.fixture
def consumer_config():
    return ConsumerConfig(topics=["order-jobs", "refund-jobs"], job_timeout_seconds=0.5)


def _consumer(producer, config, handler, job_type=JobType.REFUND):
    consumer = JobConsumer(producer=producer, config=config)
    consumer.register_handler(job_type, handler)
    return consumer


def _job(attempt=1, max_attempts=3, job_type=JobType.REFUND, payload=None):
    return JobEnvelope(
        job_type=job_type,
        payload=payload or {"refund_id": 1},
        attempt=attempt,
        max_attempts=max_attempts,
    ).model_dump(mode="json")


class TestJobProducer:
    """Tests for enqueueing jobs"""

    async def test_enqueue_refund(self, producer, kafka):
        """Test a refund job lands on the refund topic keyed by job id"""
        envelope = await producer.enqueue_refund(42)

        topic, value, key = kafka.sent[0]
        assert topic == topic_for(JobType.REFUND)
        assert key == envelope.job_id
        assert value["payload"] == {"refund_id": 42}
        assert value["attempt"] == 1
        assert value["job_type"] == "refund"

    async def test_enqueue_order_validates(self, producer, kafka, sample_payload):
        """Test order payloads are validated before publishing"""
        envelope = await producer.enqueue_order(sample_payload)

        assert kafka.topics() == [topic_for(JobType.ORDER)]
        assert envelope.payload["customer_email"] == "ada@example.com"

        with pytest.raises(InvalidPayload):
            await producer.enqueue_order({"name": "No Email", "products": []})
        assert len(kafka.sent) == 1

    async def test_publish_requires_start(self):
        """Test publishing without a producer fails loudly"""
        producer = JobProducer()

        with pytest.raises(RuntimeError):
            await producer.enqueue_refund(1)


class TestJobConsumer:
    """Tests for job disposition"""

    async def test_success(self, producer, kafka, consumer_config):
        """Test a handled job is acknowledged with nothing republished"""
        seen = []

        async def handler(payload):
            seen.append(payload)

        status = await _consumer(producer, consumer_config, handler).handle("refund-jobs", _job())

        assert status == JobStatus.SUCCEEDED
        assert seen == [{"refund_id": 1}]
        assert kafka.sent == []

    async def test_retryable_failure_is_requeued(self, producer, kafka, consumer_config):
        """Test a transient error republishes the job with the next attempt"""
        async def handler(payload):
            raise GatewayError("Payment gateway declined refund")

        status = await _consumer(producer, consumer_config, handler).handle("refund-jobs", _job())

        assert status == JobStatus.RETRIED
        topic, value, _ = kafka.sent[0]
        assert topic == "refund-jobs"
        assert value["attempt"] == 2
        assert "declined" in value["last_error"]

    async def test_exhausted_job_is_dead_lettered(self, producer, kafka, consumer_config):
        """Test the last attempt goes to the dead-letter topic"""
        async def handler(payload):
            raise ConnectionError("database unavailable")

        status = await _consumer(producer, consumer_config, handler).handle(
            "refund-jobs", _job(attempt=3, max_attempts=3)
        )

        assert status == JobStatus.DEAD_LETTERED
        topic, value, _ = kafka.sent[0]
        assert topic == "refund-jobs.dlq"
        assert value["original_topic"] == "refund-jobs"
        assert value["original_data"]["attempt"] == 3
        assert "database unavailable" in value["error"]

    async def test_permanent_failure_is_acknowledged(self, producer, kafka, consumer_config):
        """Test non-retryable errors are neither retried nor dead-lettered"""
        async def handler(payload):
            raise RefundValidationError("Order status 'cancelled' is not refundable")

        status = await _consumer(producer, consumer_config, handler).handle("refund-jobs", _job())

        assert status == JobStatus.FAILED
        assert kafka.sent == []

    async def test_timeout_is_retried(self, producer, kafka):
        """Test a handler exceeding the job timeout counts as a transient failure"""
        async def handler(payload):
            await asyncio.sleep(1)

        config = ConsumerConfig(topics=["refund-jobs"], job_timeout_seconds=0.05)
        status = await _consumer(producer, config, handler).handle("refund-jobs", _job())

        assert status == JobStatus.RETRIED
        assert "timed out" in kafka.sent[0][1]["last_error"]

    async def test_invalid_envelope_is_dead_lettered(self, producer, kafka, consumer_config):
        """Test a malformed message goes straight to the dead-letter topic"""
        consumer = JobConsumer(producer=producer, config=consumer_config)

        status = await consumer.handle("order-jobs", {"job_type": "unknown", "attempt": 0})

        assert status == JobStatus.DEAD_LETTERED
        assert kafka.topics() == ["order-jobs.dlq"]
        assert "Invalid job envelope" in kafka.sent[0][1]["error"]

    async def test_unhandled_job_type_is_dead_lettered(self, producer, kafka, consumer_config):
        """Test a job without a registered handler is not dropped"""
        consumer = JobConsumer(producer=producer, config=consumer_config)

        status = await consumer.handle("order-jobs", _job(job_type=JobType.ORDER))

        assert status == JobStatus.DEAD_LETTERED
        assert kafka.topics() == ["order-jobs.dlq"]

    async def test_invalid_payload_is_dead_lettered(self, producer, kafka, consumer_config):
        """Test a payload the handler rejects is dead-lettered on first attempt"""
        async def handler(payload):
            raise InvalidPayload("Order payload rejected")

        status = await _consumer(producer, consumer_config, handler, JobType.ORDER).handle(
            "order-jobs", _job(job_type=JobType.ORDER, payload={"name": "x"})
        )

        assert status == JobStatus.DEAD_LETTERED
        assert kafka.topics() == ["order-jobs.dlq"]

    async def test_dead_letter_failure_propagates(self, consumer_config):
        """Test a failed dead-letter publish is raised so the offset stays uncommitted"""
        class BrokenKafka(FakeKafkaProducer):
            async def send_and_wait(self, topic, value=None, key=None):
                raise ConnectionError("broker unavailable")

        consumer = JobConsumer(producer=JobProducer(producer=BrokenKafka()), config=consumer_config)

        with pytest.raises(ConnectionError):
            await consumer.handle("order-jobs", {"job_type": "order", "attempt": "x"})


class TestHandlers:
    """Tests for the pipeline-bound handlers"""

    async def test_refund_job_runs_pipeline(self, producer, kafka, consumer_config, order_processor,
                                            refund_processor, paid_order, session_factory):
        """Test a refund job settles the refund end to end"""
        async with session_factory() as session:
            async with session.begin():
                refund = await refund_service.create_refund(session, paid_order.order_id, Decimal("10.00"))

        consumer = JobConsumer(producer=producer, config=consumer_config)
        for job_type, handler in build_handlers(order_processor, refund_processor).items():
            consumer.register_handler(job_type, handler)

        status = await consumer.handle("refund-jobs", _job(payload={"refund_id": refund.id}))

        assert status == JobStatus.SUCCEEDED
        async with session_factory() as session:
            stored = await refund_service.get_refund(session, refund.id)
        assert stored.transaction_id is not None

    async def test_order_job_runs_pipeline(self, producer, consumer_config, order_processor,
                                           refund_processor, catalog, sample_payload):
        """Test an order job creates a paid order"""
        handlers = build_handlers(order_processor, refund_processor)

        outcome = await handlers[JobType.ORDER](sample_payload)

        assert outcome.paid

    @pytest.mark.parametrize("payload", [{}, {"refund_id": None}, {"refund_id": "abc"}])
    async def test_refund_job_requires_integer_id(self, order_processor, refund_processor, payload):
        """Test malformed refund payloads are rejected as invalid"""
        handlers = build_handlers(order_processor, refund_processor)

        with pytest.raises(InvalidPayload):
            await handlers[JobType.REFUND](payload)


class TestRetryTaxonomy:
    """Tests for the retryable flag"""

    def test_classification(self):
        """Test which failures the consumer retries"""
        assert is_retryable(GatewayError("declined")) is True
        assert is_retryable(CompensationError(1, "REF-TXN-1", "store down")) is True
        assert is_retryable(ConnectionError("db down")) is True
        assert is_retryable(InvalidPayload("bad")) is False
        assert is_retryable(OrderNotFound("missing")) is False
        assert is_retryable(InsufficientStock(1, 5, 2)) is False
        assert is_retryable(RefundInvariantViolation(1, "REF-TXN-1", Decimal("50"), Decimal("35"))) is False


class TestNotificationDispatcher:
    """Tests for notification recording"""

    async def test_email_channel(self, dispatcher, paid_order, session_factory):
        """Test an email notification is recorded as sent with metadata"""
        notification = await dispatcher.notify(
            paid_order.order_id, NotificationType.REFUND_COMPLETED, channel=NotificationChannel.EMAIL
        )

        assert notification.status == NotificationStatus.SENT
        assert notification.channel == "email"
        assert "refund" in notification.message
        assert notification.metadata_["customer_email"] == "ada@example.com"
        assert notification.metadata_["items_count"] == 2

    async def test_missing_order_is_not_raised(self, dispatcher, catalog, session_factory):
        """Test a notification for an unknown order is skipped"""
        assert await dispatcher.notify(404, NotificationType.SUCCESS) is None

        async with session_factory() as session:
            assert (await session.execute(select(Notification))).scalars().first() is None
