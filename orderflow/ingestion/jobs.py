"""
Kafka Job Transport

At-least-once job queue for the order and refund pipelines:
- Producers publish JSON job envelopes to ``order-jobs`` / ``refund-jobs``
- Consumers in one group run each job under a timeout
- Retryable failures are re-published with ``attempt + 1``
- Jobs that exhaust their attempts go to ``<topic>.dlq``; nothing is dropped
- Offsets are committed manually once a job has been handled
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from pydantic import BaseModel, Field, ValidationError
from prometheus_client import Counter, Histogram

from orderflow.config import get_settings
from orderflow.processing.errors import InvalidPayload, is_retryable
from orderflow.processing.schemas import OrderPayload

logger = structlog.get_logger(__name__)
settings = get_settings()


# =============================================================================
# METRICS
# =============================================================================

JOBS_PROCESSED = Counter(
    "orderflow_jobs_processed_total",
    "Total number of jobs handled",
    ["job_type", "status"],
)

JOB_PROCESSING_TIME = Histogram(
    "orderflow_job_processing_seconds",
    "Time spent running job handlers",
    ["job_type"],
)

JOBS_DEAD_LETTERED = Counter(
    "orderflow_jobs_dead_lettered_total",
    "Jobs published to a dead-letter topic",
    ["topic"],
)


# =============================================================================
# JOB MODELS
# =============================================================================

class JobType(str, Enum):
    """Supported job types"""
    ORDER = "order"
    REFUND = "refund"


class JobStatus(str, Enum):
    """How the consumer disposed of a job attempt"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class JobEnvelope(BaseModel):
    """Wire format of every job message"""
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(default=1, ge=1)
    max_attempts: int = Field(default_factory=lambda: settings.processing.max_attempts, ge=1)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_attempt(self, error: str) -> "JobEnvelope":
        return self.model_copy(update={"attempt": self.attempt + 1, "last_error": error})


JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


def topic_for(job_type: JobType) -> str:
    if job_type == JobType.ORDER:
        return settings.kafka.topics_orders
    return settings.kafka.topics_refunds


def _serialize(value: Dict[str, Any]) -> bytes:
    return json.dumps(value).encode("utf-8")


# =============================================================================
# PRODUCER
# =============================================================================

class JobProducer:
    """
    Publishes job envelopes.

    Example:
        producer = JobProducer()
        await producer.start()
        await producer.enqueue_refund(refund.id)
    """

    def __init__(
        self,
        producer: Optional[AIOKafkaProducer] = None,
        bootstrap_servers: Optional[str] = None,
    ):
        self._producer = producer
        self._owns_producer = producer is None
        self.bootstrap_servers = bootstrap_servers or settings.kafka.bootstrap_servers

    async def start(self) -> None:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=_serialize,
                key_serializer=lambda k: k.encode("utf-8") if k else None,
            )
            await self._producer.start()
            logger.info("Job producer started", bootstrap_servers=self.bootstrap_servers)

    async def stop(self) -> None:
        if self._producer is not None and self._owns_producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Job producer stopped")

    async def publish(self, topic: str, envelope: JobEnvelope) -> None:
        if self._producer is None:
            raise RuntimeError("Job producer not started. Call start() first.")
        await self._producer.send_and_wait(
            topic,
            value=envelope.model_dump(mode="json"),
            key=envelope.job_id,
        )

    async def send_raw(self, topic: str, value: Dict[str, Any]) -> None:
        if self._producer is None:
            raise RuntimeError("Job producer not started. Call start() first.")
        await self._producer.send_and_wait(topic, value=value)

    async def enqueue_order(self, payload: Union[OrderPayload, Dict[str, Any]]) -> JobEnvelope:
        """Validate and enqueue an order job."""
        if not isinstance(payload, OrderPayload):
            try:
                payload = OrderPayload.model_validate(payload)
            except ValidationError as e:
                raise InvalidPayload("Order payload rejected", error=str(e))

        envelope = JobEnvelope(job_type=JobType.ORDER, payload=payload.model_dump(mode="json"))
        await self.publish(topic_for(JobType.ORDER), envelope)
        logger.info("Order job enqueued", job_id=envelope.job_id, request_id=payload.request_id)
        return envelope

    async def enqueue_refund(self, refund_id: int) -> JobEnvelope:
        envelope = JobEnvelope(job_type=JobType.REFUND, payload={"refund_id": refund_id})
        await self.publish(topic_for(JobType.REFUND), envelope)
        logger.info("Refund job enqueued", job_id=envelope.job_id, refund_id=refund_id)
        return envelope


# =============================================================================
# CONSUMER
# =============================================================================

@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topics: List[str] = field(default_factory=lambda: settings.kafka.topics)
    group_id: str = field(default_factory=lambda: settings.kafka.consumer_group)
    bootstrap_servers: str = field(default_factory=lambda: settings.kafka.bootstrap_servers)
    auto_offset_reset: str = field(default_factory=lambda: settings.kafka.auto_offset_reset)
    enable_auto_commit: bool = False  # Commit after the job is handled
    max_poll_records: int = field(default_factory=lambda: settings.kafka.max_poll_records)
    session_timeout_ms: int = field(default_factory=lambda: settings.kafka.session_timeout_ms)
    heartbeat_interval_ms: int = field(default_factory=lambda: settings.kafka.heartbeat_interval_ms)
    job_timeout_seconds: float = field(default_factory=lambda: settings.processing.job_timeout_seconds)
    dlq_suffix: str = field(default_factory=lambda: settings.kafka.dlq_suffix)


class JobConsumer:
    """
    Kafka job consumer with timeout, bounded retry and dead-lettering.

    Example:
        consumer = JobConsumer(producer=producer)
        for job_type, handler in build_handlers(orders, refunds).items():
            consumer.register_handler(job_type, handler)
        await consumer.start()
    """

    def __init__(self, producer: JobProducer, config: Optional[ConsumerConfig] = None):
        self.config = config or ConsumerConfig()
        self.producer = producer

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._handlers: Dict[JobType, JobHandler] = {}
        self._running = False

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[job_type] = handler
        logger.info("Registered job handler", job_type=job_type.value)

    async def _create_consumer(self) -> AIOKafkaConsumer:
        """Create and configure Kafka consumer"""
        return AIOKafkaConsumer(
            *self.config.topics,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=self.config.enable_auto_commit,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    async def _send_to_dlq(self, topic: str, data: Dict[str, Any], error: str) -> None:
        """Publish a job to the dead-letter topic. Failures propagate so the offset is not committed."""
        dlq_topic = f"{topic}{self.config.dlq_suffix}"
        await self.producer.send_raw(
            dlq_topic,
            {
                "original_topic": topic,
                "original_data": data,
                "error": error,
                "failed_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        JOBS_DEAD_LETTERED.labels(topic=topic).inc()
        logger.error("Job dead-lettered", topic=dlq_topic, error=error)

    async def handle(self, topic: str, data: Dict[str, Any]) -> JobStatus:
        """
        Run one delivered job message to a final disposition.

        Returns:
            JobStatus telling how the message was disposed of; the caller
            commits the offset afterwards in every case
        """
        try:
            envelope = JobEnvelope.model_validate(data)
        except ValidationError as e:
            await self._send_to_dlq(topic, data, f"Invalid job envelope: {e}")
            return JobStatus.DEAD_LETTERED

        handler = self._handlers.get(envelope.job_type)
        if handler is None:
            await self._send_to_dlq(topic, data, f"No handler for job type {envelope.job_type.value}")
            return JobStatus.DEAD_LETTERED

        structlog.contextvars.bind_contextvars(
            job_id=envelope.job_id,
            job_type=envelope.job_type.value,
            attempt=envelope.attempt,
        )
        start_time = asyncio.get_running_loop().time()

        try:
            await asyncio.wait_for(handler(envelope.payload), timeout=self.config.job_timeout_seconds)
            status = JobStatus.SUCCEEDED
            logger.info("Job succeeded")
        except Exception as e:
            status = await self._handle_failure(topic, envelope, e)
        finally:
            JOB_PROCESSING_TIME.labels(job_type=envelope.job_type.value).observe(
                asyncio.get_running_loop().time() - start_time
            )
            structlog.contextvars.unbind_contextvars("job_id", "job_type", "attempt")

        JOBS_PROCESSED.labels(job_type=envelope.job_type.value, status=status.value).inc()
        return status

    async def _handle_failure(self, topic: str, envelope: JobEnvelope, exc: Exception) -> JobStatus:
        if isinstance(exc, asyncio.TimeoutError):
            error = f"Job timed out after {self.config.job_timeout_seconds}s"
        else:
            error = f"{type(exc).__name__}: {exc}"

        if isinstance(exc, InvalidPayload):
            await self._send_to_dlq(topic, envelope.model_dump(mode="json"), error)
            return JobStatus.DEAD_LETTERED

        if not is_retryable(exc):
            logger.warning("Job failed permanently", error=error)
            return JobStatus.FAILED

        if envelope.exhausted:
            await self._send_to_dlq(topic, envelope.model_dump(mode="json"), error)
            return JobStatus.DEAD_LETTERED

        retry = envelope.next_attempt(error)
        await self.producer.publish(topic, retry)
        logger.warning("Job re-queued", error=error, next_attempt=retry.attempt, max_attempts=retry.max_attempts)
        return JobStatus.RETRIED

    async def start(self) -> None:
        """Consume until stop() is called"""
        logger.info(
            "Starting job consumer",
            topics=self.config.topics,
            group_id=self.config.group_id,
        )

        self._consumer = await self._create_consumer()
        await self._consumer.start()
        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break
                await self.handle(message.topic, message.value)
                await self._consumer.commit()
        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        if not self._running and self._consumer is None:
            return
        logger.info("Stopping job consumer")
        self._running = False

        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None

        logger.info("Job consumer stopped")


# =============================================================================
# HANDLERS
# =============================================================================

def build_handlers(order_processor, refund_processor) -> Dict[JobType, JobHandler]:
    """Bind the pipelines to job types."""

    async def handle_order(payload: Dict[str, Any]) -> Any:
        structlog.contextvars.bind_contextvars(request_id=payload.get("request_id"))
        try:
            return await order_processor.process(payload)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

    async def handle_refund(payload: Dict[str, Any]) -> Any:
        try:
            refund_id = int(payload["refund_id"])
        except (KeyError, TypeError, ValueError):
            raise InvalidPayload("Refund job requires an integer refund_id", payload=payload)

        structlog.contextvars.bind_contextvars(refund_id=refund_id)
        try:
            return await refund_processor.process(refund_id)
        finally:
            structlog.contextvars.unbind_contextvars("refund_id")

    return {
        JobType.ORDER: handle_order,
        JobType.REFUND: handle_refund,
    }
