"""
Job Submission and Refund API Endpoints

Orders are enqueued as raw payloads. Refunds are recorded as pending
first and then enqueued by id.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from orderflow.database.connection import get_db_dependency
from orderflow.database.models import RefundStatus, RefundType
from orderflow.ingestion.jobs import JobProducer
from orderflow.processing import refund_service
from orderflow.processing.schemas import OrderPayload
from orderflow.serving.api.dependencies import get_job_producer

router = APIRouter()
logger = structlog.get_logger(__name__)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class JobAccepted(BaseModel):
    job_id: str
    job_type: str
    attempt: int


class RefundRequest(BaseModel):
    order_id: int
    amount: Optional[Decimal] = Field(default=None, gt=0, description="Omit for a full refund")
    reason: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    refund_number: str
    order_id: int
    customer_id: int
    refund_amount: Decimal
    original_amount: Decimal
    type: RefundType
    status: RefundStatus
    reason: Optional[str]
    transaction_id: Optional[str]
    refund_percentage: float
    created_at: datetime
    completed_at: Optional[datetime]


class OrderRefundsResponse(BaseModel):
    order_id: int
    total_refunded: Decimal
    refunds: List[RefundResponse]


class RefundCreated(BaseModel):
    refund: RefundResponse
    job: JobAccepted


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/jobs/orders", response_model=JobAccepted, status_code=202)
async def submit_order(
    payload: OrderPayload,
    producer: JobProducer = Depends(get_job_producer),
) -> JobAccepted:
    """Enqueue an order processing job."""
    envelope = await producer.enqueue_order(payload)
    return JobAccepted(job_id=envelope.job_id, job_type=envelope.job_type.value, attempt=envelope.attempt)


@router.post("/refunds", response_model=RefundCreated, status_code=202)
async def submit_refund(
    body: RefundRequest,
    db: AsyncSession = Depends(get_db_dependency),
    producer: JobProducer = Depends(get_job_producer),
) -> RefundCreated:
    """Record a pending refund and enqueue its processing job."""
    refund = await refund_service.create_refund(
        db,
        order_id=body.order_id,
        amount=body.amount,
        reason=body.reason,
        notes=body.notes,
    )
    # The job must never see an uncommitted refund
    await db.commit()

    envelope = await producer.enqueue_refund(refund.id)
    return RefundCreated(
        refund=RefundResponse.model_validate(refund),
        job=JobAccepted(job_id=envelope.job_id, job_type=envelope.job_type.value, attempt=envelope.attempt),
    )


@router.get("/refunds", response_model=List[RefundResponse])
async def recent_refunds(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db_dependency),
) -> List[RefundResponse]:
    refunds = await refund_service.list_recent_refunds(db, limit=limit)
    return [RefundResponse.model_validate(refund) for refund in refunds]


@router.get("/refunds/{refund_id}", response_model=RefundResponse)
async def get_refund(refund_id: int, db: AsyncSession = Depends(get_db_dependency)) -> RefundResponse:
    return RefundResponse.model_validate(await refund_service.get_refund(db, refund_id))


@router.get("/orders/{order_id}/refunds", response_model=OrderRefundsResponse)
async def order_refunds(order_id: int, db: AsyncSession = Depends(get_db_dependency)) -> OrderRefundsResponse:
    result = await refund_service.list_order_refunds(db, order_id)
    return OrderRefundsResponse(
        order_id=result.order_id,
        total_refunded=result.total_refunded,
        refunds=[RefundResponse.model_validate(refund) for refund in result.refunds],
    )
