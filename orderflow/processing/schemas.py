"""
Pipeline Payload Models

Typed shapes for everything that crosses a pipeline boundary: raw order
job payloads, gateway results, and the JSON blobs persisted on orders,
refunds and notifications. Each blob keeps a narrow ``extra`` bag for
provider-specific fields.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ORDER JOB PAYLOAD
# =============================================================================

class ProductLine(BaseModel):
    """One requested product in a raw order payload"""
    sku: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class OrderPayload(BaseModel):
    """
    Raw order payload as enqueued by producers.

    Accepts the short ``email``/``name`` keys and a JSON-encoded
    ``products`` string as emitted by the CSV importer.
    """
    model_config = ConfigDict(populate_by_name=True)

    customer_email: str = Field(validation_alias=AliasChoices("customer_email", "email"))
    customer_name: str = Field(validation_alias=AliasChoices("customer_name", "name"))
    phone: Optional[str] = None
    address: Optional[str] = None
    products: List[ProductLine] = Field(default_factory=list)
    request_id: Optional[str] = Field(default=None, max_length=100)

    @field_validator("customer_email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("customer_email must be an email address")
        return v

    @field_validator("products", mode="before")
    @classmethod
    def decode_products(cls, v: Any) -> Any:
        if isinstance(v, str):
            return json.loads(v) if v.strip() else []
        return v


# =============================================================================
# GATEWAY RESULTS
# =============================================================================

class PaymentData(BaseModel):
    """Payment metadata stored on a paid order"""
    transaction_id: str
    payment_method: str = "credit_card"
    gateway: str = "simulated"
    processed_at: datetime
    extra: Dict[str, Any] = Field(default_factory=dict)


class ChargeResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    payment: Optional[PaymentData] = None
    error: Optional[str] = None


class RefundGatewayData(BaseModel):
    """Gateway payload stored on a settled refund"""
    gateway: str
    refund_reference: str
    processed_at: datetime
    fee: Decimal = Decimal("0.00")
    extra: Dict[str, Any] = Field(default_factory=dict)


class RefundResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    gateway_data: Optional[RefundGatewayData] = None
    error: Optional[str] = None


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationType(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"
    REFUND_COMPLETED = "refund_completed"


class NotificationChannel(str, Enum):
    LOG = "log"
    EMAIL = "email"


class NotificationMetadata(BaseModel):
    order_id: int
    customer_id: int
    order_number: str
    status: str
    payment_status: str
    total_amount: Decimal
    customer_name: str
    customer_email: str
    items_count: int
    processed_at: datetime
    extra: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# METRICS
# =============================================================================

class MetricsSnapshot(BaseModel):
    """Aggregate counters for one scope key"""
    scope_key: str
    revenue: Decimal = Decimal("0.00")
    order_count: int = 0
    average_order_value: Optional[Decimal] = None
    generated_at: Optional[datetime] = None


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: int
    name: str
    email: str
    total_spent: Decimal
    total_orders: int
