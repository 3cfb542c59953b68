"""
Notification Dispatcher

Fire-and-forget delivery of order lifecycle events. Each event is
recorded in the notifications table and "delivered" through the log or
email channel (email is logged; no mail transport is wired in).
Delivery failures are logged and recorded, never raised to the caller.
"""

from datetime import datetime, timezone
from typing import Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from orderflow.database.models import Notification, Order
from orderflow.processing.schemas import (
    NotificationChannel,
    NotificationMetadata,
    NotificationType,
)

logger = structlog.get_logger(__name__)


def render_message(order: Order, notification_type: NotificationType) -> str:
    number = order.order_number
    total = f"{order.total_amount:.2f}"

    if notification_type == NotificationType.SUCCESS:
        return f"Order #{number} has been processed successfully! Total: ${total}"
    if notification_type == NotificationType.FAILURE:
        return f"Order #{number} processing failed. Please contact support."
    if notification_type == NotificationType.PROCESSING:
        return f"Order #{number} is being processed. We'll notify you when it's complete."
    if notification_type == NotificationType.REFUND_COMPLETED:
        return f"Your refund for order #{number} has been completed."
    return f"Order #{number} status update."


def build_metadata(order: Order) -> NotificationMetadata:
    return NotificationMetadata(
        order_id=order.id,
        customer_id=order.customer_id,
        order_number=order.order_number,
        status=order.status.value,
        payment_status=order.payment_status.value,
        total_amount=order.total_amount,
        customer_name=order.customer.name,
        customer_email=order.customer.email,
        items_count=len(order.items),
        processed_at=datetime.now(timezone.utc),
    )


class NotificationDispatcher:
    """
    Records and delivers notifications in its own session.

    Example:
        dispatcher = NotificationDispatcher(get_session_factory())
        await dispatcher.notify(order.id, NotificationType.SUCCESS)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_channel: Union[NotificationChannel, str] = NotificationChannel.LOG,
    ):
        self._session_factory = session_factory
        self.default_channel = NotificationChannel(default_channel)

    async def notify(
        self,
        order_id: int,
        notification_type: Union[NotificationType, str],
        channel: Optional[Union[NotificationChannel, str]] = None,
    ) -> Optional[Notification]:
        notification_type = NotificationType(notification_type)
        channel = NotificationChannel(channel) if channel else self.default_channel

        try:
            return await self._record_and_send(order_id, notification_type, channel)
        except Exception as e:
            logger.error(
                "Notification dispatch failed",
                order_id=order_id,
                type=notification_type.value,
                channel=channel.value,
                error=str(e),
            )
            return None

    async def _record_and_send(
        self,
        order_id: int,
        notification_type: NotificationType,
        channel: NotificationChannel,
    ) -> Optional[Notification]:
        async with self._session_factory() as session:
            async with session.begin():
                order = await session.scalar(
                    select(Order)
                    .where(Order.id == order_id)
                    .options(selectinload(Order.customer), selectinload(Order.items))
                )
                if order is None:
                    logger.error("Order not found for notification", order_id=order_id)
                    return None

                metadata = build_metadata(order)
                notification = Notification(
                    order_id=order.id,
                    customer_id=order.customer_id,
                    type=notification_type.value,
                    channel=channel.value,
                    message=render_message(order, notification_type),
                    metadata_=metadata.model_dump(mode="json"),
                )
                session.add(notification)

                try:
                    self._send(order, notification, channel)
                    notification.mark_sent()
                except Exception as e:
                    notification.mark_failed(str(e))
                    logger.error("Notification delivery failed", order_id=order_id, error=str(e))

            return notification

    def _send(self, order: Order, notification: Notification, channel: NotificationChannel) -> None:
        if channel == NotificationChannel.EMAIL:
            logger.info(
                "EMAIL NOTIFICATION",
                to=order.customer.email,
                subject=f"Order {order.order_number} - {notification.type}",
                message=notification.message,
                metadata=notification.metadata_,
            )
            return

        logger.info(
            "ORDER NOTIFICATION",
            order_id=order.id,
            customer_id=order.customer_id,
            type=notification.type,
            channel=channel.value,
            message=notification.message,
            metadata=notification.metadata_,
        )
