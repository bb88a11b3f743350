"""
Notification sink.

Delivery is fire-and-forget: workflow operations call ``safe_notify`` after
their transaction commits, and a failing sink never reaches the caller.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional, Protocol

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.db import models as m

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    # For masters
    ORDER_CLAIMED = "order_claimed"
    MASTER_ASSIGNED = "master_assigned"
    MASTER_UNASSIGNED = "master_unassigned"
    PAYMENT_CONFIRMED = "payment_confirmed"
    BALANCE_BLOCKED = "balance_blocked"
    PAYOUT_PROCESSED = "payout_processed"

    # For dispatchers
    ORDER_CREATED = "order_created"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_REFUSED = "job_refused"
    ORDER_CANCELED = "order_canceled"
    ORDER_REOPENED = "order_reopened"
    ORDER_TRANSFERRED = "order_transferred"
    ORDER_EXPIRED = "order_expired"


NOTIFICATION_TEMPLATES: dict[NotificationEvent, str] = {
    NotificationEvent.ORDER_CLAIMED: "Order #{order_id} was claimed by master #{master_id}.",
    NotificationEvent.MASTER_ASSIGNED: "You were assigned to order #{order_id}.",
    NotificationEvent.MASTER_UNASSIGNED: "You were removed from order #{order_id}.",
    NotificationEvent.PAYMENT_CONFIRMED: (
        "Payment for order #{order_id} confirmed. Commission: {commission}."
    ),
    NotificationEvent.BALANCE_BLOCKED: (
        "Your balance is {balance}. New orders are blocked until you top up "
        "and an admin lifts the block."
    ),
    NotificationEvent.PAYOUT_PROCESSED: "Payout request #{request_id} was {action}.",
    NotificationEvent.ORDER_CREATED: "New order #{order_id} placed.",
    NotificationEvent.JOB_STARTED: "Work on order #{order_id} has started.",
    NotificationEvent.JOB_COMPLETED: (
        "Order #{order_id} completed for {final_price}. Confirm the payment."
    ),
    NotificationEvent.JOB_REFUSED: "Master refused order #{order_id}: {reason}.",
    NotificationEvent.ORDER_CANCELED: "Order #{order_id} was canceled.",
    NotificationEvent.ORDER_REOPENED: "Order #{order_id} is back in the pool.",
    NotificationEvent.ORDER_TRANSFERRED: "Order #{order_id} was transferred to you.",
    NotificationEvent.ORDER_EXPIRED: "Order #{order_id} expired without a claim.",
}


def render(event: NotificationEvent, payload: dict[str, Any]) -> str:
    template = NOTIFICATION_TEMPLATES.get(event, "{event}")
    try:
        return template.format(event=event.value, **payload)
    except KeyError as exc:
        logger.error("Template error for %s: missing key %s", event.value, exc)
        return event.value


async def enqueue_outbox(
    session: AsyncSession,
    recipient_id: int,
    event: NotificationEvent,
    payload: dict[str, Any],
) -> None:
    """Insert an outbox row in the caller's transaction."""
    await session.execute(
        insert(m.notifications_outbox).values(
            recipient_id=recipient_id,
            event=event.value,
            payload={"message": render(event, payload), **payload},
        )
    )


class NotificationSink(Protocol):
    async def notify(
        self, recipient_id: int, event: NotificationEvent, payload: dict[str, Any]
    ) -> None:
        ...


class LoggingNotificationSink:
    async def notify(
        self, recipient_id: int, event: NotificationEvent, payload: dict[str, Any]
    ) -> None:
        logger.info("notify user#%s %s: %s", recipient_id, event.value, render(event, payload))


class OutboxNotificationSink:
    """Queue notifications in ``notifications_outbox`` using a separate session."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def notify(
        self, recipient_id: int, event: NotificationEvent, payload: dict[str, Any]
    ) -> None:
        async with self._session_factory() as session:
            await enqueue_outbox(session, recipient_id, event, payload)
            await session.commit()


async def safe_notify(
    sink: Optional[NotificationSink],
    recipient_id: Optional[int],
    event: NotificationEvent,
    **payload: Any,
) -> None:
    if sink is None or recipient_id is None:
        return
    try:
        await sink.notify(recipient_id, event, payload)
    except Exception:
        logger.warning(
            "Failed to deliver %s to user#%s", event.value, recipient_id, exc_info=True
        )
