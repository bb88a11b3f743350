"""
Expiry sweep for orders nobody claimed.

An order with no master, older than ``order_expiry_hours``, in a status the
EXPIRE transition starts from, moves to the EXPIRE target in one conditional
bulk UPDATE. Each expired order gets an audit entry and an outbox
notification for its dispatcher.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, select, update

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.db.session import SessionLocal
from dispatch_service.infra.structured_logging import WorkflowEvent, log_workflow_event
from dispatch_service.services.audit import write_audit
from dispatch_service.services.notifications import NotificationEvent, enqueue_outbox
from dispatch_service.services.state_machine import OrderAction, sources_of, target_of
from dispatch_service.services.time_service import now_utc

logger = logging.getLogger(__name__)


async def expire_stale_orders(
    session_factory=SessionLocal,
    *,
    now: datetime | None = None,
    cfg: Settings = default_settings,
) -> list[int]:
    """Expire stale unclaimed orders. Returns the expired order ids."""
    if now is None:
        now = now_utc()
    cutoff = now - timedelta(hours=cfg.order_expiry_hours)
    target = target_of(OrderAction.EXPIRE)
    stale = and_(
        m.orders.status.in_(sources_of(OrderAction.EXPIRE)),
        m.orders.master_id.is_(None),
        m.orders.created_at < cutoff,
    )

    async with session_factory() as session:
        candidates = {
            row.id: row
            for row in (
                await session.execute(
                    select(
                        m.orders.id,
                        m.orders.status,
                        m.orders.dispatcher_id,
                        m.orders.assigned_dispatcher_id,
                    ).where(stale)
                )
            ).all()
        }
        if not candidates:
            await session.rollback()
            return []

        # Re-checks the guard, so an order claimed in between stays claimed
        expired = sorted(
            (
                await session.execute(
                    update(m.orders)
                    .where(and_(m.orders.id.in_(list(candidates)), stale))
                    .values(status=target, updated_at=now, version=m.orders.version + 1)
                    .returning(m.orders.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalars()
        )

        for order_id in expired:
            row = candidates[order_id]
            previous = m.OrderStatus(row.status).value
            await write_audit(
                session,
                order_id=order_id,
                action="expire",
                old_data={"status": previous},
                new_data={"status": target.value},
                performed_by=None,
                notes=f"no claim within {cfg.order_expiry_hours}h",
            )
            recipient_id = row.assigned_dispatcher_id or row.dispatcher_id
            if recipient_id is not None:
                try:
                    async with session.begin_nested():
                        await enqueue_outbox(
                            session,
                            recipient_id,
                            NotificationEvent.ORDER_EXPIRED,
                            {"order_id": order_id},
                        )
                except Exception as exc:
                    logger.warning("expiry: outbox insert failed for order#%s: %s", order_id, exc)
            log_workflow_event(
                WorkflowEvent.EXPIRED,
                order_id=order_id,
                from_status=previous,
                to_status=target.value,
            )

        await session.commit()

    logger.info("expiry: %s orders expired (cutoff=%s)", len(expired), cutoff.isoformat())
    return expired


async def expiry_scheduler(
    session_factory=SessionLocal,
    *,
    interval_seconds: int | None = None,
    iterations: int | None = None,
    cfg: Settings = default_settings,
) -> None:
    """
    Background loop running ``expire_stale_orders``.

    Args:
        session_factory: DB session factory
        interval_seconds: pause between sweeps (default EXPIRY_INTERVAL_SECONDS, min 60)
        iterations: number of sweeps (None = forever)
    """
    sleep_for = max(60, interval_seconds or cfg.expiry_interval_seconds)
    loops_done = 0

    logger.info("Expiry scheduler started, interval=%ss", sleep_for)

    while True:
        try:
            expired = await expire_stale_orders(session_factory, cfg=cfg)
            if expired:
                logger.info("Expiry sweep expired %s orders", len(expired))
        except Exception as exc:
            logger.exception("Expiry scheduler error: %s", exc)

        loops_done += 1
        if iterations is not None and loops_done >= iterations:
            break

        await asyncio.sleep(sleep_for)
