from __future__ import annotations

import logging
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.db import models as m

_log = logging.getLogger(__name__)

SNAPSHOT_FIELDS = (
    "id",
    "status",
    "client_id",
    "client_name",
    "client_phone",
    "master_id",
    "dispatcher_id",
    "assigned_dispatcher_id",
    "service_type",
    "urgency",
    "pricing_type",
    "initial_price",
    "callout_fee",
    "final_price",
    "price_change_reason",
    "work_performed",
    "hours_worked",
    "area",
    "full_address",
    "problem_description",
    "preferred_date",
    "preferred_time",
    "dispatcher_note",
    "cancellation_reason",
    "cancellation_notes",
    "cancellation_master_id",
    "payment_method",
    "payment_proof_url",
    "payment_confirmed_by",
    "is_disputed",
    "requires_review",
    "created_at",
    "claimed_at",
    "started_at",
    "completed_at",
    "confirmed_at",
    "canceled_at",
    "payment_confirmed_at",
    "version",
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def order_snapshot(order: Optional[m.orders]) -> Optional[dict[str, Any]]:
    """JSON-safe copy of the order's audited fields."""
    if order is None:
        return None
    return {name: _jsonable(getattr(order, name, None)) for name in SNAPSHOT_FIELDS}


async def write_audit(
    session: AsyncSession,
    *,
    order_id: int,
    action: str,
    old_data: Optional[dict[str, Any]],
    new_data: Optional[dict[str, Any]],
    performed_by: Optional[int],
    notes: Optional[str] = None,
) -> bool:
    """Append an audit entry inside a SAVEPOINT.

    A failed insert is logged and rolled back to the savepoint; the caller's
    mutation still commits.
    """
    try:
        async with session.begin_nested():
            await session.execute(
                insert(m.order_audit_log).values(
                    order_id=order_id,
                    action=action,
                    old_data=old_data,
                    new_data=new_data,
                    performed_by=performed_by,
                    notes=notes,
                )
            )
    except Exception as err:
        _log.error("audit write failed: order=%s action=%s: %s", order_id, action, err)
        return False
    return True
