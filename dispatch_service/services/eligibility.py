"""
Claim eligibility for masters.

Checks run before a claim or a forced assignment:
- verification and active flags from the identity layer
- balance block (explicit block or prepaid balance at/below threshold)
- active job limit
- completed-but-unconfirmed limit
- order still open and unclaimed

The result is advisory. The conditional update in ``claim_service`` is what
actually decides the winner.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.services.identity import Actor
from dispatch_service.services.results import ReasonCode
from dispatch_service.services.time_service import combine_preferred, now_utc

logger = logging.getLogger(__name__)

WORKING_STATUSES = (m.OrderStatus.CLAIMED, m.OrderStatus.STARTED)


@dataclass(slots=True, frozen=True)
class ClaimEligibility:
    master_id: int
    blockers: tuple[ReasonCode, ...] = ()
    warnings: tuple[ReasonCode, ...] = ()
    prepaid_balance: Optional[Decimal] = None
    balance_threshold: Optional[Decimal] = None
    active_jobs: int = 0
    max_active_jobs: int = 0
    pending_confirmation: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def can_claim(self) -> bool:
        return not self.blockers


async def active_job_count(session: AsyncSession, master_id: int) -> int:
    return int(
        await session.scalar(
            select(func.count())
            .select_from(m.orders)
            .where(
                and_(
                    m.orders.master_id == master_id,
                    m.orders.status.in_(WORKING_STATUSES),
                )
            )
        )
        or 0
    )


async def pending_confirmation_count(session: AsyncSession, master_id: int) -> int:
    return int(
        await session.scalar(
            select(func.count())
            .select_from(m.orders)
            .where(
                and_(
                    m.orders.master_id == master_id,
                    m.orders.status == m.OrderStatus.COMPLETED,
                )
            )
        )
        or 0
    )


async def _planned_job_due_soon(
    session: AsyncSession, master_id: int, now: datetime, window_minutes: int
) -> Optional[int]:
    rows = (
        await session.execute(
            select(m.orders.id, m.orders.preferred_date, m.orders.preferred_time).where(
                and_(
                    m.orders.master_id == master_id,
                    m.orders.status == m.OrderStatus.CLAIMED,
                    m.orders.urgency == m.Urgency.PLANNED,
                    m.orders.preferred_date.is_not(None),
                )
            )
        )
    ).all()
    horizon = now + timedelta(minutes=window_minutes)
    for row in rows:
        starts_at = combine_preferred(row.preferred_date, row.preferred_time)
        if starts_at is not None and now <= starts_at <= horizon:
            return row.id
    return None


def is_balance_blocked(ledger: m.master_ledgers) -> bool:
    if ledger.balance_blocked_at is not None:
        return True
    return ledger.prepaid_balance <= ledger.balance_threshold


async def check_master_eligibility(
    session: AsyncSession,
    master: Actor,
    *,
    order: Optional[m.orders] = None,
    now: Optional[datetime] = None,
    enforce_pending_limit: bool = True,
    cfg: Settings = default_settings,
) -> ClaimEligibility:
    """Collect every reason *master* cannot take *order* right now."""
    current = now or now_utc()
    blockers: list[ReasonCode] = []
    warnings: list[ReasonCode] = []

    if not master.is_master:
        return ClaimEligibility(master_id=master.id, blockers=(ReasonCode.NOT_A_MASTER,))

    if not master.is_verified:
        blockers.append(ReasonCode.NOT_VERIFIED)
    if not master.is_active:
        blockers.append(ReasonCode.INACTIVE)

    ledger = await session.get(m.master_ledgers, master.id, populate_existing=True)
    active = await active_job_count(session, master.id)
    pending = await pending_confirmation_count(session, master.id)

    if ledger is None:
        blockers.append(ReasonCode.LEDGER_MISSING)
        max_jobs = cfg.default_max_active_jobs
    else:
        max_jobs = ledger.max_active_jobs
        if is_balance_blocked(ledger):
            blockers.append(ReasonCode.BALANCE_BLOCKED)

    if active >= max_jobs:
        blockers.append(ReasonCode.MAX_JOBS_REACHED)
    if enforce_pending_limit and pending >= cfg.max_pending_confirmation:
        blockers.append(ReasonCode.TOO_MANY_PENDING)

    if order is not None and (
        order.master_id is not None or order.status not in m.OPEN_STATUSES
    ):
        blockers.append(ReasonCode.ORDER_NOT_AVAILABLE)

    due_order_id = await _planned_job_due_soon(
        session, master.id, current, cfg.planned_job_soon_minutes
    )
    if due_order_id is not None:
        warnings.append(ReasonCode.PLANNED_JOB_DUE_SOON)

    result = ClaimEligibility(
        master_id=master.id,
        blockers=tuple(blockers),
        warnings=tuple(warnings),
        prepaid_balance=ledger.prepaid_balance if ledger is not None else None,
        balance_threshold=ledger.balance_threshold if ledger is not None else None,
        active_jobs=active,
        max_active_jobs=max_jobs,
        pending_confirmation=pending,
        details={"due_order_id": due_order_id} if due_order_id is not None else {},
    )
    logger.info(
        "[eligibility] master=%s order=%s blockers=%s warnings=%s active=%s/%s pending=%s",
        master.id,
        getattr(order, "id", None),
        [b.value for b in result.blockers],
        [w.value for w in result.warnings],
        active,
        max_jobs,
        pending,
    )
    return result
