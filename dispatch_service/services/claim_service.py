"""
Claim resolution.

Many masters may claim the same order at once. The eligibility pre-check is
advisory; the single conditional UPDATE below is what picks the winner, and
it re-validates the ledger gate so a block set between check and write still
applies. Losers get ORDER_NO_LONGER_AVAILABLE, never an error.

The resolver does not commit. The orchestrator owns the transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.infra.structured_logging import WorkflowEvent, log_workflow_event
from dispatch_service.services.eligibility import (
    WORKING_STATUSES,
    ClaimEligibility,
    check_master_eligibility,
)
from dispatch_service.services.identity import Actor
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.state_machine import OrderAction, check_transition
from dispatch_service.services.time_service import now_utc

_log = logging.getLogger(__name__)


def _ledger_gate(master_id: int):
    """EXISTS predicate: ledger unblocked, above threshold, under the job limit."""
    held = aliased(m.orders)
    working = (
        select(func.count())
        .select_from(held)
        .where(and_(held.master_id == master_id, held.status.in_(WORKING_STATUSES)))
        .scalar_subquery()
    )
    return exists().where(
        and_(
            m.master_ledgers.master_id == master_id,
            m.master_ledgers.balance_blocked_at.is_(None),
            m.master_ledgers.prepaid_balance > m.master_ledgers.balance_threshold,
            working < m.master_ledgers.max_active_jobs,
        )
    )


class ClaimResolver:
    def __init__(self, session: AsyncSession, cfg: Settings = default_settings) -> None:
        self._session = session
        self._cfg = cfg

    async def _load(self, order_id: int) -> Optional[m.orders]:
        return await self._session.get(m.orders, order_id, populate_existing=True)

    async def check(
        self,
        order: Optional[m.orders],
        master: Actor,
        *,
        now: Optional[datetime] = None,
        enforce_pending_limit: bool = True,
    ) -> ClaimEligibility:
        return await check_master_eligibility(
            self._session,
            master,
            order=order,
            now=now,
            enforce_pending_limit=enforce_pending_limit,
            cfg=self._cfg,
        )

    async def _conditional_claim(self, order_id: int, master_id: int, now: datetime) -> bool:
        result = await self._session.execute(
            update(m.orders)
            .where(
                and_(
                    m.orders.id == order_id,
                    m.orders.status.in_(m.OPEN_STATUSES),
                    m.orders.master_id.is_(None),
                    _ledger_gate(master_id),
                )
            )
            .values(
                master_id=master_id,
                status=m.OrderStatus.CLAIMED,
                claimed_at=now,
                updated_at=now,
                version=m.orders.version + 1,
            )
            .returning(m.orders.id)
            .execution_options(synchronize_session=False)
        )
        return result.first() is not None

    async def _resolve_miss(
        self, order_id: int, master: Actor, *, now: datetime, enforce_pending_limit: bool
    ) -> OperationResult:
        """Explain a conditional-update miss: lost race or eligibility changed."""
        order = await self._load(order_id)
        if order is None:
            return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
        if order.master_id is not None or order.status not in m.OPEN_STATUSES:
            _log.info(
                "claim: order=%s taken by master=%s before master=%s",
                order_id,
                order.master_id,
                master.id,
            )
            log_workflow_event(
                WorkflowEvent.CLAIM_CONFLICT,
                order_id=order_id,
                master_id=master.id,
                details={"winner": order.master_id},
            )
            return OperationResult.fail(ReasonCode.ORDER_NO_LONGER_AVAILABLE)
        eligibility = await self.check(
            order, master, now=now, enforce_pending_limit=enforce_pending_limit
        )
        if eligibility.blockers:
            return OperationResult.fail(
                eligibility.blockers[0], blockers=list(eligibility.blockers)
            )
        _log.warning("claim: order=%s update missed with no visible cause", order_id)
        return OperationResult.fail(ReasonCode.CONCURRENT_UPDATE)

    async def _take(
        self,
        order_id: int,
        master: Actor,
        *,
        actor: Actor,
        action: OrderAction,
        now: Optional[datetime],
        enforce_pending_limit: bool,
    ) -> OperationResult:
        current = now or now_utc()
        order = await self._load(order_id)
        if order is None:
            return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)

        transition = check_transition(order, actor, action, now=current)
        if not transition.allowed:
            reason = transition.reason
            if reason is ReasonCode.ORDER_NOT_AVAILABLE:
                reason = ReasonCode.ORDER_NO_LONGER_AVAILABLE
            log_workflow_event(
                WorkflowEvent.CLAIM_REJECTED,
                order_id=order_id,
                master_id=master.id,
                actor_id=actor.id,
                reason=reason.value,
            )
            return OperationResult.fail(reason)

        eligibility = await self.check(
            order, master, now=current, enforce_pending_limit=enforce_pending_limit
        )
        if eligibility.blockers:
            log_workflow_event(
                WorkflowEvent.CLAIM_REJECTED,
                order_id=order_id,
                master_id=master.id,
                actor_id=actor.id,
                reason=",".join(b.value for b in eligibility.blockers),
            )
            return OperationResult.fail(
                eligibility.blockers[0],
                blockers=list(eligibility.blockers),
                warnings=list(eligibility.warnings),
            )

        if not await self._conditional_claim(order_id, master.id, current):
            return await self._resolve_miss(
                order_id, master, now=current, enforce_pending_limit=enforce_pending_limit
            )

        _log.info("claim: order=%s claimed by master=%s via %s", order_id, master.id, action.value)
        log_workflow_event(
            WorkflowEvent.CLAIMED,
            order_id=order_id,
            master_id=master.id,
            actor_id=actor.id,
            actor_role=actor.role.value,
            from_status=transition.from_status.value,
            to_status=m.OrderStatus.CLAIMED.value,
        )
        return OperationResult.ok(await self._load(order_id), warnings=list(eligibility.warnings))

    async def claim(
        self, order_id: int, master: Actor, *, now: Optional[datetime] = None
    ) -> OperationResult:
        """Master takes an open order for themself."""
        return await self._take(
            order_id,
            master,
            actor=master,
            action=OrderAction.CLAIM,
            now=now,
            enforce_pending_limit=True,
        )

    async def assign(
        self,
        order_id: int,
        master: Actor,
        *,
        actor: Actor,
        now: Optional[datetime] = None,
        enforce_pending_limit: bool = False,
    ) -> OperationResult:
        """Staff put *master* on an open order through the same conditional update."""
        return await self._take(
            order_id,
            master,
            actor=actor,
            action=OrderAction.FORCE_ASSIGN,
            now=now,
            enforce_pending_limit=enforce_pending_limit,
        )
