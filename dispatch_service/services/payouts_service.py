"""
Payout requests: a master asks to withdraw prepaid balance, an admin decides.

request -> approve (debits balance) -> paid
        -> reject
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.infra.structured_logging import WorkflowEvent, log_workflow_event
from dispatch_service.services.identity import Actor
from dispatch_service.services.ledger_service import LedgerService
from dispatch_service.services.money import parse_optional_money
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.time_service import now_utc

logger = logging.getLogger(__name__)


class PayoutAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class PayoutsService:
    def __init__(
        self,
        session: AsyncSession,
        ledger: Optional[LedgerService] = None,
        cfg: Settings = default_settings,
    ) -> None:
        self._session = session
        self._cfg = cfg
        self._ledger = ledger or LedgerService(session, cfg)

    async def _load(self, request_id: int) -> Optional[m.payout_requests]:
        return await self._session.get(m.payout_requests, request_id, populate_existing=True)

    async def request_payout(
        self,
        actor: Actor,
        amount,
        *,
        note: Optional[str] = None,
    ) -> OperationResult:
        """Record a withdrawal request. Nothing is reserved until approval."""
        if not actor.is_master:
            return OperationResult.fail(ReasonCode.NOT_A_MASTER)
        value = parse_optional_money(amount)
        if value is None or value <= 0:
            return OperationResult.fail(ReasonCode.INVALID_AMOUNT)
        if value < self._cfg.min_payout_amount:
            return OperationResult.fail(ReasonCode.BELOW_MIN_PAYOUT)
        ledger = await self._ledger.get_ledger(actor.id)
        if ledger is None:
            return OperationResult.fail(ReasonCode.LEDGER_MISSING)
        if value > ledger.prepaid_balance:
            return OperationResult.fail(ReasonCode.INSUFFICIENT_BALANCE)

        request = m.payout_requests(
            master_id=actor.id,
            status=m.PayoutStatus.REQUESTED,
            requested_amount=value,
            requested_note=note,
        )
        self._session.add(request)
        await self._session.flush()
        logger.info(
            "payout_requested: request_id=%s master_id=%s amount=%s",
            request.id,
            actor.id,
            value,
        )
        log_workflow_event(
            WorkflowEvent.PAYOUT_REQUESTED,
            master_id=actor.id,
            amount=value,
            details={"request_id": request.id},
        )
        return OperationResult.ok(request)

    async def process_payout_request(
        self,
        request_id: int,
        action: PayoutAction,
        actor: Actor,
        *,
        approved_amount=None,
        admin_note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Approve (debit balance) or reject a pending request."""
        if not actor.is_admin:
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        request = await self._load(request_id)
        if request is None:
            return OperationResult.fail(ReasonCode.PAYOUT_NOT_FOUND)
        if request.status is not m.PayoutStatus.REQUESTED:
            return OperationResult.fail(ReasonCode.PAYOUT_NOT_PENDING)

        current = now or now_utc()
        values: dict = {
            "processed_by": actor.id,
            "processed_at": current,
            "admin_note": admin_note,
        }
        amount: Optional[Decimal] = None
        if action is PayoutAction.APPROVE:
            amount = (
                parse_optional_money(approved_amount)
                if approved_amount is not None
                else request.requested_amount
            )
            # Partial approval is allowed, topping the request up is not
            if amount is None or amount <= 0 or amount > request.requested_amount:
                return OperationResult.fail(ReasonCode.INVALID_AMOUNT)
            values.update(status=m.PayoutStatus.APPROVED, approved_amount=amount)
        else:
            values.update(status=m.PayoutStatus.REJECTED)

        moved = await self._session.execute(
            update(m.payout_requests)
            .where(
                and_(
                    m.payout_requests.id == request_id,
                    m.payout_requests.status == m.PayoutStatus.REQUESTED,
                )
            )
            .values(**values)
            .returning(m.payout_requests.id)
        )
        if moved.first() is None:
            return OperationResult.fail(ReasonCode.PAYOUT_NOT_PENDING)

        if amount is not None:
            debit = await self._ledger.debit_for_payout(
                request.master_id,
                amount,
                payout_request_id=request_id,
                actor_id=actor.id,
                now=current,
            )
            if not debit.success:
                # Caller rolls back; the status change above must not survive
                return debit

        logger.info(
            "payout_processed: request_id=%s action=%s amount=%s by=%s",
            request_id,
            action.value,
            amount,
            actor.id,
        )
        log_workflow_event(
            WorkflowEvent.PAYOUT_PROCESSED,
            master_id=request.master_id,
            actor_id=actor.id,
            amount=amount,
            reason=action.value,
            details={"request_id": request_id},
        )
        return OperationResult.ok(await self._load(request_id))

    async def mark_payout_paid(
        self, request_id: int, actor: Actor, *, now: Optional[datetime] = None
    ) -> OperationResult:
        """Record that an approved payout was handed over. No ledger change."""
        if not actor.is_admin:
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        moved = await self._session.execute(
            update(m.payout_requests)
            .where(
                and_(
                    m.payout_requests.id == request_id,
                    m.payout_requests.status == m.PayoutStatus.APPROVED,
                )
            )
            .values(status=m.PayoutStatus.PAID, paid_at=now or now_utc())
            .returning(m.payout_requests.id)
        )
        if moved.first() is None:
            exists = await self._session.scalar(
                select(m.payout_requests.id).where(m.payout_requests.id == request_id)
            )
            return OperationResult.fail(
                ReasonCode.PAYOUT_NOT_PENDING if exists else ReasonCode.PAYOUT_NOT_FOUND
            )
        return OperationResult.ok(await self._load(request_id))
