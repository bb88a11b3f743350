"""
Order history reads and force-assign candidates.

History for a master or dispatcher covers every order the person touched:
orders they currently hold or handle, plus orders where the audit trail shows
them acting, even if they were later removed from the order.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.services.eligibility import check_master_eligibility
from dispatch_service.services.identity import Actor
from dispatch_service.services.queue_service import QueueItem
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.state_machine import is_handler
from dispatch_service.services.time_service import as_utc

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100
MAX_PAGE_SIZE = 50

# What a master sees in their own list
MASTER_ORDER_STATUSES = (
    m.OrderStatus.CLAIMED,
    m.OrderStatus.STARTED,
    m.OrderStatus.COMPLETED,
    m.OrderStatus.CONFIRMED,
)


@dataclass(slots=True, frozen=True)
class AuditEntry:
    id: int
    action: str
    performed_by: Optional[int]
    created_at: Optional[datetime]
    notes: Optional[str] = None
    old_data: Optional[dict[str, Any]] = None
    new_data: Optional[dict[str, Any]] = None


@dataclass(slots=True, frozen=True)
class MasterCandidate:
    id: int
    full_name: Optional[str]
    active_jobs: int
    max_active_jobs: int
    prepaid_balance: Optional[Decimal]
    warnings: tuple[ReasonCode, ...] = ()


@dataclass(slots=True)
class MasterOrdersPage:
    orders: list[QueueItem]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_count / self.limit)) if self.limit else 1


def hide_client_contact(item: QueueItem) -> QueueItem:
    """Blank the client address and phone on a closed job."""
    return replace(item, full_address=None, client_phone=None, client_phone_digits=None)


class HistoryService:
    def __init__(self, session: AsyncSession, cfg: Settings = default_settings) -> None:
        self._session = session
        self._cfg = cfg
        self._master = aliased(m.users, name="history_master")

    def _orders(self):
        return (
            select(m.orders, self._master.full_name)
            .outerjoin(self._master, self._master.id == m.orders.master_id)
            .execution_options(populate_existing=True)
        )

    async def _items(self, stmt) -> list[QueueItem]:
        rows = (await self._session.execute(stmt)).all()
        return [QueueItem.from_order(row[0], row[1]) for row in rows]

    def _touched_by(self, user_id: int):
        return select(m.order_audit_log.order_id).where(m.order_audit_log.performed_by == user_id)

    async def order_audit_trail(self, actor: Actor, order_id: int) -> OperationResult:
        """Audit entries of one order, oldest first. Handler or admin."""
        order = await self._session.get(m.orders, order_id, populate_existing=True)
        if order is None:
            return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
        if not is_handler(order, actor):
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        rows = (
            await self._session.execute(
                select(m.order_audit_log)
                .where(m.order_audit_log.order_id == order_id)
                .order_by(m.order_audit_log.id)
            )
        ).scalars()
        return OperationResult.ok(
            [
                AuditEntry(
                    id=row.id,
                    action=row.action,
                    performed_by=row.performed_by,
                    created_at=as_utc(row.created_at),
                    notes=row.notes,
                    old_data=row.old_data,
                    new_data=row.new_data,
                )
                for row in rows
            ]
        )

    async def master_history(
        self, actor: Actor, master_id: int, *, limit: int = HISTORY_LIMIT
    ) -> OperationResult:
        if not actor.is_admin:
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        stmt = (
            self._orders()
            .where(
                or_(
                    m.orders.master_id == master_id,
                    m.orders.cancellation_master_id == master_id,
                    m.orders.id.in_(self._touched_by(master_id)),
                )
            )
            .order_by(m.orders.created_at.desc(), m.orders.id.desc())
            .limit(max(1, min(limit, HISTORY_LIMIT)))
        )
        items = await self._items(stmt)
        logger.info("[history] master=%s orders=%s", master_id, len(items))
        return OperationResult.ok(items)

    async def dispatcher_history(
        self, actor: Actor, dispatcher_id: int, *, limit: int = HISTORY_LIMIT
    ) -> OperationResult:
        if not (actor.is_admin or (actor.is_dispatcher and actor.id == dispatcher_id)):
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        stmt = (
            self._orders()
            .where(
                or_(
                    m.orders.dispatcher_id == dispatcher_id,
                    m.orders.assigned_dispatcher_id == dispatcher_id,
                    m.orders.id.in_(self._touched_by(dispatcher_id)),
                )
            )
            .order_by(m.orders.created_at.desc(), m.orders.id.desc())
            .limit(max(1, min(limit, HISTORY_LIMIT)))
        )
        items = await self._items(stmt)
        logger.info("[history] dispatcher=%s orders=%s", dispatcher_id, len(items))
        return OperationResult.ok(items)

    async def master_orders(
        self, actor: Actor, master_id: int, *, page: int = 1, limit: int = 10
    ) -> OperationResult:
        """The master's own job list, newest first."""
        own = actor.is_master and actor.id == master_id
        if not (own or actor.is_staff):
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        condition = (m.orders.master_id == master_id) & m.orders.status.in_(MASTER_ORDER_STATUSES)

        total = int(
            await self._session.scalar(
                select(func.count()).select_from(m.orders).where(condition)
            )
            or 0
        )
        items = await self._items(
            self._orders()
            .where(condition)
            .order_by(m.orders.created_at.desc(), m.orders.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        if own:
            items = [
                hide_client_contact(item) if item.status is m.OrderStatus.CONFIRMED else item
                for item in items
            ]
        return OperationResult.ok(
            MasterOrdersPage(orders=items, total_count=total, page=page, limit=limit)
        )

    async def available_masters(
        self, actor: Actor, *, now: Optional[datetime] = None
    ) -> OperationResult:
        """Masters a dispatcher could force-assign right now.

        Same checks as a forced assignment, so the pending-confirmation limit
        is not applied.
        """
        if not actor.is_staff:
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        users = (
            await self._session.execute(
                select(m.users)
                .where(
                    m.users.role == m.UserRole.MASTER,
                    m.users.is_active.is_(True),
                    m.users.is_verified.is_(True),
                )
                .order_by(m.users.full_name, m.users.id)
            )
        ).scalars().all()

        candidates: list[MasterCandidate] = []
        for user in users:
            master = Actor(id=user.id, role=m.UserRole.MASTER, is_verified=True, is_active=True)
            eligibility = await check_master_eligibility(
                self._session, master, now=now, enforce_pending_limit=False, cfg=self._cfg
            )
            if not eligibility.can_claim:
                continue
            candidates.append(
                MasterCandidate(
                    id=user.id,
                    full_name=user.full_name,
                    active_jobs=eligibility.active_jobs,
                    max_active_jobs=eligibility.max_active_jobs,
                    prepaid_balance=eligibility.prepaid_balance,
                    warnings=eligibility.warnings,
                )
            )
        candidates.sort(key=lambda c: (c.active_jobs, c.full_name or "", c.id))
        logger.info("[history] available masters: %s of %s", len(candidates), len(users))
        return OperationResult.ok(candidates)
