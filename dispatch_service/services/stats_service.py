"""
Dispatcher activity summary: current window vs the one before it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.db import models as m
from dispatch_service.services.identity import Actor
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.time_service import as_utc, now_utc

logger = logging.getLogger(__name__)

DONE_STATUSES = frozenset({m.OrderStatus.COMPLETED, m.OrderStatus.CONFIRMED})
CANCELED_STATUSES = frozenset(
    {m.OrderStatus.CANCELED_BY_MASTER, m.OrderStatus.CANCELED_BY_CLIENT}
)
METRICS = ("created", "handled", "completed", "canceled")


def percent(part: int, whole: int) -> int:
    if not whole:
        return 0
    value = Decimal(part) * 100 / Decimal(whole)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_delta(current: int, previous: int) -> int:
    if current == 0 and previous == 0:
        return 0
    if previous == 0:
        return 100
    return percent(current - previous, previous)


@dataclass(slots=True, frozen=True)
class OrderFacts:
    dispatcher_id: Optional[int]
    assigned_dispatcher_id: Optional[int]
    status: m.OrderStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    @property
    def handler_id(self) -> Optional[int]:
        return self.assigned_dispatcher_id or self.dispatcher_id


@dataclass(slots=True, frozen=True)
class WindowStats:
    start: datetime
    end: datetime
    created: int = 0
    handled: int = 0
    completed: int = 0
    canceled: int = 0

    @property
    def completion_rate(self) -> int:
        return percent(self.completed, self.created)

    @property
    def cancel_rate(self) -> int:
        return percent(self.canceled, self.created)


@dataclass(slots=True, frozen=True)
class DailyPoint:
    day: date
    created: int
    handled: int


@dataclass(slots=True)
class StatsSummary:
    dispatcher_id: int
    days: int
    current: WindowStats
    previous: WindowStats
    deltas: dict[str, int] = field(default_factory=dict)
    daily: list[DailyPoint] = field(default_factory=list)
    generated_at: Optional[datetime] = None


def _within(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    return value is not None and start <= value < end


def window_stats(
    facts: Iterable[OrderFacts], dispatcher_id: int, start: datetime, end: datetime
) -> WindowStats:
    created = handled = completed = canceled = 0
    for fact in facts:
        if fact.dispatcher_id == dispatcher_id and _within(fact.created_at, start, end):
            created += 1
        if fact.handler_id != dispatcher_id:
            continue
        if _within(fact.created_at, start, end):
            handled += 1
        if fact.status in DONE_STATUSES and _within(fact.completed_at, start, end):
            completed += 1
        if fact.status in CANCELED_STATUSES and _within(fact.canceled_at, start, end):
            canceled += 1
    return WindowStats(start, end, created, handled, completed, canceled)


def daily_series(
    facts: Iterable[OrderFacts], dispatcher_id: int, start: datetime, days: int
) -> list[DailyPoint]:
    first_day = start.date()
    created = {first_day + timedelta(days=i): 0 for i in range(days + 1)}
    handled = dict(created)
    for fact in facts:
        day = fact.created_at.date()
        if day not in created or fact.created_at < start:
            continue
        if fact.dispatcher_id == dispatcher_id:
            created[day] += 1
        if fact.handler_id == dispatcher_id:
            handled[day] += 1
    return [DailyPoint(day, created[day], handled[day]) for day in sorted(created)]


def summarize(
    facts: list[OrderFacts], dispatcher_id: int, *, days: int, now: datetime
) -> StatsSummary:
    current_start = now - timedelta(days=days)
    previous_start = current_start - timedelta(days=days)
    current = window_stats(facts, dispatcher_id, current_start, now)
    previous = window_stats(facts, dispatcher_id, previous_start, current_start)
    deltas = {
        name: percent_delta(getattr(current, name), getattr(previous, name))
        for name in METRICS
    }
    return StatsSummary(
        dispatcher_id=dispatcher_id,
        days=days,
        current=current,
        previous=previous,
        deltas=deltas,
        daily=daily_series(
            [f for f in facts if f.created_at < now], dispatcher_id, current_start, days
        ),
        generated_at=now,
    )


class StatsService:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _facts(self, dispatcher_id: int, since: datetime) -> list[OrderFacts]:
        rows = await self._session.execute(
            select(
                m.orders.dispatcher_id,
                m.orders.assigned_dispatcher_id,
                m.orders.status,
                m.orders.created_at,
                m.orders.completed_at,
                m.orders.canceled_at,
            ).where(
                and_(
                    or_(
                        m.orders.dispatcher_id == dispatcher_id,
                        m.orders.assigned_dispatcher_id == dispatcher_id,
                    ),
                    or_(
                        m.orders.created_at >= since,
                        m.orders.completed_at >= since,
                        m.orders.canceled_at >= since,
                    ),
                )
            )
        )
        return [
            OrderFacts(
                dispatcher_id=row.dispatcher_id,
                assigned_dispatcher_id=row.assigned_dispatcher_id,
                status=m.OrderStatus(row.status),
                created_at=as_utc(row.created_at),
                completed_at=as_utc(row.completed_at),
                canceled_at=as_utc(row.canceled_at),
            )
            for row in rows
        ]

    async def get_summary(
        self,
        actor: Actor,
        dispatcher_id: int,
        *,
        days: int = 7,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        if not (actor.is_admin or (actor.is_dispatcher and actor.id == dispatcher_id)):
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        if days < 1:
            return OperationResult.fail(ReasonCode.VALIDATION_FAILED)
        current = now or now_utc()
        facts = await self._facts(dispatcher_id, current - timedelta(days=2 * days))
        summary = summarize(facts, dispatcher_id, days=days, now=current)
        logger.debug(
            "stats: dispatcher=%s days=%s created=%s handled=%s",
            dispatcher_id,
            days,
            summary.current.created,
            summary.current.handled,
        )
        return OperationResult.ok(summary)
