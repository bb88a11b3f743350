"""
Order queue for dispatchers, admins and the master pool.

One call returns a filtered page, per-group counts over the whole scope and
the attention subset. The SQL path runs these as separate queries; when the
page comes back empty while the scope count for the same group is positive,
or an aggregate query fails, the whole scope is loaded once and everything is
recomputed in memory with the pure functions below.
"""
from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import String, and_, cast, func, or_, select, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.infra.structured_logging import WorkflowEvent, log_workflow_event
from dispatch_service.services.identity import Actor
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.retry import is_transient_error
from dispatch_service.services.time_service import as_utc, now_utc

logger = logging.getLogger(__name__)

S = m.OrderStatus

ID_SUFFIX_MAX_LEN = 6
MAX_LIMIT = 100


class StatusGroup(str, enum.Enum):
    ACTIVE = "Active"
    PAYMENT = "Payment"
    CONFIRMED = "Confirmed"
    CANCELED = "Canceled"
    ALL = "All"


STATUS_GROUPS: dict[StatusGroup, frozenset[m.OrderStatus]] = {
    StatusGroup.ACTIVE: frozenset({S.PLACED, S.REOPENED, S.CLAIMED, S.STARTED}),
    StatusGroup.PAYMENT: frozenset({S.COMPLETED}),
    StatusGroup.CONFIRMED: frozenset({S.CONFIRMED}),
    StatusGroup.CANCELED: frozenset({S.CANCELED_BY_MASTER, S.CANCELED_BY_CLIENT}),
    StatusGroup.ALL: frozenset(m.OrderStatus),
}


class SortOrder(str, enum.Enum):
    NEWEST = "newest"
    OLDEST = "oldest"


class AttentionReason(str, enum.Enum):
    DISPUTED = "disputed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    MASTER_REFUSED = "master_refused"
    UNCLAIMED_STALE = "unclaimed_stale"
    CLAIMED_STALE = "claimed_stale"


def _optional_filter(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(getattr(value, "value", value)).strip()
    if not text or text.lower() == "all":
        return None
    return text


@dataclass(slots=True, frozen=True)
class QueueQuery:
    page: int = 1
    limit: int = 20
    status_group: StatusGroup = StatusGroup.ACTIVE
    search: Optional[str] = None
    urgency: Optional[str] = None
    service_type: Optional[str] = None
    sort: SortOrder = SortOrder.NEWEST

    def normalized(self) -> "QueueQuery":
        """Clamp paging and turn "all"/blank filters into None.

        Raises ValueError for an unknown group, sort or urgency.
        """
        try:
            page = max(1, int(self.page))
        except (TypeError, ValueError):
            page = 1
        try:
            limit = min(MAX_LIMIT, max(1, int(self.limit)))
        except (TypeError, ValueError):
            limit = 20
        urgency = _optional_filter(self.urgency)
        return QueueQuery(
            page=page,
            limit=limit,
            status_group=StatusGroup(self.status_group),
            search=(self.search or "").strip() or None,
            urgency=m.Urgency(urgency.lower()).value if urgency else None,
            service_type=_optional_filter(self.service_type),
            sort=SortOrder(self.sort),
        )

    @property
    def has_filters(self) -> bool:
        return bool(self.search or self.urgency or self.service_type)


@dataclass(slots=True, frozen=True)
class QueueScope:
    kind: str
    dispatcher_id: Optional[int] = None

    @classmethod
    def dispatcher(cls, dispatcher_id: int) -> "QueueScope":
        return cls("dispatcher", dispatcher_id)

    @classmethod
    def admin(cls) -> "QueueScope":
        return cls("admin")

    @classmethod
    def pool(cls) -> "QueueScope":
        return cls("pool")

    def allows(self, actor: Actor) -> bool:
        if actor.is_admin:
            return True
        if self.kind == "dispatcher":
            return actor.is_dispatcher and actor.id == self.dispatcher_id
        if self.kind == "pool":
            return actor.is_master or actor.is_dispatcher
        return False


@dataclass(slots=True, frozen=True)
class QueueItem:
    id: int
    status: m.OrderStatus
    urgency: m.Urgency
    service_type: str
    created_at: datetime
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_phone_digits: Optional[str] = None
    master_id: Optional[int] = None
    master_name: Optional[str] = None
    dispatcher_id: Optional[int] = None
    assigned_dispatcher_id: Optional[int] = None
    area: Optional[str] = None
    full_address: Optional[str] = None
    problem_description: Optional[str] = None
    initial_price: Optional[Decimal] = None
    callout_fee: Optional[Decimal] = None
    final_price: Optional[Decimal] = None
    is_disputed: bool = False
    requires_review: bool = False
    claimed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: m.orders, master_name: Optional[str] = None) -> "QueueItem":
        return cls(
            id=order.id,
            status=m.OrderStatus(order.status),
            urgency=m.Urgency(order.urgency),
            service_type=order.service_type,
            created_at=as_utc(order.created_at),
            client_name=order.client_name,
            client_phone=order.client_phone,
            client_phone_digits=order.client_phone_digits,
            master_id=order.master_id,
            master_name=master_name,
            dispatcher_id=order.dispatcher_id,
            assigned_dispatcher_id=order.assigned_dispatcher_id,
            area=order.area,
            full_address=order.full_address,
            problem_description=order.problem_description,
            initial_price=order.initial_price,
            callout_fee=order.callout_fee,
            final_price=order.final_price,
            is_disputed=bool(order.is_disputed),
            requires_review=bool(order.requires_review),
            claimed_at=as_utc(order.claimed_at),
            started_at=as_utc(order.started_at),
            completed_at=as_utc(order.completed_at),
        )


@dataclass(slots=True, frozen=True)
class AttentionItem:
    order: QueueItem
    reason: AttentionReason


@dataclass(slots=True)
class QueuePage:
    orders: list[QueueItem]
    total_count: int
    status_counts: dict[StatusGroup, int]
    attention_items: list[AttentionItem]
    attention_count: int
    page: int
    limit: int
    total_pages: int
    source: str = "sql"
    generated_at: Optional[datetime] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AttentionWindows:
    placed_minutes: int
    claimed_minutes: int
    limit: int

    @classmethod
    def from_settings(cls, cfg: Settings) -> "AttentionWindows":
        return cls(
            placed_minutes=cfg.attention_placed_minutes,
            claimed_minutes=cfg.attention_claimed_minutes,
            limit=cfg.attention_list_limit,
        )


# ===== pure functions =====


def digits_only(value: Optional[str]) -> str:
    return "".join(ch for ch in (value or "") if ch.isdigit())


def normalize_search(search: Optional[str]) -> Optional[str]:
    term = (search or "").strip()
    if term.startswith("#"):
        term = term[1:].strip()
    return term or None


def in_scope(item: QueueItem, scope: QueueScope) -> bool:
    if scope.kind == "admin":
        return True
    if scope.kind == "dispatcher":
        return scope.dispatcher_id in (item.dispatcher_id, item.assigned_dispatcher_id)
    if scope.kind == "pool":
        return item.status in m.OPEN_STATUSES and item.master_id is None
    return False


def matches_search(item: QueueItem, search: Optional[str]) -> bool:
    term = normalize_search(search)
    if term is None:
        return True
    if term.isdigit():
        order_id = str(item.id)
        if len(term) <= ID_SUFFIX_MAX_LEN and order_id.endswith(term):
            return True
        if len(term) > ID_SUFFIX_MAX_LEN and term in order_id:
            return True
    needle = term.lower()
    for text in (
        item.client_name,
        item.master_name,
        item.full_address,
        item.area,
        item.problem_description,
    ):
        if text and needle in text.lower():
            return True
    digits = digits_only(term)
    if digits:
        phone = item.client_phone_digits or digits_only(item.client_phone)
        if digits in phone:
            return True
    return False


def matches_query(item: QueueItem, query: QueueQuery) -> bool:
    if item.status not in STATUS_GROUPS[query.status_group]:
        return False
    if query.urgency and item.urgency.value != query.urgency:
        return False
    if query.service_type and item.service_type != query.service_type:
        return False
    return matches_search(item, query.search)


def sort_items(items: Iterable[QueueItem], sort: SortOrder) -> list[QueueItem]:
    return sorted(
        items,
        key=lambda item: (item.created_at, item.id),
        reverse=sort is SortOrder.NEWEST,
    )


def fold_status_counts(per_status: dict[m.OrderStatus, int]) -> dict[StatusGroup, int]:
    return {
        group: sum(count for status, count in per_status.items() if status in statuses)
        for group, statuses in STATUS_GROUPS.items()
    }


def count_status_groups(items: Iterable[QueueItem]) -> dict[StatusGroup, int]:
    per_status: dict[m.OrderStatus, int] = {}
    for item in items:
        per_status[item.status] = per_status.get(item.status, 0) + 1
    return fold_status_counts(per_status)


def attention_reason(
    item: QueueItem, now: datetime, windows: AttentionWindows
) -> Optional[AttentionReason]:
    """Why *item* needs a human right now, or None."""
    if item.status is S.CANCELED_BY_CLIENT:
        return None
    if item.is_disputed:
        return AttentionReason.DISPUTED
    if item.status is S.COMPLETED:
        return AttentionReason.AWAITING_CONFIRMATION
    if item.status is S.CANCELED_BY_MASTER:
        return AttentionReason.MASTER_REFUSED
    if item.status is S.PLACED and item.master_id is None:
        if item.created_at < now - timedelta(minutes=windows.placed_minutes):
            return AttentionReason.UNCLAIMED_STALE
    if item.status is S.CLAIMED:
        claimed_at = item.claimed_at or item.created_at
        if claimed_at < now - timedelta(minutes=windows.claimed_minutes):
            return AttentionReason.CLAIMED_STALE
    return None


def select_attention(
    items: Iterable[QueueItem], now: datetime, windows: AttentionWindows
) -> tuple[list[AttentionItem], int]:
    """Return (newest attention items up to the limit, total attention count)."""
    flagged = []
    for item in items:
        reason = attention_reason(item, now, windows)
        if reason is not None:
            flagged.append(AttentionItem(order=item, reason=reason))
    flagged.sort(key=lambda entry: (entry.order.created_at, entry.order.id), reverse=True)
    return flagged[: windows.limit], len(flagged)


def _total_pages(total: int, limit: int) -> int:
    return max(1, math.ceil(total / limit))


def build_page(
    items: Sequence[QueueItem],
    query: QueueQuery,
    scope: QueueScope,
    *,
    now: datetime,
    windows: AttentionWindows,
    source: str = "fallback",
) -> QueuePage:
    """Compute a full queue page from an in-memory snapshot."""
    query = query.normalized()
    scoped = [item for item in items if in_scope(item, scope)]
    matched = sort_items((item for item in scoped if matches_query(item, query)), query.sort)
    offset = (query.page - 1) * query.limit
    attention, attention_count = select_attention(scoped, now, windows)
    return QueuePage(
        orders=matched[offset : offset + query.limit],
        total_count=len(matched),
        status_counts=count_status_groups(scoped),
        attention_items=attention,
        attention_count=attention_count,
        page=query.page,
        limit=query.limit,
        total_pages=_total_pages(len(matched), query.limit),
        source=source,
        generated_at=now,
    )


# ===== SQL path =====


class QueueAggregator:
    def __init__(self, session: AsyncSession, cfg: Settings = default_settings) -> None:
        self._session = session
        self._cfg = cfg
        self._master = aliased(m.users, name="master_user")

    def _scope_clause(self, scope: QueueScope):
        if scope.kind == "dispatcher":
            return or_(
                m.orders.dispatcher_id == scope.dispatcher_id,
                m.orders.assigned_dispatcher_id == scope.dispatcher_id,
            )
        if scope.kind == "pool":
            return and_(m.orders.status.in_(m.OPEN_STATUSES), m.orders.master_id.is_(None))
        return true()

    def _search_clause(self, search: Optional[str]):
        term = normalize_search(search)
        if term is None:
            return None
        order_id = cast(m.orders.id, String)
        clauses = [
            m.orders.client_name.icontains(term, autoescape=True),
            self._master.full_name.icontains(term, autoescape=True),
            m.orders.full_address.icontains(term, autoescape=True),
            m.orders.area.icontains(term, autoescape=True),
            m.orders.problem_description.icontains(term, autoescape=True),
        ]
        if term.isdigit():
            if len(term) <= ID_SUFFIX_MAX_LEN:
                clauses.append(order_id.endswith(term, autoescape=True))
            else:
                clauses.append(order_id.contains(term, autoescape=True))
        digits = digits_only(term)
        if digits:
            clauses.append(m.orders.client_phone_digits.contains(digits, autoescape=True))
        return or_(*clauses)

    def _filter_clauses(self, query: QueueQuery) -> list:
        clauses = [m.orders.status.in_(STATUS_GROUPS[query.status_group])]
        if query.urgency:
            clauses.append(m.orders.urgency == m.Urgency(query.urgency))
        if query.service_type:
            clauses.append(m.orders.service_type == query.service_type)
        search = self._search_clause(query.search)
        if search is not None:
            clauses.append(search)
        return clauses

    def _base(self, *columns):
        return select(*columns).select_from(m.orders).outerjoin(
            self._master, self._master.id == m.orders.master_id
        )

    async def _items(self, stmt) -> list[QueueItem]:
        rows = (await self._session.execute(stmt.execution_options(populate_existing=True))).all()
        return [QueueItem.from_order(row[0], row[1]) for row in rows]

    async def _status_counts(self, scope: QueueScope) -> dict[StatusGroup, int]:
        rows = (
            await self._session.execute(
                select(m.orders.status, func.count())
                .where(self._scope_clause(scope))
                .group_by(m.orders.status)
            )
        ).all()
        return fold_status_counts({m.OrderStatus(status): int(count) for status, count in rows})

    def _attention_clause(self, now: datetime, windows: AttentionWindows):
        placed_cutoff = now - timedelta(minutes=windows.placed_minutes)
        claimed_cutoff = now - timedelta(minutes=windows.claimed_minutes)
        return and_(
            m.orders.status != S.CANCELED_BY_CLIENT,
            or_(
                m.orders.is_disputed.is_(True),
                m.orders.status.in_((S.COMPLETED, S.CANCELED_BY_MASTER)),
                and_(
                    m.orders.status == S.PLACED,
                    m.orders.master_id.is_(None),
                    m.orders.created_at < placed_cutoff,
                ),
                and_(
                    m.orders.status == S.CLAIMED,
                    func.coalesce(m.orders.claimed_at, m.orders.created_at) < claimed_cutoff,
                ),
            ),
        )

    async def _sql_page(
        self, query: QueueQuery, scope: QueueScope, now: datetime, windows: AttentionWindows
    ) -> QueuePage:
        scope_clause = self._scope_clause(scope)
        filters = and_(scope_clause, *self._filter_clauses(query))

        total = int(
            await self._session.scalar(self._base(func.count(m.orders.id)).where(filters)) or 0
        )
        ordering = (
            (m.orders.created_at.desc(), m.orders.id.desc())
            if query.sort is SortOrder.NEWEST
            else (m.orders.created_at.asc(), m.orders.id.asc())
        )
        orders = await self._items(
            self._base(m.orders, self._master.full_name)
            .where(filters)
            .order_by(*ordering)
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )
        status_counts = await self._status_counts(scope)

        attention_filter = and_(scope_clause, self._attention_clause(now, windows))
        attention_count = int(
            await self._session.scalar(
                select(func.count(m.orders.id)).where(attention_filter)
            )
            or 0
        )
        candidates = await self._items(
            self._base(m.orders, self._master.full_name)
            .where(attention_filter)
            .order_by(m.orders.created_at.desc(), m.orders.id.desc())
            .limit(windows.limit)
        )
        attention = []
        for item in candidates:
            reason = attention_reason(item, now, windows)
            if reason is not None:
                attention.append(AttentionItem(order=item, reason=reason))
        return QueuePage(
            orders=orders,
            total_count=total,
            status_counts=status_counts,
            attention_items=attention,
            attention_count=attention_count,
            page=query.page,
            limit=query.limit,
            total_pages=_total_pages(total, query.limit),
            source="sql",
            generated_at=now,
        )

    async def _fallback_page(
        self,
        query: QueueQuery,
        scope: QueueScope,
        now: datetime,
        windows: AttentionWindows,
        cause: str,
    ) -> QueuePage:
        logger.warning("queue fallback: scope=%s group=%s cause=%s", scope.kind, query.status_group.value, cause)
        log_workflow_event(
            WorkflowEvent.QUEUE_FALLBACK,
            reason=cause,
            details={"scope": scope.kind, "dispatcher_id": scope.dispatcher_id},
            level="WARNING",
        )
        items = await self._items(
            self._base(m.orders, self._master.full_name).where(self._scope_clause(scope))
        )
        page = build_page(items, query, scope, now=now, windows=windows, source="fallback")
        page.details["cause"] = cause
        return page

    async def get_page(
        self,
        actor: Actor,
        scope: QueueScope,
        query: Optional[QueueQuery] = None,
        *,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        if not scope.allows(actor):
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        try:
            query = (query or QueueQuery()).normalized()
        except ValueError:
            return OperationResult.fail(ReasonCode.VALIDATION_FAILED)
        current = now or now_utc()
        windows = AttentionWindows.from_settings(self._cfg)

        try:
            page = await self._sql_page(query, scope, current, windows)
        except SQLAlchemyError as exc:
            if is_transient_error(exc):
                raise
            logger.exception("queue SQL path failed: scope=%s", scope.kind)
            return OperationResult.ok(
                await self._fallback_page(query, scope, current, windows, "sql_error")
            )

        if (
            not page.orders
            and query.page == 1
            and not query.has_filters
            and page.status_counts.get(query.status_group, 0) > 0
        ):
            return OperationResult.ok(
                await self._fallback_page(query, scope, current, windows, "count_mismatch")
            )
        return OperationResult.ok(page)
