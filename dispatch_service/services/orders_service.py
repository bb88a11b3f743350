"""
Order workflow.

Each public operation resolves the order, asks the state machine whether the
actor may act, applies one version-checked UPDATE, appends an audit entry and
commits. Notifications go out only after the commit.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, inspect as sa_inspect, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.db.base import Base
from dispatch_service.infra.structured_logging import WorkflowEvent, log_workflow_event
from dispatch_service.services.audit import order_snapshot, write_audit
from dispatch_service.services.claim_service import ClaimResolver
from dispatch_service.services.history_service import HistoryService
from dispatch_service.services.identity import Actor, IdentityProvider
from dispatch_service.services.ledger_service import LedgerError, LedgerService
from dispatch_service.services.money import parse_optional_money
from dispatch_service.services.notifications import (
    NotificationEvent,
    NotificationSink,
    safe_notify,
)
from dispatch_service.services.payouts_service import PayoutAction, PayoutsService
from dispatch_service.services.queue_service import (
    QueueAggregator,
    QueueQuery,
    QueueScope,
    digits_only,
)
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.retry import TransientError, call_with_retry, is_transient_error
from dispatch_service.services.state_machine import (
    OrderAction,
    TransitionCheck,
    check_transition,
    handler_id,
)
from dispatch_service.services.stats_service import StatsService
from dispatch_service.services.time_service import now_utc

_log = logging.getLogger(__name__)

S = m.OrderStatus

_TEXT_FIELDS = frozenset(
    {"problem_description", "dispatcher_note", "full_address", "area", "client_name", "client_phone"}
)
EDITABLE_FIELDS = _TEXT_FIELDS | {"callout_fee", "initial_price"}


def _coerce(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return None


def _text(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip()
    return cleaned or None


class OrdersService:
    """Workflow orchestrator bound to one session."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        notifier: Optional[NotificationSink] = None,
        cfg: Settings = default_settings,
    ) -> None:
        self.session = session
        self.cfg = cfg
        self.notifier = notifier
        self.ledger = LedgerService(session, cfg)
        self.claims = ClaimResolver(session, cfg)
        self.payouts = PayoutsService(session, self.ledger, cfg)
        self.queue = QueueAggregator(session, cfg)
        self.stats = StatsService(session)
        self.history = HistoryService(session, cfg)
        self._pending: list[tuple[Optional[int], NotificationEvent, dict[str, Any]]] = []

    @classmethod
    async def for_identity(
        cls, session: AsyncSession, identity: IdentityProvider, **kwargs: Any
    ) -> OperationResult:
        """Resolve the current actor once. Payload is ``(service, actor)``."""
        actor = await identity.resolve_current_actor()
        if actor is None:
            return OperationResult.fail(ReasonCode.NO_ACTOR)
        return OperationResult.ok((cls(session, **kwargs), actor))

    # ----- plumbing -----

    def _notify_later(
        self, recipient_id: Optional[int], event: NotificationEvent, **payload: Any
    ) -> None:
        self._pending.append((recipient_id, event, payload))

    async def _rollback_quietly(self, op: str) -> None:
        try:
            await self.session.rollback()
        except Exception as err:
            _log.error("%s: rollback failed: %s", op, err)

    async def _detach(self, payload: Any) -> None:
        """Hand a committed row back as a snapshot no later rollback can expire."""
        if not isinstance(payload, Base):
            return
        if sa_inspect(payload).unloaded:
            # server-side defaults the INSERT did not return
            await self.session.refresh(payload)
        self.session.expunge(payload)

    async def _write(
        self,
        op: str,
        work: Callable[[], Awaitable[OperationResult]],
        *,
        actor: Optional[Actor] = None,
    ) -> OperationResult:
        """Run *work* in one transaction: commit on success, roll back otherwise.

        Writes are never retried. A transient failure means the commit may or
        may not have landed, so the caller gets TRY_AGAIN with
        ``outcome_unknown`` and must re-read before acting again.

        Rows returned in a successful payload are detached from the session.
        Nobody is notified about their own action.
        """
        self._pending = []
        try:
            result = await work()
            if result.success:
                await self.session.commit()
        except Exception as exc:
            self._pending = []
            await self._rollback_quietly(op)
            if is_transient_error(exc):
                _log.error("%s: transient failure, outcome unknown: %s", op, exc)
                log_workflow_event(WorkflowEvent.ERROR, reason=op, details={"error": str(exc)}, level="ERROR")
                return OperationResult.fail(ReasonCode.TRY_AGAIN, outcome_unknown=True)
            raise

        if not result.success:
            self._pending = []
            await self._rollback_quietly(op)
            _log.info("%s rejected: %s", op, result.reason.value if result.reason else None)
            return result

        await self._detach(result.payload)
        pending, self._pending = self._pending, []
        for recipient_id, event, payload in pending:
            if actor is not None and recipient_id == actor.id:
                continue
            await safe_notify(self.notifier, recipient_id, event, **payload)
        return result

    async def _read(self, op: str, fetch: Callable[[], Awaitable[OperationResult]]) -> OperationResult:
        async def attempt() -> OperationResult:
            try:
                return await fetch()
            except Exception:
                await self._rollback_quietly(op)
                raise

        try:
            return await call_with_retry(
                attempt,
                attempts=self.cfg.read_retry_attempts,
                delay_ms=self.cfg.read_retry_delay_ms,
                op=op,
            )
        except TransientError:
            return OperationResult.fail(ReasonCode.TRY_AGAIN)

    async def _get(self, order_id: int) -> Optional[m.orders]:
        return await self.session.get(m.orders, order_id, populate_existing=True)

    async def _get_user(self, user_id: Optional[int]) -> Optional[m.users]:
        if user_id is None:
            return None
        return await self.session.get(m.users, user_id, populate_existing=True)

    async def _apply(self, order: m.orders, now: datetime, **values: Any) -> Optional[m.orders]:
        """Version-checked UPDATE. Returns the fresh row, or None if someone else won."""
        result = await self.session.execute(
            update(m.orders)
            .where(and_(m.orders.id == order.id, m.orders.version == order.version))
            .values(version=order.version + 1, updated_at=now, **values)
            .returning(m.orders.id)
            .execution_options(synchronize_session=False)
        )
        if result.first() is None:
            _log.warning("order=%s version=%s changed concurrently", order.id, order.version)
            return None
        return await self._get(order.id)

    async def _audit(
        self,
        order_id: int,
        action: str,
        old: Optional[dict[str, Any]],
        new: Optional[dict[str, Any]],
        actor: Optional[Actor],
        notes: Optional[str] = None,
    ) -> None:
        await write_audit(
            self.session,
            order_id=order_id,
            action=action,
            old_data=old,
            new_data=new,
            performed_by=actor.id if actor else None,
            notes=notes,
        )

    def _rejected(self, op: str, order: m.orders, actor: Optional[Actor], check: TransitionCheck) -> OperationResult:
        log_workflow_event(
            WorkflowEvent.TRANSITION_REJECTED,
            order_id=order.id,
            actor_id=actor.id if actor else None,
            actor_role=actor.role.value if actor else None,
            from_status=check.from_status.value if check.from_status else None,
            reason=check.reason.value if check.reason else None,
        )
        _log.info("%s: order=%s denied: %s", op, order.id, check.reason)
        return check.to_result()

    def _transitioned(
        self, op: str, before: dict[str, Any], order: m.orders, actor: Optional[Actor]
    ) -> None:
        _log.info("%s SUCCESS: order=%s %s -> %s", op, order.id, before["status"], order.status.value)
        log_workflow_event(
            WorkflowEvent.TRANSITION,
            order_id=order.id,
            master_id=order.master_id,
            actor_id=actor.id if actor else None,
            actor_role=actor.role.value if actor else None,
            from_status=before["status"],
            to_status=order.status.value,
            reason=op,
        )

    async def _simple_transition(
        self,
        op: str,
        order_id: int,
        actor: Actor,
        action: OrderAction,
        values: Callable[[m.orders, datetime], dict[str, Any]],
        *,
        now: Optional[datetime],
        notes: Optional[str] = None,
        **guard_inputs: Any,
    ) -> tuple[OperationResult, Optional[dict[str, Any]], Optional[m.orders]]:
        """Guard, apply and audit one transition. Returns (result, before, after)."""
        current = now or now_utc()
        _log.info("%s START: order_id=%s actor=%s", op, order_id, actor.id)
        order = await self._get(order_id)
        if order is None:
            return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND), None, None
        check = check_transition(order, actor, action, now=current, **guard_inputs)
        if not check.allowed:
            return self._rejected(op, order, actor, check), None, None

        before = order_snapshot(order)
        updated = await self._apply(order, current, **values(order, current))
        if updated is None:
            return OperationResult.fail(ReasonCode.CONCURRENT_UPDATE), None, None
        await self._audit(order_id, op, before, order_snapshot(updated), actor, notes)
        self._transitioned(op, before, updated, actor)
        return OperationResult.ok(updated), before, updated

    # ----- create -----

    async def create_order(
        self,
        actor: Actor,
        *,
        service_type: str,
        problem_description: Optional[str],
        client_id: Optional[int] = None,
        client_name: Optional[str] = None,
        client_phone: Optional[str] = None,
        urgency: Any = m.Urgency.PLANNED,
        area: Optional[str] = None,
        full_address: Optional[str] = None,
        preferred_date: Optional[date] = None,
        preferred_time: Optional[time] = None,
        dispatcher_note: Optional[str] = None,
        initial_price: Any = None,
        callout_fee: Any = None,
        pricing_type: Any = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        async def work() -> OperationResult:
            _log.info("create_order START: actor=%s service_type=%s", actor.id, service_type)
            if not actor.is_staff:
                return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)

            blockers: list[ReasonCode] = []
            if client_id is None and not _text(client_phone):
                blockers.append(ReasonCode.VALIDATION_FAILED)
            if not _text(problem_description) or not _text(service_type):
                blockers.append(ReasonCode.VALIDATION_FAILED)
            order_urgency = _coerce(m.Urgency, urgency or m.Urgency.PLANNED)
            if order_urgency is None:
                blockers.append(ReasonCode.VALIDATION_FAILED)

            fee = parse_optional_money(callout_fee)
            if fee is None:
                fee = Decimal(self.cfg.default_callout_fee)
            price = parse_optional_money(initial_price)
            if fee < 0 or (price is not None and price < 0):
                blockers.append(ReasonCode.VALIDATION_FAILED)
            if blockers:
                return OperationResult.fail(ReasonCode.VALIDATION_FAILED)
            if price is not None and price < fee:
                return OperationResult.fail(ReasonCode.PRICE_BELOW_CALLOUT_FEE)

            kind = _coerce(m.PricingType, pricing_type)
            if kind is None:
                kind = m.PricingType.FIXED if price is not None else m.PricingType.UNKNOWN

            current = now or now_utc()
            phone = _text(client_phone)
            order = m.orders(
                client_id=client_id,
                client_name=_text(client_name),
                client_phone=phone,
                client_phone_digits=digits_only(phone) or None,
                dispatcher_id=actor.id,
                assigned_dispatcher_id=actor.id,
                service_type=service_type.strip(),
                urgency=order_urgency,
                problem_description=_text(problem_description),
                area=_text(area),
                full_address=_text(full_address),
                preferred_date=preferred_date,
                preferred_time=preferred_time,
                dispatcher_note=_text(dispatcher_note),
                pricing_type=kind,
                initial_price=price,
                callout_fee=fee,
                status=S.PLACED,
                created_at=current,
                updated_at=current,
                version=1,
            )
            self.session.add(order)
            await self.session.flush()
            await self._audit(order.id, "create", None, order_snapshot(order), actor)
            _log.info("create_order SUCCESS: order=%s by=%s", order.id, actor.id)
            log_workflow_event(
                WorkflowEvent.ORDER_CREATED,
                order_id=order.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                to_status=S.PLACED.value,
            )
            # Walk-in clients have no account to notify
            self._notify_later(client_id, NotificationEvent.ORDER_CREATED, order_id=order.id)
            return OperationResult.ok(order)

        return await self._write("create_order", work, actor=actor)

    async def update_order(
        self,
        order_id: int,
        actor: Actor,
        changes: dict[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Edit an open or in-progress order.

        ``callout_fee`` and ``initial_price`` go through the same parsing as
        on create: an empty or unparseable fee falls back to the default, an
        empty or unparseable price clears it. Status never changes here.
        """
        unknown = set(changes) - EDITABLE_FIELDS

        async def work() -> OperationResult:
            current = now or now_utc()
            _log.info("update_order START: order_id=%s actor=%s fields=%s", order_id, actor.id, sorted(changes))
            if unknown:
                _log.info("update_order: unknown fields %s", sorted(unknown))
                return OperationResult.fail(ReasonCode.VALIDATION_FAILED)
            order = await self._get(order_id)
            if order is None:
                return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
            check = check_transition(order, actor, OrderAction.EDIT, now=current)
            if not check.allowed:
                return self._rejected("update", order, actor, check)

            values: dict[str, Any] = {}
            for name in _TEXT_FIELDS & set(changes):
                values[name] = _text(changes[name])
            if "problem_description" in values and values["problem_description"] is None:
                return OperationResult.fail(ReasonCode.VALIDATION_FAILED)
            if "client_phone" in values:
                values["client_phone_digits"] = digits_only(values["client_phone"]) or None

            fee = order.callout_fee
            if "callout_fee" in changes:
                fee = parse_optional_money(changes["callout_fee"])
                if fee is None:
                    fee = Decimal(self.cfg.default_callout_fee)
                values["callout_fee"] = fee
            price = order.initial_price
            if "initial_price" in changes:
                price = parse_optional_money(changes["initial_price"])
                values["initial_price"] = price
                values["pricing_type"] = (
                    m.PricingType.FIXED if price is not None else m.PricingType.UNKNOWN
                )
            if fee < 0 or (price is not None and price < 0):
                return OperationResult.fail(ReasonCode.VALIDATION_FAILED)
            if price is not None and price < fee:
                return OperationResult.fail(ReasonCode.PRICE_BELOW_CALLOUT_FEE)

            before = order_snapshot(order)
            changed = {k: v for k, v in values.items() if getattr(order, k) != v}
            if not changed:
                return OperationResult.ok(order, message="no changes")
            updated = await self._apply(order, current, **changed)
            if updated is None:
                return OperationResult.fail(ReasonCode.CONCURRENT_UPDATE)
            await self._audit(order_id, "update", before, order_snapshot(updated), actor)
            _log.info("update_order SUCCESS: order=%s fields=%s", order_id, sorted(changed))
            return OperationResult.ok(updated)

        return await self._write("update_order", work, actor=actor)

    # ----- master actions -----

    async def claim_order(
        self, order_id: int, master: Actor, *, now: Optional[datetime] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            _log.info("claim_order START: order_id=%s master=%s", order_id, master.id)
            order = await self._get(order_id)
            if order is None:
                return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
            before = order_snapshot(order)
            result = await self.claims.claim(order_id, master, now=now)
            if not result.success:
                return result
            claimed: m.orders = result.payload
            await self.ledger.refresh_active_jobs(master.id)
            await self._audit(order_id, "claim", before, order_snapshot(claimed), master)
            self._notify_later(
                handler_id(claimed),
                NotificationEvent.ORDER_CLAIMED,
                order_id=order_id,
                master_id=master.id,
            )
            return result

        return await self._write("claim_order", work, actor=master)

    async def start_job(
        self, order_id: int, actor: Actor, *, now: Optional[datetime] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            result, _, order = await self._simple_transition(
                "start",
                order_id,
                actor,
                OrderAction.START,
                lambda o, ts: {"status": S.STARTED, "started_at": ts},
                now=now,
            )
            if result.success:
                self._notify_later(handler_id(order), NotificationEvent.JOB_STARTED, order_id=order_id)
            return result

        return await self._write("start_job", work, actor=actor)

    async def complete_job(
        self,
        order_id: int,
        actor: Actor,
        final_price: Any,
        *,
        work_performed: Optional[str] = None,
        hours_worked: Any = None,
        price_change_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        price = parse_optional_money(final_price)

        def values(order: m.orders, ts: datetime) -> dict[str, Any]:
            requires_review = bool(order.requires_review)
            initial = order.initial_price
            if initial is not None and initial > 0:
                deviation = abs(price - initial) / initial
                if deviation > self.cfg.price_deviation_threshold:
                    _log.info(
                        "complete: order=%s price deviation %.2f exceeds threshold",
                        order.id,
                        deviation,
                    )
                    requires_review = True
            return {
                "status": S.COMPLETED,
                "completed_at": ts,
                "final_price": price,
                "work_performed": _text(work_performed),
                "hours_worked": parse_optional_money(hours_worked),
                "price_change_reason": _text(price_change_reason),
                "requires_review": requires_review,
            }

        async def work() -> OperationResult:
            result, _, order = await self._simple_transition(
                "complete",
                order_id,
                actor,
                OrderAction.COMPLETE,
                values,
                now=now,
                final_price=price,
            )
            if result.success:
                await self.ledger.refresh_active_jobs(actor.id)
                self._notify_later(
                    handler_id(order),
                    NotificationEvent.JOB_COMPLETED,
                    order_id=order_id,
                    final_price=str(order.final_price),
                )
            return result

        return await self._write("complete_job", work, actor=actor)

    async def refuse_job(
        self,
        order_id: int,
        actor: Actor,
        reason: Any,
        *,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        cancel_reason = _coerce(m.CancelReason, reason)

        async def work() -> OperationResult:
            result, _, order = await self._simple_transition(
                "refuse",
                order_id,
                actor,
                OrderAction.REFUSE,
                lambda o, ts: {
                    "status": S.CANCELED_BY_MASTER,
                    "master_id": None,
                    "cancellation_master_id": o.master_id,
                    "cancellation_reason": cancel_reason.value,
                    "cancellation_notes": _text(notes),
                    "canceled_at": ts,
                },
                now=now,
                notes=_text(notes),
                cancel_reason=cancel_reason,
                cancel_notes=notes,
            )
            if result.success:
                await self.ledger.record_refusal(actor.id)
                await self.ledger.refresh_active_jobs(actor.id)
                self._notify_later(
                    handler_id(order),
                    NotificationEvent.JOB_REFUSED,
                    order_id=order_id,
                    reason=cancel_reason.value,
                )
            return result

        return await self._write("refuse_job", work, actor=actor)

    # ----- staff actions -----

    async def confirm_payment(
        self,
        order_id: int,
        actor: Actor,
        payment_method: Any,
        *,
        payment_proof_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        method = _coerce(m.PaymentMethod, payment_method)

        async def work() -> OperationResult:
            result, _, confirmed = await self._simple_transition(
                "confirm",
                order_id,
                actor,
                OrderAction.CONFIRM,
                lambda o, ts: {
                    "status": S.CONFIRMED,
                    "confirmed_at": ts,
                    "payment_confirmed_at": ts,
                    "payment_method": method,
                    "payment_proof_url": _text(payment_proof_url),
                    "payment_confirmed_by": actor.id,
                },
                now=now,
                payment_method=method,
                payment_proof_url=payment_proof_url,
            )
            if not result.success:
                return result
            try:
                posting = await self.ledger.post_commission_for_order(confirmed)
            except LedgerError as err:
                _log.error("confirm: order=%s commission posting failed: %s", order_id, err)
                if await self.ledger.get_ledger(confirmed.master_id) is None:
                    return OperationResult.fail(ReasonCode.LEDGER_MISSING)
                return OperationResult.fail(ReasonCode.CONCURRENT_UPDATE)
            self._notify_later(
                confirmed.master_id,
                NotificationEvent.PAYMENT_CONFIRMED,
                order_id=order_id,
                commission=str(posting.amount),
            )
            return OperationResult.ok(confirmed, message=f"commission {posting.amount}")

        return await self._write("confirm_payment", work, actor=actor)

    async def cancel_by_client(
        self,
        order_id: int,
        actor: Actor,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        async def work() -> OperationResult:
            result, before, order = await self._simple_transition(
                "cancel_by_client",
                order_id,
                actor,
                OrderAction.CANCEL_BY_CLIENT,
                lambda o, ts: {
                    "status": S.CANCELED_BY_CLIENT,
                    "master_id": None,
                    "cancellation_reason": "client_request",
                    "cancellation_notes": _text(reason),
                    "canceled_at": ts,
                },
                now=now,
                notes=_text(reason),
            )
            if result.success and before["master_id"] is not None:
                await self.ledger.refresh_active_jobs(before["master_id"])
                self._notify_later(
                    before["master_id"], NotificationEvent.ORDER_CANCELED, order_id=order_id
                )
            return result

        return await self._write("cancel_by_client", work, actor=actor)

    async def reopen_order(
        self,
        order_id: int,
        actor: Actor,
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        async def work() -> OperationResult:
            result, _, order = await self._simple_transition(
                "reopen",
                order_id,
                actor,
                OrderAction.REOPEN,
                lambda o, ts: {
                    "status": S.REOPENED,
                    "master_id": None,
                    "claimed_at": None,
                    "started_at": None,
                },
                now=now,
                notes=_text(note),
            )
            if result.success:
                self._notify_later(handler_id(order), NotificationEvent.ORDER_REOPENED, order_id=order_id)
            return result

        return await self._write("reopen_order", work, actor=actor)

    async def transfer_to_dispatcher(
        self,
        order_id: int,
        actor: Actor,
        target_dispatcher_id: int,
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        async def work() -> OperationResult:
            order = await self._get(order_id)
            if order is None:
                return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
            check = check_transition(
                order, actor, OrderAction.TRANSFER, target_dispatcher_id=target_dispatcher_id
            )
            if not check.allowed:
                return self._rejected("transfer", order, actor, check)
            target = await self._get_user(target_dispatcher_id)
            if target is None or target.role is not m.UserRole.DISPATCHER or not target.is_active:
                return OperationResult.fail(ReasonCode.TARGET_NOT_DISPATCHER)

            result, _, _ = await self._simple_transition(
                "transfer",
                order_id,
                actor,
                OrderAction.TRANSFER,
                lambda o, ts: {"assigned_dispatcher_id": target_dispatcher_id},
                now=now,
                notes=_text(note),
                target_dispatcher_id=target_dispatcher_id,
            )
            if result.success:
                self._notify_later(
                    target_dispatcher_id, NotificationEvent.ORDER_TRANSFERRED, order_id=order_id
                )
            return result

        return await self._write("transfer_to_dispatcher", work, actor=actor)

    async def force_assign_master(
        self,
        order_id: int,
        actor: Actor,
        master_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        async def work() -> OperationResult:
            _log.info("force_assign START: order_id=%s master=%s by=%s", order_id, master_id, actor.id)
            order = await self._get(order_id)
            if order is None:
                return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
            user = await self._get_user(master_id)
            if user is None or user.role is not m.UserRole.MASTER:
                return OperationResult.fail(ReasonCode.MASTER_NOT_FOUND)
            master = Actor(
                id=user.id,
                role=user.role,
                is_verified=bool(user.is_verified),
                is_active=bool(user.is_active),
            )
            before = order_snapshot(order)
            result = await self.claims.assign(order_id, master, actor=actor, now=now)
            if not result.success:
                return result
            await self.ledger.refresh_active_jobs(master_id)
            await self._audit(order_id, "force_assign", before, order_snapshot(result.payload), actor)
            self._notify_later(master_id, NotificationEvent.MASTER_ASSIGNED, order_id=order_id)
            return result

        return await self._write("force_assign_master", work, actor=actor)

    async def unassign_master(
        self,
        order_id: int,
        actor: Actor,
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        async def work() -> OperationResult:
            current = now or now_utc()
            order = await self._get(order_id)
            if order is None:
                return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
            check = check_transition(order, actor, OrderAction.UNASSIGN, now=current)
            if not check.allowed:
                return self._rejected("unassign", order, actor, check)

            before = order_snapshot(order)
            previous_master = order.master_id
            updated = await self._apply(
                order,
                current,
                status=S.REOPENED,
                master_id=None,
                claimed_at=None,
                started_at=None,
            )
            if updated is None:
                return OperationResult.fail(ReasonCode.CONCURRENT_UPDATE)

            # Audit trail shows the master leaving, then the order returning to the pool
            released = dict(before, status=S.CANCELED_BY_MASTER.value, master_id=None)
            await self._audit(order_id, "unassign", before, released, actor, _text(note))
            await self._audit(order_id, "reopen", released, order_snapshot(updated), actor)
            await self.ledger.refresh_active_jobs(previous_master)
            self._transitioned("unassign", before, updated, actor)
            self._notify_later(previous_master, NotificationEvent.MASTER_UNASSIGNED, order_id=order_id)
            return OperationResult.ok(updated)

        return await self._write("unassign_master", work, actor=actor)

    async def flag_dispute(
        self, order_id: int, actor: Actor, *, note: Optional[str] = None, now: Optional[datetime] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            result, _, _ = await self._simple_transition(
                "flag_dispute",
                order_id,
                actor,
                OrderAction.FLAG_DISPUTE,
                lambda o, ts: {"is_disputed": True},
                now=now,
                notes=_text(note),
            )
            return result

        return await self._write("flag_dispute", work, actor=actor)

    async def resolve_dispute(
        self, order_id: int, actor: Actor, *, note: Optional[str] = None, now: Optional[datetime] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            result, _, _ = await self._simple_transition(
                "resolve_dispute",
                order_id,
                actor,
                OrderAction.RESOLVE_DISPUTE,
                lambda o, ts: {"is_disputed": False, "requires_review": False},
                now=now,
                notes=_text(note),
            )
            return result

        return await self._write("resolve_dispute", work, actor=actor)

    async def override_final_price(
        self,
        order_id: int,
        actor: Actor,
        final_price: Any,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        price = parse_optional_money(final_price)

        async def work() -> OperationResult:
            order = await self._get(order_id)
            if order is None:
                return OperationResult.fail(ReasonCode.ORDER_NOT_FOUND)
            old_price = order.final_price
            result, _, updated = await self._simple_transition(
                "override_price",
                order_id,
                actor,
                OrderAction.OVERRIDE_PRICE,
                lambda o, ts: {"final_price": price, "price_change_reason": _text(reason)},
                now=now,
                notes=_text(reason),
                final_price=price,
            )
            if not result.success:
                return result
            delta = await self.ledger.post_commission_delta(
                updated, old_price=Decimal(old_price), new_price=price, actor_id=actor.id
            )
            if not delta.success:
                return delta
            return result

        return await self._write("override_final_price", work, actor=actor)

    # ----- ledger and payouts -----

    async def record_commission_payment(
        self, actor: Actor, master_id: int, amount: Any, *, note: Optional[str] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            if not actor.is_staff:
                return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
            return await self.ledger.record_commission_payment(
                master_id, amount, actor_id=actor.id, note=note
            )

        return await self._write("record_commission_payment", work, actor=actor)

    async def top_up(
        self, actor: Actor, master_id: int, amount: Any, *, note: Optional[str] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            if not actor.is_staff:
                return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
            return await self.ledger.top_up(master_id, amount, actor_id=actor.id, note=note)

        return await self._write("top_up", work, actor=actor)

    async def adjust_balance(
        self,
        actor: Actor,
        master_id: int,
        amount: Any,
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        async def work() -> OperationResult:
            result = await self.ledger.adjust_balance(
                master_id, amount, actor=actor, note=note, now=now
            )
            if result.success and result.payload.blocked:
                self._notify_later(
                    master_id,
                    NotificationEvent.BALANCE_BLOCKED,
                    balance=str(result.payload.balance_after),
                )
            return result

        return await self._write("adjust_balance", work, actor=actor)

    async def unblock_balance(self, actor: Actor, master_id: int) -> OperationResult:
        async def work() -> OperationResult:
            return await self.ledger.unblock_balance(master_id, actor=actor)

        return await self._write("unblock_balance", work, actor=actor)

    async def request_payout(
        self, actor: Actor, amount: Any, *, note: Optional[str] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            return await self.payouts.request_payout(actor, amount, note=note)

        return await self._write("request_payout", work, actor=actor)

    async def process_payout_request(
        self,
        request_id: int,
        action: Any,
        actor: Actor,
        *,
        approved_amount: Any = None,
        admin_note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        payout_action = _coerce(PayoutAction, action)

        async def work() -> OperationResult:
            if payout_action is None:
                return OperationResult.fail(ReasonCode.VALIDATION_FAILED)
            result = await self.payouts.process_payout_request(
                request_id,
                payout_action,
                actor,
                approved_amount=approved_amount,
                admin_note=admin_note,
                now=now,
            )
            if result.success:
                self._notify_later(
                    result.payload.master_id,
                    NotificationEvent.PAYOUT_PROCESSED,
                    request_id=request_id,
                    action=result.payload.status.value,
                )
            return result

        return await self._write("process_payout_request", work, actor=actor)

    async def mark_payout_paid(
        self, request_id: int, actor: Actor, *, now: Optional[datetime] = None
    ) -> OperationResult:
        async def work() -> OperationResult:
            return await self.payouts.mark_payout_paid(request_id, actor, now=now)

        return await self._write("mark_payout_paid", work, actor=actor)

    # ----- reads -----

    async def get_queue_page(
        self,
        actor: Actor,
        scope: QueueScope,
        query: Optional[QueueQuery] = None,
        *,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._read(
            "get_queue_page", lambda: self.queue.get_page(actor, scope, query, now=now)
        )

    async def get_stats_summary(
        self,
        actor: Actor,
        dispatcher_id: int,
        *,
        days: int = 7,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._read(
            "get_stats_summary",
            lambda: self.stats.get_summary(actor, dispatcher_id, days=days, now=now),
        )

    async def get_ledger_reconciliation(self, actor: Actor, master_id: int) -> OperationResult:
        async def fetch() -> OperationResult:
            if not actor.is_admin:
                return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
            if await self.ledger.get_ledger(master_id) is None:
                return OperationResult.fail(ReasonCode.LEDGER_MISSING)
            return OperationResult.ok(await self.ledger.reconcile(master_id))

        return await self._read("get_ledger_reconciliation", fetch)

    async def get_order_history(self, actor: Actor, order_id: int) -> OperationResult:
        return await self._read(
            "get_order_history", lambda: self.history.order_audit_trail(actor, order_id)
        )

    async def get_master_history(self, actor: Actor, master_id: int) -> OperationResult:
        return await self._read(
            "get_master_history", lambda: self.history.master_history(actor, master_id)
        )

    async def get_dispatcher_history(self, actor: Actor, dispatcher_id: int) -> OperationResult:
        return await self._read(
            "get_dispatcher_history", lambda: self.history.dispatcher_history(actor, dispatcher_id)
        )

    async def list_master_orders(
        self, actor: Actor, master_id: int, *, page: int = 1, limit: int = 10
    ) -> OperationResult:
        return await self._read(
            "list_master_orders",
            lambda: self.history.master_orders(actor, master_id, page=page, limit=limit),
        )

    async def list_available_masters(
        self, actor: Actor, *, now: Optional[datetime] = None
    ) -> OperationResult:
        return await self._read(
            "list_available_masters", lambda: self.history.available_masters(actor, now=now)
        )
