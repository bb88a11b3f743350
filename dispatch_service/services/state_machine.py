"""
Order state machine.

The table below is the single source of truth for which actor may move an
order between statuses. ``check_transition`` evaluates it against an order
row and returns the first unmet precondition; it never touches the database.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from dispatch_service.db import models as m
from dispatch_service.services.identity import Actor
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.time_service import as_utc, now_utc

S = m.OrderStatus
R = m.UserRole


class OrderAction(str, enum.Enum):
    CLAIM = "claim"
    FORCE_ASSIGN = "force_assign"
    START = "start"
    COMPLETE = "complete"
    REFUSE = "refuse"
    CONFIRM = "confirm"
    CANCEL_BY_CLIENT = "cancel_by_client"
    REOPEN = "reopen"
    TRANSFER = "transfer"
    UNASSIGN = "unassign"
    EXPIRE = "expire"
    FLAG_DISPUTE = "flag_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    OVERRIDE_PRICE = "override_price"
    EDIT = "edit"


class Ownership(enum.Enum):
    NONE = "none"
    HOLDER = "holder"  # the master holding the claim
    HANDLER = "handler"  # the dispatcher currently handling the order; admins bypass


@dataclass(slots=True, frozen=True)
class Transition:
    action: OrderAction
    sources: frozenset[m.OrderStatus]
    target: Optional[m.OrderStatus]  # None: no status change
    roles: frozenset[m.UserRole]
    ownership: Ownership = Ownership.NONE
    system: bool = False


_STAFF = frozenset({R.DISPATCHER, R.ADMIN})
_MASTER = frozenset({R.MASTER})

TRANSITIONS: dict[OrderAction, Transition] = {
    t.action: t
    for t in (
        Transition(OrderAction.CLAIM, m.OPEN_STATUSES, S.CLAIMED, _MASTER),
        Transition(
            OrderAction.FORCE_ASSIGN, m.OPEN_STATUSES, S.CLAIMED, _STAFF, Ownership.HANDLER
        ),
        Transition(
            OrderAction.START, frozenset({S.CLAIMED}), S.STARTED, _MASTER, Ownership.HOLDER
        ),
        Transition(
            OrderAction.COMPLETE, frozenset({S.STARTED}), S.COMPLETED, _MASTER, Ownership.HOLDER
        ),
        Transition(
            OrderAction.REFUSE,
            frozenset({S.STARTED}),
            S.CANCELED_BY_MASTER,
            _MASTER,
            Ownership.HOLDER,
        ),
        Transition(
            OrderAction.CONFIRM, frozenset({S.COMPLETED}), S.CONFIRMED, _STAFF, Ownership.HANDLER
        ),
        Transition(
            OrderAction.CANCEL_BY_CLIENT,
            frozenset({S.PLACED, S.CLAIMED, S.STARTED, S.REOPENED}),
            S.CANCELED_BY_CLIENT,
            _STAFF,
            Ownership.HANDLER,
        ),
        Transition(
            OrderAction.REOPEN,
            frozenset({S.CANCELED_BY_MASTER, S.CANCELED_BY_CLIENT, S.EXPIRED}),
            S.REOPENED,
            _STAFF,
            Ownership.HANDLER,
        ),
        Transition(OrderAction.TRANSFER, m.ACTIVE_STATUSES, None, _STAFF, Ownership.HANDLER),
        Transition(
            OrderAction.UNASSIGN,
            frozenset({S.CLAIMED, S.STARTED}),
            S.REOPENED,
            _STAFF,
            Ownership.HANDLER,
        ),
        Transition(
            OrderAction.EXPIRE, frozenset({S.PLACED}), S.EXPIRED, frozenset(), system=True
        ),
        Transition(OrderAction.FLAG_DISPUTE, m.HELD_STATUSES, None, _STAFF, Ownership.HANDLER),
        Transition(
            OrderAction.RESOLVE_DISPUTE,
            frozenset(m.OrderStatus),
            None,
            frozenset({R.ADMIN}),
        ),
        Transition(
            OrderAction.OVERRIDE_PRICE, frozenset({S.CONFIRMED}), None, frozenset({R.ADMIN})
        ),
        Transition(OrderAction.EDIT, m.ACTIVE_STATUSES, None, _STAFF, Ownership.HANDLER),
    )
}


@dataclass(slots=True, frozen=True)
class TransitionCheck:
    action: OrderAction
    allowed: bool
    from_status: Optional[m.OrderStatus] = None
    to_status: Optional[m.OrderStatus] = None
    reason: Optional[ReasonCode] = None

    def to_result(self) -> OperationResult:
        if self.allowed or self.reason is None:
            return OperationResult.ok()
        return OperationResult.fail(self.reason)


def sources_of(action: OrderAction) -> frozenset[m.OrderStatus]:
    """Statuses *action* may start from."""
    return TRANSITIONS[action].sources


def target_of(action: OrderAction) -> Optional[m.OrderStatus]:
    return TRANSITIONS[action].target


def handler_id(order: Any) -> Optional[int]:
    """Dispatcher currently responsible for *order*."""
    return order.assigned_dispatcher_id or order.dispatcher_id


def is_handler(order: Any, actor: Actor) -> bool:
    if actor.is_admin:
        return True
    return actor.is_dispatcher and handler_id(order) == actor.id


def validate_final_price(final_price: Optional[Decimal], callout_fee: Decimal) -> Optional[ReasonCode]:
    """Price floor applied before any completion or override write."""
    if final_price is None or final_price <= 0:
        return ReasonCode.VALIDATION_FAILED
    if final_price < callout_fee:
        return ReasonCode.PRICE_BELOW_CALLOUT_FEE
    return None


def check_transition(
    order: Any,
    actor: Optional[Actor],
    action: OrderAction,
    *,
    final_price: Optional[Decimal] = None,
    payment_method: Optional[m.PaymentMethod] = None,
    payment_proof_url: Optional[str] = None,
    cancel_reason: Optional[m.CancelReason] = None,
    cancel_notes: Optional[str] = None,
    target_dispatcher_id: Optional[int] = None,
    expiry_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TransitionCheck:
    """Evaluate *action* on *order* for *actor* against the transition table."""
    transition = TRANSITIONS[action]
    status = m.OrderStatus(order.status)

    def deny(reason: ReasonCode) -> TransitionCheck:
        return TransitionCheck(action, False, status, transition.target, reason)

    # Price floor holds whatever the actor or state
    if action in (OrderAction.COMPLETE, OrderAction.OVERRIDE_PRICE):
        price_error = validate_final_price(final_price, order.callout_fee)
        if price_error is not None:
            return deny(price_error)

    if transition.system:
        if actor is not None:
            return deny(ReasonCode.NOT_AUTHORIZED)
    else:
        if actor is None:
            return deny(ReasonCode.NO_ACTOR)
        if actor.role not in transition.roles:
            if action is OrderAction.CLAIM:
                return deny(ReasonCode.NOT_A_MASTER)
            return deny(ReasonCode.NOT_AUTHORIZED)

    if status not in transition.sources:
        if action in (OrderAction.CLAIM, OrderAction.FORCE_ASSIGN):
            return deny(ReasonCode.ORDER_NOT_AVAILABLE)
        return deny(ReasonCode.INVALID_TRANSITION)

    if action in (OrderAction.CLAIM, OrderAction.FORCE_ASSIGN, OrderAction.EXPIRE):
        if order.master_id is not None:
            return deny(ReasonCode.ORDER_NOT_AVAILABLE)

    # Absolute: ownership does not matter for disputed confirmations
    if action is OrderAction.CONFIRM and order.is_disputed and not actor.is_admin:
        return deny(ReasonCode.DISPUTED_REQUIRES_ADMIN)

    if transition.ownership is Ownership.HOLDER and order.master_id != actor.id:
        return deny(ReasonCode.NOT_ORDER_HOLDER)
    if transition.ownership is Ownership.HANDLER and not is_handler(order, actor):
        return deny(ReasonCode.NOT_ORDER_OWNER)

    if action is OrderAction.CONFIRM:
        if payment_method is None:
            return deny(ReasonCode.PAYMENT_METHOD_REQUIRED)
        if payment_method is m.PaymentMethod.TRANSFER and not (payment_proof_url or "").strip():
            return deny(ReasonCode.PROOF_REQUIRED)
    elif action is OrderAction.REFUSE:
        if cancel_reason is None:
            return deny(ReasonCode.REASON_REQUIRED)
        if cancel_reason is m.CancelReason.OTHER and not (cancel_notes or "").strip():
            return deny(ReasonCode.REASON_REQUIRED)
    elif action is OrderAction.TRANSFER:
        if target_dispatcher_id is None or target_dispatcher_id == handler_id(order):
            return deny(ReasonCode.SAME_DISPATCHER)
    elif action is OrderAction.RESOLVE_DISPUTE:
        if not order.is_disputed:
            return deny(ReasonCode.NOT_DISPUTED)
    elif action is OrderAction.EXPIRE:
        if expiry_hours is None:
            raise ValueError("expiry_hours is required for EXPIRE")
        current = now or now_utc()
        created_at = as_utc(order.created_at)
        if created_at is None or created_at > current - timedelta(hours=expiry_hours):
            return deny(ReasonCode.NOT_EXPIRED_YET)

    return TransitionCheck(action, True, status, transition.target or status)


def available_actions(order: Any, actor: Actor) -> list[OrderAction]:
    """Actions whose role, status and ownership guards pass for *actor*.

    Input-dependent guards (price, payment method, reason) are not evaluated.
    """
    result: list[OrderAction] = []
    for action, transition in TRANSITIONS.items():
        if transition.system or actor.role not in transition.roles:
            continue
        if m.OrderStatus(order.status) not in transition.sources:
            continue
        if action in (OrderAction.CLAIM, OrderAction.FORCE_ASSIGN) and order.master_id is not None:
            continue
        if transition.ownership is Ownership.HOLDER and order.master_id != actor.id:
            continue
        if transition.ownership is Ownership.HANDLER and not is_handler(order, actor):
            continue
        if action is OrderAction.CONFIRM and order.is_disputed and not actor.is_admin:
            continue
        if action is OrderAction.RESOLVE_DISPUTE and not order.is_disputed:
            continue
        result.append(action)
    return result
