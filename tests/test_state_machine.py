from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from dispatch_service.db import models as m
from dispatch_service.services.identity import Actor
from dispatch_service.services.results import ReasonCode
from dispatch_service.services.state_machine import (
    TRANSITIONS,
    OrderAction,
    available_actions,
    check_transition,
    validate_final_price,
)

S = m.OrderStatus
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

MASTER = Actor(id=10, role=m.UserRole.MASTER)
OTHER_MASTER = Actor(id=11, role=m.UserRole.MASTER)
DISPATCHER = Actor(id=20, role=m.UserRole.DISPATCHER)
OTHER_DISPATCHER = Actor(id=21, role=m.UserRole.DISPATCHER)
ADMIN = Actor(id=30, role=m.UserRole.ADMIN)
CLIENT = Actor(id=40, role=m.UserRole.CLIENT)

ACTORS = {
    "master": MASTER,
    "other_master": OTHER_MASTER,
    "dispatcher": DISPATCHER,
    "other_dispatcher": OTHER_DISPATCHER,
    "admin": ADMIN,
    "client": CLIENT,
    "system": None,
}


def make_order(status=S.PLACED, **overrides):
    values = dict(
        id=1,
        status=status,
        master_id=MASTER.id if status in m.HELD_STATUSES else None,
        dispatcher_id=DISPATCHER.id,
        assigned_dispatcher_id=None,
        callout_fee=Decimal("500"),
        is_disputed=False,
        created_at=NOW - timedelta(hours=1),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_every_action_has_a_table_row():
    assert set(TRANSITIONS) == set(OrderAction)


@pytest.mark.parametrize(
    "action, status, actor, kwargs, target",
    [
        (OrderAction.CLAIM, S.PLACED, MASTER, {}, S.CLAIMED),
        (OrderAction.CLAIM, S.REOPENED, MASTER, {}, S.CLAIMED),
        (OrderAction.START, S.CLAIMED, MASTER, {}, S.STARTED),
        (OrderAction.COMPLETE, S.STARTED, MASTER, {"final_price": Decimal("700")}, S.COMPLETED),
        (
            OrderAction.REFUSE,
            S.STARTED,
            MASTER,
            {"cancel_reason": m.CancelReason.TOOLS_MISSING},
            S.CANCELED_BY_MASTER,
        ),
        (
            OrderAction.CONFIRM,
            S.COMPLETED,
            DISPATCHER,
            {"payment_method": m.PaymentMethod.CASH},
            S.CONFIRMED,
        ),
        (OrderAction.CANCEL_BY_CLIENT, S.CLAIMED, DISPATCHER, {}, S.CANCELED_BY_CLIENT),
        (OrderAction.REOPEN, S.CANCELED_BY_MASTER, DISPATCHER, {}, S.REOPENED),
        (OrderAction.REOPEN, S.EXPIRED, ADMIN, {}, S.REOPENED),
        (OrderAction.UNASSIGN, S.STARTED, DISPATCHER, {}, S.REOPENED),
    ],
)
def test_allowed_transitions(action, status, actor, kwargs, target):
    check = check_transition(make_order(status), actor, action, now=NOW, **kwargs)
    assert check.allowed, check.reason
    assert check.from_status is status
    assert check.to_status is target


def test_status_guard_applies_to_admin():
    check = check_transition(make_order(S.CONFIRMED), ADMIN, OrderAction.REOPEN, now=NOW)
    assert not check.allowed
    assert check.reason is ReasonCode.INVALID_TRANSITION


def test_claim_is_masters_only():
    check = check_transition(make_order(), DISPATCHER, OrderAction.CLAIM, now=NOW)
    assert check.reason is ReasonCode.NOT_A_MASTER


def test_claim_on_held_order_is_not_available():
    check = check_transition(make_order(S.CLAIMED), OTHER_MASTER, OrderAction.CLAIM, now=NOW)
    assert check.reason is ReasonCode.ORDER_NOT_AVAILABLE


def test_only_the_holder_may_start():
    check = check_transition(make_order(S.CLAIMED), OTHER_MASTER, OrderAction.START, now=NOW)
    assert check.reason is ReasonCode.NOT_ORDER_HOLDER


def test_handler_guard_and_admin_bypass():
    order = make_order(S.COMPLETED)
    denied = check_transition(
        order, OTHER_DISPATCHER, OrderAction.CONFIRM, payment_method=m.PaymentMethod.CASH
    )
    assert denied.reason is ReasonCode.NOT_ORDER_OWNER

    allowed = check_transition(
        order, ADMIN, OrderAction.CONFIRM, payment_method=m.PaymentMethod.CASH
    )
    assert allowed.allowed


def test_assigned_dispatcher_takes_over_ownership():
    order = make_order(S.COMPLETED, assigned_dispatcher_id=OTHER_DISPATCHER.id)
    check = check_transition(
        order, DISPATCHER, OrderAction.CONFIRM, payment_method=m.PaymentMethod.CASH
    )
    assert check.reason is ReasonCode.NOT_ORDER_OWNER


def test_disputed_confirmation_requires_admin():
    order = make_order(S.COMPLETED, is_disputed=True)
    check = check_transition(
        order, DISPATCHER, OrderAction.CONFIRM, payment_method=m.PaymentMethod.CASH
    )
    assert check.reason is ReasonCode.DISPUTED_REQUIRES_ADMIN
    assert check_transition(
        order, ADMIN, OrderAction.CONFIRM, payment_method=m.PaymentMethod.CASH
    ).allowed


def test_transfer_payment_needs_proof():
    order = make_order(S.COMPLETED)
    check = check_transition(
        order, DISPATCHER, OrderAction.CONFIRM, payment_method=m.PaymentMethod.TRANSFER
    )
    assert check.reason is ReasonCode.PROOF_REQUIRED
    check = check_transition(order, DISPATCHER, OrderAction.CONFIRM)
    assert check.reason is ReasonCode.PAYMENT_METHOD_REQUIRED


def test_refuse_other_needs_notes():
    order = make_order(S.STARTED)
    check = check_transition(
        order, MASTER, OrderAction.REFUSE, cancel_reason=m.CancelReason.OTHER, cancel_notes=" "
    )
    assert check.reason is ReasonCode.REASON_REQUIRED
    assert check_transition(order, MASTER, OrderAction.REFUSE).reason is ReasonCode.REASON_REQUIRED


@pytest.mark.parametrize("actor_name", list(ACTORS))
@pytest.mark.parametrize("status", list(S))
@pytest.mark.parametrize("action", [OrderAction.COMPLETE, OrderAction.OVERRIDE_PRICE])
def test_price_floor_is_checked_before_anything_else(action, status, actor_name):
    order = make_order(status)
    actor = ACTORS[actor_name]

    low = check_transition(order, actor, action, final_price=Decimal("499.99"), now=NOW)
    missing = check_transition(order, actor, action, final_price=None, now=NOW)

    assert low.reason is ReasonCode.PRICE_BELOW_CALLOUT_FEE
    assert missing.reason is ReasonCode.VALIDATION_FAILED


def test_validate_final_price():
    assert validate_final_price(None, Decimal("500")) is ReasonCode.VALIDATION_FAILED
    assert validate_final_price(Decimal("0"), Decimal("0")) is ReasonCode.VALIDATION_FAILED
    assert validate_final_price(Decimal("500"), Decimal("500")) is None


def test_transfer_to_same_dispatcher_is_rejected():
    check = check_transition(
        make_order(S.CLAIMED),
        DISPATCHER,
        OrderAction.TRANSFER,
        target_dispatcher_id=DISPATCHER.id,
    )
    assert check.reason is ReasonCode.SAME_DISPATCHER


def test_expire_is_system_only_and_time_bound():
    order = make_order(S.PLACED, created_at=NOW - timedelta(hours=49))
    assert check_transition(order, None, OrderAction.EXPIRE, expiry_hours=48, now=NOW).allowed
    assert (
        check_transition(order, ADMIN, OrderAction.EXPIRE, expiry_hours=48, now=NOW).reason
        is ReasonCode.NOT_AUTHORIZED
    )
    fresh = make_order(S.PLACED, created_at=NOW - timedelta(hours=47))
    assert (
        check_transition(fresh, None, OrderAction.EXPIRE, expiry_hours=48, now=NOW).reason
        is ReasonCode.NOT_EXPIRED_YET
    )


def test_missing_actor_fails_closed():
    assert check_transition(make_order(), None, OrderAction.CLAIM).reason is ReasonCode.NO_ACTOR


def test_available_actions_for_holder_and_dispatcher():
    order = make_order(S.STARTED)
    assert set(available_actions(order, MASTER)) == {OrderAction.COMPLETE, OrderAction.REFUSE}
    assert set(available_actions(order, DISPATCHER)) == {
        OrderAction.CANCEL_BY_CLIENT,
        OrderAction.TRANSFER,
        OrderAction.UNASSIGN,
        OrderAction.FLAG_DISPUTE,
        OrderAction.EDIT,
    }
    assert available_actions(order, OTHER_MASTER) == []


# ----- full grid -----

STAFF = {"dispatcher", "other_dispatcher", "admin"}
ACTIVE = {S.PLACED, S.REOPENED, S.CLAIMED, S.STARTED}
HELD = {S.CLAIMED, S.STARTED, S.COMPLETED, S.CONFIRMED}

# action: (from statuses, who may act, ownership rule)
EXPECTED = {
    OrderAction.CLAIM: ({S.PLACED, S.REOPENED}, {"master", "other_master"}, None),
    OrderAction.FORCE_ASSIGN: ({S.PLACED, S.REOPENED}, STAFF, "handler"),
    OrderAction.START: ({S.CLAIMED}, {"master", "other_master"}, "holder"),
    OrderAction.COMPLETE: ({S.STARTED}, {"master", "other_master"}, "holder"),
    OrderAction.REFUSE: ({S.STARTED}, {"master", "other_master"}, "holder"),
    OrderAction.CONFIRM: ({S.COMPLETED}, STAFF, "handler"),
    OrderAction.CANCEL_BY_CLIENT: (ACTIVE, STAFF, "handler"),
    OrderAction.REOPEN: ({S.CANCELED_BY_MASTER, S.CANCELED_BY_CLIENT, S.EXPIRED}, STAFF, "handler"),
    OrderAction.TRANSFER: (ACTIVE, STAFF, "handler"),
    OrderAction.UNASSIGN: ({S.CLAIMED, S.STARTED}, STAFF, "handler"),
    OrderAction.EXPIRE: ({S.PLACED}, {"system"}, None),
    OrderAction.FLAG_DISPUTE: (HELD, STAFF, "handler"),
    OrderAction.RESOLVE_DISPUTE: (set(S), {"admin"}, None),
    OrderAction.OVERRIDE_PRICE: ({S.CONFIRMED}, {"admin"}, None),
    OrderAction.EDIT: (ACTIVE, STAFF, "handler"),
}

# Inputs that satisfy every input-dependent guard
VALID_INPUTS = dict(
    final_price=Decimal("700"),
    payment_method=m.PaymentMethod.CASH,
    cancel_reason=m.CancelReason.TOOLS_MISSING,
    target_dispatcher_id=OTHER_DISPATCHER.id,
    expiry_hours=48,
)


def expected_reason(action, status, actor_name, disputed):
    statuses, who, ownership = EXPECTED[action]
    if actor_name not in who:
        if "system" in who:
            return ReasonCode.NOT_AUTHORIZED
        if actor_name == "system":
            return ReasonCode.NO_ACTOR
        return ReasonCode.NOT_A_MASTER if action is OrderAction.CLAIM else ReasonCode.NOT_AUTHORIZED
    if status not in statuses:
        if action in (OrderAction.CLAIM, OrderAction.FORCE_ASSIGN):
            return ReasonCode.ORDER_NOT_AVAILABLE
        return ReasonCode.INVALID_TRANSITION
    if action is OrderAction.CONFIRM and disputed and actor_name != "admin":
        return ReasonCode.DISPUTED_REQUIRES_ADMIN
    if ownership == "holder" and actor_name != "master":
        return ReasonCode.NOT_ORDER_HOLDER
    if ownership == "handler" and actor_name not in ("dispatcher", "admin"):
        return ReasonCode.NOT_ORDER_OWNER
    if action is OrderAction.RESOLVE_DISPUTE and not disputed:
        return ReasonCode.NOT_DISPUTED
    return None


def test_grid_covers_every_action():
    assert set(EXPECTED) == set(OrderAction)


@pytest.mark.parametrize("disputed", [False, True], ids=["clean", "disputed"])
@pytest.mark.parametrize("actor_name", list(ACTORS))
@pytest.mark.parametrize("status", list(S))
@pytest.mark.parametrize("action", list(OrderAction))
def test_transition_grid(action, status, actor_name, disputed):
    order = make_order(status, is_disputed=disputed, created_at=NOW - timedelta(hours=72))

    check = check_transition(order, ACTORS[actor_name], action, now=NOW, **VALID_INPUTS)

    reason = expected_reason(action, status, actor_name, disputed)
    assert check.reason is reason
    assert check.allowed is (reason is None)
    assert check.from_status is status
    if check.allowed:
        target = TRANSITIONS[action].target
        assert check.to_status is (target or status)
