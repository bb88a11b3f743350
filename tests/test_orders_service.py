"""
Order edits and the read side of OrdersService: audit trail, per-person
history, a master's own job list and force-assign candidates.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from dispatch_service.db import models as m
from dispatch_service.services.results import ReasonCode

from conftest import (
    NOW,
    _create_admin,
    _create_dispatcher,
    _create_master,
    _create_order,
    as_actor,
    reload,
)

S = m.OrderStatus


async def _audit_rows(session, order_id):
    rows = await session.execute(
        select(m.order_audit_log)
        .where(m.order_audit_log.order_id == order_id)
        .order_by(m.order_audit_log.id)
    )
    return list(rows.scalars())


async def _priced_order(session, dispatcher, **kwargs):
    order = await _create_order(
        session,
        dispatcher_id=dispatcher.id,
        initial_price="650",
        callout_fee="500",
        pricing_type=m.PricingType.FIXED,
        **kwargs,
    )
    return order.id


# ----- update_order -----


@pytest.mark.asyncio
async def test_update_coerces_money_like_create(service, session, cfg):
    dispatcher = as_actor(await _create_dispatcher(session))
    order_id = await _priced_order(session, dispatcher)

    result = await service.update_order(
        order_id, dispatcher, {"callout_fee": "", "initial_price": "abc"}, now=NOW
    )

    assert result.success, result.reason
    order = await reload(session, m.orders, order_id)
    assert order.callout_fee == Decimal(cfg.default_callout_fee)
    assert order.initial_price is None
    assert order.pricing_type is m.PricingType.UNKNOWN
    assert order.version == 2

    audit = (await _audit_rows(session, order_id))[-1]
    assert audit.action == "update"
    assert audit.performed_by == dispatcher.id
    assert audit.old_data["initial_price"] == "650.00"
    assert audit.new_data["initial_price"] is None


@pytest.mark.asyncio
async def test_update_keeps_price_above_callout_fee(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    order_id = await _priced_order(session, dispatcher)

    low_price = await service.update_order(order_id, dispatcher, {"initial_price": "499.99"})
    high_fee = await service.update_order(order_id, dispatcher, {"callout_fee": "700"})
    negative = await service.update_order(order_id, dispatcher, {"callout_fee": "-1"})
    both = await service.update_order(
        order_id, dispatcher, {"callout_fee": "700", "initial_price": "900"}, now=NOW
    )

    assert low_price.reason is ReasonCode.PRICE_BELOW_CALLOUT_FEE
    assert high_fee.reason is ReasonCode.PRICE_BELOW_CALLOUT_FEE
    assert negative.reason is ReasonCode.VALIDATION_FAILED
    assert both.success
    order = await reload(session, m.orders, order_id)
    assert (order.callout_fee, order.initial_price) == (Decimal("700.00"), Decimal("900.00"))
    assert order.pricing_type is m.PricingType.FIXED
    assert [row.action for row in await _audit_rows(session, order_id)] == ["update"]


@pytest.mark.asyncio
async def test_update_text_fields(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    order_id = await _priced_order(session, dispatcher)

    blank = await service.update_order(order_id, dispatcher, {"problem_description": "  "})
    unknown = await service.update_order(order_id, dispatcher, {"status": "confirmed"})
    edited = await service.update_order(
        order_id,
        dispatcher,
        {"client_phone": " +371 2999-0000 ", "full_address": "Elizabetes iela 10", "area": ""},
        now=NOW,
    )

    assert blank.reason is ReasonCode.VALIDATION_FAILED
    assert unknown.reason is ReasonCode.VALIDATION_FAILED
    assert edited.success
    order = await reload(session, m.orders, order_id)
    assert order.client_phone == "+371 2999-0000"
    assert order.client_phone_digits == "37129990000"
    assert order.full_address == "Elizabetes iela 10"
    assert order.area is None
    assert order.status is S.PLACED


@pytest.mark.asyncio
async def test_update_without_changes_writes_nothing(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    order_id = await _priced_order(session, dispatcher)

    result = await service.update_order(order_id, dispatcher, {"initial_price": "650"})

    assert result.success
    assert result.message == "no changes"
    assert (await reload(session, m.orders, order_id)).version == 1
    assert await _audit_rows(session, order_id) == []


@pytest.mark.asyncio
async def test_update_guards(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    colleague = as_actor(await _create_dispatcher(session))
    admin = as_actor(await _create_admin(session))
    master = await _create_master(session)
    open_id = await _priced_order(session, dispatcher)
    closed_id = await _priced_order(
        session, dispatcher, status=S.CONFIRMED, master_id=master.id, final_price="700"
    )
    note = {"dispatcher_note": "call before arrival"}

    assert (await service.update_order(open_id, colleague, note)).reason is ReasonCode.NOT_ORDER_OWNER
    assert (
        await service.update_order(open_id, as_actor(master), note)
    ).reason is ReasonCode.NOT_AUTHORIZED
    assert (await service.update_order(closed_id, dispatcher, note)).reason is (
        ReasonCode.INVALID_TRANSITION
    )
    assert (await service.update_order(999, dispatcher, note)).reason is ReasonCode.ORDER_NOT_FOUND
    assert (await service.update_order(open_id, admin, note, now=NOW)).success
    assert (await reload(session, m.orders, open_id)).dispatcher_note == "call before arrival"


# ----- audit trail -----


@pytest.mark.asyncio
async def test_order_history_is_handler_only(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    colleague = as_actor(await _create_dispatcher(session))
    admin = as_actor(await _create_admin(session))
    master = as_actor(await _create_master(session))
    created = await service.create_order(
        dispatcher,
        service_type="plumbing",
        problem_description="Leaking kitchen tap",
        client_phone="+371 2000-1234",
        now=NOW,
    )
    order_id = created.payload.id
    assert (await service.claim_order(order_id, master, now=NOW)).success

    trail = await service.get_order_history(dispatcher, order_id)

    assert [entry.action for entry in trail.payload] == ["create", "claim"]
    assert [entry.performed_by for entry in trail.payload] == [dispatcher.id, master.id]
    assert trail.payload[1].new_data["status"] == "claimed"
    assert (await service.get_order_history(admin, order_id)).success
    assert (await service.get_order_history(colleague, order_id)).reason is ReasonCode.NOT_AUTHORIZED
    assert (await service.get_order_history(master, order_id)).reason is ReasonCode.NOT_AUTHORIZED
    assert (await service.get_order_history(admin, 999)).reason is ReasonCode.ORDER_NOT_FOUND


# ----- per-person history -----


@pytest.mark.asyncio
async def test_master_history_includes_orders_they_left(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    admin = as_actor(await _create_admin(session))
    master = as_actor(await _create_master(session))
    other = as_actor(await _create_master(session))
    held = await _create_order(
        session, dispatcher_id=dispatcher.id, status=S.CLAIMED, master_id=master.id,
        created_at=NOW - timedelta(hours=1),
    )
    refused = await _create_order(
        session, dispatcher_id=dispatcher.id, status=S.STARTED, master_id=master.id,
        created_at=NOW - timedelta(hours=2),
    )
    unassigned = await _create_order(
        session, dispatcher_id=dispatcher.id, created_at=NOW - timedelta(hours=3)
    )
    foreign = await _create_order(
        session, dispatcher_id=dispatcher.id, status=S.CLAIMED, master_id=other.id
    )
    held_id, refused_id, unassigned_id, foreign_id = held.id, refused.id, unassigned.id, foreign.id

    assert (await service.refuse_job(refused_id, master, "tools_missing", now=NOW)).success
    assert (await service.claim_order(unassigned_id, master, now=NOW)).success
    assert (await service.unassign_master(unassigned_id, dispatcher, now=NOW)).success

    history = await service.get_master_history(admin, master.id)

    assert [item.id for item in history.payload] == [held_id, refused_id, unassigned_id]
    assert foreign_id not in [item.id for item in history.payload]
    assert (await service.get_master_history(dispatcher, master.id)).reason is (
        ReasonCode.NOT_AUTHORIZED
    )


@pytest.mark.asyncio
async def test_dispatcher_history_follows_transfers(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    colleague = as_actor(await _create_dispatcher(session))
    bystander = as_actor(await _create_dispatcher(session))
    admin = as_actor(await _create_admin(session))
    order_id = await _priced_order(session, dispatcher)
    assert (await service.transfer_to_dispatcher(order_id, dispatcher, colleague.id, now=NOW)).success

    mine = await service.get_dispatcher_history(dispatcher, dispatcher.id)
    theirs = await service.get_dispatcher_history(admin, colleague.id)
    nobody = await service.get_dispatcher_history(bystander, bystander.id)
    peeking = await service.get_dispatcher_history(bystander, dispatcher.id)

    assert [item.id for item in mine.payload] == [order_id]
    assert [item.id for item in theirs.payload] == [order_id]
    assert nobody.payload == []
    assert peeking.reason is ReasonCode.NOT_AUTHORIZED


# ----- master job list -----


@pytest.mark.asyncio
async def test_master_orders_paginate_and_hide_closed_contacts(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    master = await _create_master(session, full_name="Janis Ozols")
    other = as_actor(await _create_master(session))
    for status, hours, price in (
        (S.CLAIMED, 3, None),
        (S.CONFIRMED, 2, "700"),
        (S.COMPLETED, 1, "650"),
    ):
        await _create_order(
            session,
            dispatcher_id=dispatcher.id,
            status=status,
            master_id=master.id,
            final_price=price,
            full_address="Brivibas iela 5",
            created_at=NOW - timedelta(hours=hours),
        )
    await _create_order(session, dispatcher_id=dispatcher.id, status=S.CANCELED_BY_MASTER)

    first = await service.list_master_orders(as_actor(master), master.id, limit=2)
    second = await service.list_master_orders(as_actor(master), master.id, page=2, limit=2)

    assert first.payload.total_count == 3
    assert first.payload.total_pages == 2
    assert [item.status for item in first.payload.orders] == [S.COMPLETED, S.CONFIRMED]
    assert [item.status for item in second.payload.orders] == [S.CLAIMED]
    completed, confirmed = first.payload.orders
    assert completed.master_name == "Janis Ozols"
    assert completed.client_phone == "+371 2000-1234"
    assert confirmed.client_phone is None
    assert confirmed.full_address is None

    staff_view = await service.list_master_orders(dispatcher, master.id, limit=2)
    assert staff_view.payload.orders[1].client_phone == "+371 2000-1234"
    assert (await service.list_master_orders(other, master.id)).reason is ReasonCode.NOT_AUTHORIZED


# ----- force-assign candidates -----


@pytest.mark.asyncio
async def test_available_masters_lists_only_assignable(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))
    busy = await _create_master(session, full_name="Busy", max_active_jobs=2)
    free = await _create_master(session, full_name="Free")
    full = await _create_master(session, full_name="Full", max_active_jobs=1)
    await _create_master(session, full_name="Blocked", blocked_at=NOW)
    await _create_master(session, full_name="Low", prepaid_balance="40", balance_threshold="50")
    await _create_master(session, full_name="Unverified", is_verified=False)
    await _create_master(session, full_name="Inactive", is_active=False)
    await _create_master(session, full_name="No ledger", with_ledger=False)
    for holder in (busy, full):
        await _create_order(
            session, dispatcher_id=dispatcher.id, status=S.STARTED, master_id=holder.id
        )

    result = await service.list_available_masters(dispatcher, now=NOW)

    assert [c.id for c in result.payload] == [free.id, busy.id]
    assert [c.active_jobs for c in result.payload] == [0, 1]
    assert result.payload[0].prepaid_balance == Decimal("1000.00")
    assert (await service.list_available_masters(as_actor(free), now=NOW)).reason is (
        ReasonCode.NOT_AUTHORIZED
    )
