from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import select

from dispatch_service.db import models as m
from dispatch_service.services import expiry_scheduler as expiry_module
from dispatch_service.services.expiry_scheduler import expire_stale_orders, expiry_scheduler
from dispatch_service.services.state_machine import TRANSITIONS, OrderAction

from conftest import NOW, _create_dispatcher, _create_master, _create_order, reload

S = m.OrderStatus


@pytest.mark.asyncio
async def test_expires_only_stale_unclaimed_orders(session, session_factory, cfg):
    dispatcher = await _create_dispatcher(session)
    handler = await _create_dispatcher(session)
    master = await _create_master(session)
    stale = await _create_order(
        session,
        dispatcher_id=dispatcher.id,
        assigned_dispatcher_id=handler.id,
        created_at=NOW - timedelta(hours=cfg.order_expiry_hours + 1),
    )
    fresh = await _create_order(
        session, dispatcher_id=dispatcher.id, created_at=NOW - timedelta(hours=1)
    )
    claimed = await _create_order(
        session,
        dispatcher_id=dispatcher.id,
        status=S.CLAIMED,
        master_id=master.id,
        created_at=NOW - timedelta(days=5),
    )
    reopened = await _create_order(
        session,
        dispatcher_id=dispatcher.id,
        status=S.REOPENED,
        created_at=NOW - timedelta(days=5),
    )
    stale_id, fresh_id, claimed_id, reopened_id = stale.id, fresh.id, claimed.id, reopened.id

    expired = await expire_stale_orders(session_factory, now=NOW, cfg=cfg)

    assert expired == [stale_id]
    stored = await reload(session, m.orders, stale_id)
    assert stored.status is S.EXPIRED
    assert stored.version == 2
    for order_id in (fresh_id, claimed_id, reopened_id):
        assert (await reload(session, m.orders, order_id)).version == 1

    audit = (
        await session.execute(
            select(m.order_audit_log).where(m.order_audit_log.order_id == stale_id)
        )
    ).scalar_one()
    assert audit.action == "expire"
    assert audit.performed_by is None
    assert audit.new_data == {"status": "expired"}

    outbox = (await session.execute(select(m.notifications_outbox))).scalar_one()
    assert outbox.recipient_id == handler.id
    assert outbox.event == "order_expired"
    assert outbox.payload["order_id"] == stale_id
    assert f"#{stale_id}" in outbox.payload["message"]


@pytest.mark.asyncio
async def test_nothing_to_expire(session, session_factory, cfg):
    dispatcher = await _create_dispatcher(session)
    await _create_order(session, dispatcher_id=dispatcher.id)

    assert await expire_stale_orders(session_factory, now=NOW, cfg=cfg) == []


@pytest.mark.asyncio
async def test_expiry_window_is_configurable(session, session_factory, cfg):
    dispatcher = await _create_dispatcher(session)
    order = await _create_order(
        session, dispatcher_id=dispatcher.id, created_at=NOW - timedelta(hours=3)
    )

    short = cfg.model_copy(update={"order_expiry_hours": 2})

    assert await expire_stale_orders(session_factory, now=NOW, cfg=short) == [order.id]


@pytest.mark.asyncio
async def test_scheduler_runs_requested_sweeps(monkeypatch, session_factory, cfg):
    sweeps = []
    sleeps = []

    async def fake_sweep(factory, *, cfg):
        sweeps.append(factory)
        if len(sweeps) == 1:
            raise RuntimeError("db restarting")
        return [7]

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(expiry_module, "expire_stale_orders", fake_sweep)
    monkeypatch.setattr(expiry_module.asyncio, "sleep", fake_sleep)

    await expiry_scheduler(session_factory, interval_seconds=5, iterations=3, cfg=cfg)

    assert len(sweeps) == 3
    # interval is clamped to one minute
    assert sleeps == [60, 60]


@pytest.mark.asyncio
async def test_sweep_follows_the_transition_table(monkeypatch, session, session_factory, cfg):
    widened = replace(
        TRANSITIONS[OrderAction.EXPIRE], sources=frozenset({S.PLACED, S.REOPENED})
    )
    monkeypatch.setitem(TRANSITIONS, OrderAction.EXPIRE, widened)
    dispatcher = await _create_dispatcher(session)
    reopened = await _create_order(
        session,
        dispatcher_id=dispatcher.id,
        status=S.REOPENED,
        created_at=NOW - timedelta(days=5),
    )
    reopened_id = reopened.id

    assert await expire_stale_orders(session_factory, now=NOW, cfg=cfg) == [reopened_id]

    assert (await reload(session, m.orders, reopened_id)).status is S.EXPIRED
    audit = (
        await session.execute(
            select(m.order_audit_log).where(m.order_audit_log.order_id == reopened_id)
        )
    ).scalar_one()
    assert audit.old_data == {"status": "reopened"}
