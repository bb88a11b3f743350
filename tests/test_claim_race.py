"""
Claim resolution under contention.

Each master works through their own session, the way separate bot workers
would. Exactly one claim may win; everyone else sees the order as gone.
"""
import asyncio

import pytest
from sqlalchemy import func, select, update

from dispatch_service.db import models as m
from dispatch_service.services.orders_service import OrdersService
from dispatch_service.services.results import ReasonCode, ReasonKind

from conftest import NOW, _create_dispatcher, _create_master, _create_order, as_actor, reload


async def _claim_in_own_session(session_factory, cfg, order_id, master):
    async with session_factory() as s:
        return await OrdersService(s, cfg=cfg).claim_order(order_id, master, now=NOW)


@pytest.mark.asyncio
@pytest.mark.slow
async def test_concurrent_claims_single_winner(session, session_factory, cfg):
    dispatcher = await _create_dispatcher(session)
    masters = [as_actor(await _create_master(session)) for _ in range(5)]
    order = await _create_order(session, dispatcher_id=dispatcher.id)
    order_id = order.id

    results = await asyncio.gather(
        *(_claim_in_own_session(session_factory, cfg, order_id, mst) for mst in masters)
    )

    winners = [mst for mst, res in zip(masters, results) if res.success]
    assert len(winners) == 1
    # Losers wait on the write lock, then re-check and find the order taken
    assert [res.reason for res in results if not res.success] == [
        ReasonCode.ORDER_NO_LONGER_AVAILABLE
    ] * 4

    stored = await reload(session, m.orders, order_id)
    assert stored.master_id == winners[0].id
    assert stored.status is m.OrderStatus.CLAIMED
    assert stored.version == 2
    claims = await session.scalar(
        select(func.count())
        .select_from(m.order_audit_log)
        .where(m.order_audit_log.order_id == order_id, m.order_audit_log.action == "claim")
    )
    assert claims == 1


@pytest.mark.asyncio
async def test_loser_that_reads_after_commit_sees_order_gone(session, session_factory, cfg):
    first = as_actor(await _create_master(session))
    second = as_actor(await _create_master(session))
    order = await _create_order(session)
    order_id = order.id

    won = await _claim_in_own_session(session_factory, cfg, order_id, first)
    lost = await _claim_in_own_session(session_factory, cfg, order_id, second)

    assert won.success
    assert not lost.success
    assert lost.reason is ReasonCode.ORDER_NO_LONGER_AVAILABLE
    assert lost.kind is ReasonKind.CONFLICT


@pytest.mark.asyncio
async def test_loser_between_check_and_write_gets_conflict(session, session_factory, cfg):
    first = as_actor(await _create_master(session))
    second = as_actor(await _create_master(session))
    order = await _create_order(session)
    order_id = order.id

    async with session_factory() as loser_session:
        loser = OrdersService(loser_session, cfg=cfg)
        original_check = loser.claims.check

        async def check_then_lose(*args, **kwargs):
            eligibility = await original_check(*args, **kwargs)
            won = await _claim_in_own_session(session_factory, cfg, order_id, first)
            assert won.success
            return eligibility

        loser.claims.check = check_then_lose
        result = await loser.claim_order(order_id, second, now=NOW)

    assert not result.success
    assert result.reason is ReasonCode.ORDER_NO_LONGER_AVAILABLE
    stored = await reload(session, m.orders, order_id)
    assert stored.master_id == first.id


@pytest.mark.asyncio
async def test_block_set_after_check_still_stops_claim(session, session_factory, cfg):
    master = as_actor(await _create_master(session))
    order = await _create_order(session)
    order_id = order.id

    async with session_factory() as claim_session:
        service = OrdersService(claim_session, cfg=cfg)
        original_check = service.claims.check
        calls = []

        async def check_then_block(*args, **kwargs):
            eligibility = await original_check(*args, **kwargs)
            if not calls:
                async with session_factory() as admin_session:
                    await admin_session.execute(
                        update(m.master_ledgers)
                        .where(m.master_ledgers.master_id == master.id)
                        .values(balance_blocked_at=NOW)
                    )
                    await admin_session.commit()
            calls.append(eligibility)
            return eligibility

        service.claims.check = check_then_block
        result = await service.claim_order(order_id, master, now=NOW)

    assert not result.success
    assert result.reason is ReasonCode.BALANCE_BLOCKED
    stored = await reload(session, m.orders, order_id)
    assert stored.master_id is None
    assert stored.status is m.OrderStatus.PLACED


@pytest.mark.asyncio
async def test_blocked_master_cannot_claim(service, session):
    master = as_actor(await _create_master(session, prepaid_balance="0"))
    order = await _create_order(session)
    order_id = order.id

    result = await service.claim_order(order_id, master, now=NOW)

    assert not result.success
    assert result.reason is ReasonCode.BALANCE_BLOCKED
    stored = await reload(session, m.orders, order_id)
    assert stored.master_id is None
    assert stored.version == 1


@pytest.mark.asyncio
async def test_claim_unknown_order(service, session):
    master = as_actor(await _create_master(session))

    result = await service.claim_order(999, master, now=NOW)

    assert result.reason is ReasonCode.ORDER_NOT_FOUND
