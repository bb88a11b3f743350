from decimal import Decimal

import pytest
from sqlalchemy import select

from dispatch_service.db import models as m
from dispatch_service.services.notifications import NotificationEvent
from dispatch_service.services.orders_service import OrdersService
from dispatch_service.services.results import ReasonCode

from conftest import NOW, _create_admin, _create_dispatcher, _create_master, as_actor, reload


@pytest.mark.asyncio
async def test_payout_request_approve_and_pay(service, session, sink):
    master = as_actor(await _create_master(session, prepaid_balance="1000"))
    admin = as_actor(await _create_admin(session))

    requested = await service.request_payout(master, "400", note="rent")
    assert requested.success
    request_id = requested.payload.id
    assert requested.payload.status is m.PayoutStatus.REQUESTED
    # Nothing is reserved on request
    assert (await reload(session, m.master_ledgers, master.id)).prepaid_balance == Decimal("1000.00")

    approved = await service.process_payout_request(request_id, "approve", admin, now=NOW)
    assert approved.success
    assert approved.payload.status is m.PayoutStatus.APPROVED
    assert approved.payload.approved_amount == Decimal("400.00")
    assert (await reload(session, m.master_ledgers, master.id)).prepaid_balance == Decimal("600.00")
    assert (master.id, NotificationEvent.PAYOUT_PROCESSED) in [(r, e) for r, e, _ in sink.sent]

    paid = await service.mark_payout_paid(request_id, admin, now=NOW)
    assert paid.success
    assert paid.payload.status is m.PayoutStatus.PAID
    assert paid.payload.paid_at is not None

    tx = (
        await session.execute(
            select(m.balance_transactions).where(
                m.balance_transactions.payout_request_id == request_id
            )
        )
    ).scalar_one()
    assert tx.transaction_type is m.TransactionType.PAYOUT_PAID
    assert tx.balance_before == Decimal("1000.00")
    assert tx.balance_after == Decimal("600.00")


@pytest.mark.asyncio
async def test_request_above_balance_is_rejected(service, session):
    master = as_actor(await _create_master(session, prepaid_balance="100"))

    result = await service.request_payout(master, "100.01")

    assert result.reason is ReasonCode.INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_only_masters_request_payouts(service, session):
    dispatcher = as_actor(await _create_dispatcher(session))

    result = await service.request_payout(dispatcher, "10")

    assert result.reason is ReasonCode.NOT_A_MASTER


@pytest.mark.asyncio
async def test_approval_fails_when_balance_drained_and_rolls_back(service, session):
    master = as_actor(await _create_master(session, prepaid_balance="500"))
    admin = as_actor(await _create_admin(session))
    request_id = (await service.request_payout(master, "400")).payload.id
    await service.adjust_balance(admin, master.id, "-300", note="chargeback", now=NOW)

    result = await service.process_payout_request(request_id, "approve", admin, now=NOW)

    assert result.reason is ReasonCode.INSUFFICIENT_BALANCE
    stored = await reload(session, m.payout_requests, request_id)
    assert stored.status is m.PayoutStatus.REQUESTED
    assert (await reload(session, m.master_ledgers, master.id)).prepaid_balance == Decimal("200.00")


@pytest.mark.asyncio
async def test_reject_is_final(service, session):
    master = as_actor(await _create_master(session))
    admin = as_actor(await _create_admin(session))
    request_id = (await service.request_payout(master, "50")).payload.id

    rejected = await service.process_payout_request(
        request_id, "reject", admin, admin_note="duplicate", now=NOW
    )
    again = await service.process_payout_request(request_id, "approve", admin, now=NOW)
    paid = await service.mark_payout_paid(request_id, admin, now=NOW)

    assert rejected.payload.status is m.PayoutStatus.REJECTED
    assert rejected.payload.admin_note == "duplicate"
    assert again.reason is ReasonCode.PAYOUT_NOT_PENDING
    assert paid.reason is ReasonCode.PAYOUT_NOT_PENDING
    assert (await reload(session, m.master_ledgers, master.id)).prepaid_balance == Decimal("1000.00")


@pytest.mark.asyncio
async def test_partial_approval_amount(service, session):
    master = as_actor(await _create_master(session))
    admin = as_actor(await _create_admin(session))
    request_id = (await service.request_payout(master, "300")).payload.id

    result = await service.process_payout_request(
        request_id, "approve", admin, approved_amount="250", now=NOW
    )

    assert result.payload.approved_amount == Decimal("250.00")
    assert (await reload(session, m.master_ledgers, master.id)).prepaid_balance == Decimal("750.00")


@pytest.mark.asyncio
async def test_payout_processing_guards(service, session):
    master = as_actor(await _create_master(session))
    dispatcher = as_actor(await _create_dispatcher(session))
    admin = as_actor(await _create_admin(session))
    request_id = (await service.request_payout(master, "60")).payload.id

    assert (
        await service.process_payout_request(request_id, "approve", dispatcher)
    ).reason is ReasonCode.NOT_AUTHORIZED
    assert (
        await service.process_payout_request(request_id, "bogus", admin)
    ).reason is ReasonCode.VALIDATION_FAILED
    assert (
        await service.process_payout_request(999, "approve", admin)
    ).reason is ReasonCode.PAYOUT_NOT_FOUND
    assert (await service.mark_payout_paid(999, admin)).reason is ReasonCode.PAYOUT_NOT_FOUND


@pytest.mark.asyncio
async def test_request_payload_survives_later_rejection(service, session):
    master = as_actor(await _create_master(session, prepaid_balance="100"))

    requested = await service.request_payout(master, "80")
    too_much = await service.request_payout(master, "500")

    assert too_much.reason is ReasonCode.INSUFFICIENT_BALANCE
    assert requested.payload.requested_amount == Decimal("80.00")
    assert requested.payload.status is m.PayoutStatus.REQUESTED


@pytest.mark.asyncio
async def test_approval_cannot_exceed_requested_amount(service, session):
    master = as_actor(await _create_master(session))
    admin = as_actor(await _create_admin(session))
    request_id = (await service.request_payout(master, "300")).payload.id

    topped_up = await service.process_payout_request(
        request_id, "approve", admin, approved_amount="300.01", now=NOW
    )
    exact = await service.process_payout_request(
        request_id, "approve", admin, approved_amount="300", now=NOW
    )

    assert topped_up.reason is ReasonCode.INVALID_AMOUNT
    assert exact.payload.approved_amount == Decimal("300.00")
    assert (await reload(session, m.master_ledgers, master.id)).prepaid_balance == Decimal("700.00")


@pytest.mark.asyncio
async def test_minimum_payout_amount(service, session, cfg):
    master = as_actor(await _create_master(session))

    below = await service.request_payout(master, "49.99")
    at_minimum = await service.request_payout(master, "50")

    assert cfg.min_payout_amount == Decimal("50")
    assert below.reason is ReasonCode.BELOW_MIN_PAYOUT
    assert at_minimum.success

    strict = OrdersService(session, cfg=cfg.model_copy(update={"min_payout_amount": Decimal("100")}))
    assert (await strict.request_payout(master, "99")).reason is ReasonCode.BELOW_MIN_PAYOUT
