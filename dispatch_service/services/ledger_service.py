from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.db import models as m
from dispatch_service.infra.structured_logging import WorkflowEvent, log_workflow_event
from dispatch_service.services.eligibility import active_job_count, is_balance_blocked
from dispatch_service.services.identity import Actor
from dispatch_service.services.money import TWO_PLACES, parse_optional_money, quantize
from dispatch_service.services.results import OperationResult, ReasonCode
from dispatch_service.services.time_service import now_utc

LOGGER = logging.getLogger(__name__)
ZERO = Decimal("0")
MAX_CAS_ATTEMPTS = 3

T = m.TransactionType
# Direction each transaction type moves its balance
TRANSACTION_SIGNS: dict[m.TransactionType, int] = {
    T.COMMISSION_EARNED: 1,
    T.PAYMENT: -1,
    T.TOP_UP: 1,
    T.ADMIN_ADJUSTMENT: 1,
    T.MANUAL_DEDUCTION: -1,
    T.PAYOUT_PAID: -1,
}


class LedgerError(Exception):
    """Ledger record missing or persistently contended."""


@dataclass(slots=True, frozen=True)
class LedgerPosting:
    transaction_id: int
    master_id: int
    transaction_type: m.TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    order_id: Optional[int] = None
    blocked: bool = False


@dataclass(slots=True, frozen=True)
class LedgerReconciliation:
    master_id: int
    total_commission_owed: Decimal
    total_commission_paid: Decimal
    prepaid_balance: Decimal
    commission_earned_sum: Decimal
    payment_sum: Decimal
    prepaid_sum: Decimal

    @property
    def expected_owed(self) -> Decimal:
        return self.commission_earned_sum - self.payment_sum

    @property
    def is_consistent(self) -> bool:
        return (
            self.total_commission_owed == self.expected_owed
            and self.total_commission_paid == self.payment_sum
            and self.prepaid_balance == self.prepaid_sum
        )


class LedgerService:
    """Worker ledger: commission debt, prepaid balance and balance block.

    Every mutation is a compare-and-swap on ``master_ledgers.version`` plus an
    append to ``balance_transactions`` inside the caller's transaction.
    Callers own commit/rollback.
    """

    def __init__(self, session: AsyncSession, cfg: Settings = default_settings) -> None:
        self._session = session
        self._cfg = cfg

    @staticmethod
    def compute_commission(
        final_price: Decimal,
        callout_fee: Decimal,
        rate: Decimal,
        *,
        exempt_base_fee: bool = False,
    ) -> Decimal:
        """Return the platform's cut of *final_price*."""
        base = final_price - callout_fee if exempt_base_fee else final_price
        if base < ZERO:
            base = ZERO
        return quantize(base * rate)

    def commission_for(self, final_price: Decimal, callout_fee: Decimal) -> Decimal:
        return self.compute_commission(
            final_price,
            callout_fee,
            self._cfg.commission_rate,
            exempt_base_fee=self._cfg.commission_exempt_base_fee,
        )

    # ----- reads -----

    async def get_ledger(self, master_id: int) -> Optional[m.master_ledgers]:
        return await self._session.get(m.master_ledgers, master_id, populate_existing=True)

    async def _require(self, master_id: int) -> m.master_ledgers:
        ledger = await self.get_ledger(master_id)
        if ledger is None:
            raise LedgerError(f"ledger for master #{master_id} not found")
        return ledger

    async def ensure_ledger(
        self,
        master_id: int,
        *,
        balance_threshold: Decimal | None = None,
        max_active_jobs: int | None = None,
    ) -> m.master_ledgers:
        """Create the ledger record for a newly onboarded master (idempotent)."""
        ledger = await self.get_ledger(master_id)
        if ledger is not None:
            return ledger
        ledger = m.master_ledgers(
            master_id=master_id,
            total_earnings=ZERO,
            total_commission_owed=ZERO,
            total_commission_paid=ZERO,
            prepaid_balance=ZERO,
            balance_threshold=(
                balance_threshold
                if balance_threshold is not None
                else self._cfg.default_balance_threshold
            ),
            max_active_jobs=max_active_jobs or self._cfg.default_max_active_jobs,
            active_jobs=0,
            refusal_count=0,
            completed_jobs_count=0,
            version=1,
        )
        self._session.add(ledger)
        await self._session.flush()
        LOGGER.info("ledger_created: master_id=%s", master_id)
        return ledger

    # ----- primitives -----

    async def _cas(self, ledger: m.master_ledgers, **values) -> bool:
        result = await self._session.execute(
            update(m.master_ledgers)
            .where(
                and_(
                    m.master_ledgers.master_id == ledger.master_id,
                    m.master_ledgers.version == ledger.version,
                )
            )
            .values(version=ledger.version + 1, **values)
            .returning(m.master_ledgers.master_id)
        )
        return result.first() is not None

    async def _append(
        self,
        *,
        master_id: int,
        transaction_type: m.TransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        order_id: Optional[int] = None,
        payout_request_id: Optional[int] = None,
        created_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> LedgerPosting:
        transaction_id = await self._session.scalar(
            insert(m.balance_transactions)
            .values(
                master_id=master_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
                order_id=order_id,
                payout_request_id=payout_request_id,
                created_by=created_by,
                notes=notes,
            )
            .returning(m.balance_transactions.id)
        )
        return LedgerPosting(
            transaction_id=int(transaction_id),
            master_id=master_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            order_id=order_id,
        )

    def _contended(self, op: str, master_id: int) -> LedgerError:
        LOGGER.error("%s: ledger for master=%s stayed contended after %s attempts", op, master_id, MAX_CAS_ATTEMPTS)
        return LedgerError(f"{op}: ledger #{master_id} update conflict")

    # ----- commission -----

    async def post_commission_for_order(self, order: m.orders) -> LedgerPosting:
        """Book commission for a confirmed order and refresh the active-job count."""
        if order.master_id is None or order.final_price is None:
            raise LedgerError(f"order #{order.id} has no master or final price")

        final_price = Decimal(order.final_price)
        commission = self.commission_for(final_price, Decimal(order.callout_fee))
        active = await active_job_count(self._session, order.master_id)

        for _ in range(MAX_CAS_ATTEMPTS):
            ledger = await self._require(order.master_id)
            owed_before = ledger.total_commission_owed
            owed_after = owed_before + commission
            if await self._cas(
                ledger,
                total_earnings=ledger.total_earnings + final_price,
                total_commission_owed=owed_after,
                completed_jobs_count=ledger.completed_jobs_count + 1,
                active_jobs=active,
            ):
                posting = await self._append(
                    master_id=order.master_id,
                    transaction_type=T.COMMISSION_EARNED,
                    amount=commission,
                    balance_before=owed_before,
                    balance_after=owed_after,
                    order_id=order.id,
                    notes=f"Commission for order #{order.id}",
                )
                LOGGER.info(
                    "commission_posted: order_id=%s master_id=%s final_price=%s commission=%s",
                    order.id,
                    order.master_id,
                    final_price,
                    commission,
                )
                log_workflow_event(
                    WorkflowEvent.COMMISSION_POSTED,
                    order_id=order.id,
                    master_id=order.master_id,
                    amount=commission,
                )
                return posting
        raise self._contended("post_commission_for_order", order.master_id)

    async def post_commission_delta(
        self,
        order: m.orders,
        *,
        old_price: Decimal,
        new_price: Decimal,
        actor_id: Optional[int] = None,
    ) -> OperationResult:
        """Re-book commission after an admin price override on a confirmed order."""
        callout_fee = Decimal(order.callout_fee)
        delta = self.commission_for(new_price, callout_fee) - self.commission_for(old_price, callout_fee)
        price_delta = new_price - old_price

        for _ in range(MAX_CAS_ATTEMPTS):
            ledger = await self._require(order.master_id)
            owed_before = ledger.total_commission_owed
            owed_after = owed_before + delta
            if owed_after < ZERO:
                return OperationResult.fail(ReasonCode.AMOUNT_EXCEEDS_OWED)
            if await self._cas(
                ledger,
                total_earnings=ledger.total_earnings + price_delta,
                total_commission_owed=owed_after,
            ):
                posting = await self._append(
                    master_id=order.master_id,
                    transaction_type=T.COMMISSION_EARNED,
                    amount=delta,
                    balance_before=owed_before,
                    balance_after=owed_after,
                    order_id=order.id,
                    created_by=actor_id,
                    notes=f"Price override {old_price} -> {new_price}",
                )
                return OperationResult.ok(posting)
        raise self._contended("post_commission_delta", order.master_id)

    async def record_commission_payment(
        self,
        master_id: int,
        amount,
        *,
        actor_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> OperationResult:
        """Move *amount* from owed to paid. Never creates commission."""
        value = parse_optional_money(amount)
        if value is None or value <= ZERO:
            return OperationResult.fail(ReasonCode.INVALID_AMOUNT)

        for _ in range(MAX_CAS_ATTEMPTS):
            ledger = await self.get_ledger(master_id)
            if ledger is None:
                return OperationResult.fail(ReasonCode.LEDGER_MISSING)
            owed_before = ledger.total_commission_owed
            if value > owed_before:
                return OperationResult.fail(ReasonCode.AMOUNT_EXCEEDS_OWED)
            owed_after = owed_before - value
            if await self._cas(
                ledger,
                total_commission_owed=owed_after,
                total_commission_paid=ledger.total_commission_paid + value,
            ):
                posting = await self._append(
                    master_id=master_id,
                    transaction_type=T.PAYMENT,
                    amount=value,
                    balance_before=owed_before,
                    balance_after=owed_after,
                    created_by=actor_id,
                    notes=note,
                )
                log_workflow_event(
                    WorkflowEvent.COMMISSION_PAID, master_id=master_id, actor_id=actor_id, amount=value
                )
                return OperationResult.ok(posting)
        raise self._contended("record_commission_payment", master_id)

    # ----- prepaid balance -----

    async def _move_prepaid(
        self,
        master_id: int,
        value: Decimal,
        transaction_type: m.TransactionType,
        *,
        actor_id: Optional[int] = None,
        note: Optional[str] = None,
        payout_request_id: Optional[int] = None,
        require_funds: bool = False,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        sign = TRANSACTION_SIGNS[transaction_type]
        for _ in range(MAX_CAS_ATTEMPTS):
            ledger = await self.get_ledger(master_id)
            if ledger is None:
                return OperationResult.fail(ReasonCode.LEDGER_MISSING)
            before = ledger.prepaid_balance
            after = before + sign * value
            if require_funds and after < ZERO:
                return OperationResult.fail(ReasonCode.INSUFFICIENT_BALANCE)
            was_blocked = ledger.balance_blocked_at is not None
            if await self._cas(ledger, prepaid_balance=after):
                posting = await self._append(
                    master_id=master_id,
                    transaction_type=transaction_type,
                    amount=value,
                    balance_before=before,
                    balance_after=after,
                    payout_request_id=payout_request_id,
                    created_by=actor_id,
                    notes=note,
                )
                newly_blocked = (
                    sign < 0
                    and not was_blocked
                    and await self.evaluate_balance_block(master_id, now=now)
                )
                return OperationResult.ok(replace(posting, blocked=newly_blocked))
        raise self._contended(f"move_prepaid[{transaction_type.value}]", master_id)

    async def top_up(
        self,
        master_id: int,
        amount,
        *,
        actor_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> OperationResult:
        """Credit prepaid balance. An existing block stays until explicitly cleared."""
        value = parse_optional_money(amount)
        if value is None or value <= ZERO:
            return OperationResult.fail(ReasonCode.INVALID_AMOUNT)
        return await self._move_prepaid(
            master_id, value, T.TOP_UP, actor_id=actor_id, note=note
        )

    async def adjust_balance(
        self,
        master_id: int,
        amount,
        *,
        actor: Actor,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Admin correction: positive credits, negative deducts."""
        if not actor.is_admin:
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        value = parse_optional_money(amount)
        if value is None or value == ZERO:
            return OperationResult.fail(ReasonCode.INVALID_AMOUNT)
        if value > ZERO:
            return await self._move_prepaid(
                master_id, value, T.ADMIN_ADJUSTMENT, actor_id=actor.id, note=note, now=now
            )
        return await self._move_prepaid(
            master_id, -value, T.MANUAL_DEDUCTION, actor_id=actor.id, note=note, now=now
        )

    async def debit_for_payout(
        self,
        master_id: int,
        amount: Decimal,
        *,
        payout_request_id: int,
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._move_prepaid(
            master_id,
            amount,
            T.PAYOUT_PAID,
            actor_id=actor_id,
            note=f"Payout request #{payout_request_id}",
            payout_request_id=payout_request_id,
            require_funds=True,
            now=now,
        )

    # ----- block -----

    async def evaluate_balance_block(
        self, master_id: int, *, now: Optional[datetime] = None
    ) -> bool:
        """Set ``balance_blocked_at`` if balance is at/below threshold. Never clears."""
        for _ in range(MAX_CAS_ATTEMPTS):
            ledger = await self._require(master_id)
            if ledger.balance_blocked_at is not None:
                return True
            if not is_balance_blocked(ledger):
                return False
            if await self._cas(ledger, balance_blocked_at=now or now_utc()):
                LOGGER.warning(
                    "balance_blocked: master_id=%s balance=%s threshold=%s",
                    master_id,
                    ledger.prepaid_balance,
                    ledger.balance_threshold,
                )
                log_workflow_event(
                    WorkflowEvent.BALANCE_BLOCKED,
                    master_id=master_id,
                    amount=ledger.prepaid_balance,
                )
                return True
        raise self._contended("evaluate_balance_block", master_id)

    async def unblock_balance(self, master_id: int, *, actor: Actor) -> OperationResult:
        """Explicit admin decision to clear a balance block."""
        if not actor.is_admin:
            return OperationResult.fail(ReasonCode.NOT_AUTHORIZED)
        for _ in range(MAX_CAS_ATTEMPTS):
            ledger = await self.get_ledger(master_id)
            if ledger is None:
                return OperationResult.fail(ReasonCode.LEDGER_MISSING)
            if ledger.prepaid_balance <= ledger.balance_threshold:
                return OperationResult.fail(ReasonCode.BALANCE_BLOCKED)
            if ledger.balance_blocked_at is None:
                return OperationResult.ok(message="not blocked")
            if await self._cas(ledger, balance_blocked_at=None):
                LOGGER.info("balance_unblocked: master_id=%s by=%s", master_id, actor.id)
                log_workflow_event(
                    WorkflowEvent.BALANCE_UNBLOCKED, master_id=master_id, actor_id=actor.id
                )
                return OperationResult.ok()
        raise self._contended("unblock_balance", master_id)

    # ----- counters -----

    async def refresh_active_jobs(self, master_id: int) -> int:
        count = await active_job_count(self._session, master_id)
        await self._session.execute(
            update(m.master_ledgers)
            .where(m.master_ledgers.master_id == master_id)
            .values(active_jobs=count, version=m.master_ledgers.version + 1)
        )
        return count

    async def record_refusal(self, master_id: int) -> None:
        await self._session.execute(
            update(m.master_ledgers)
            .where(m.master_ledgers.master_id == master_id)
            .values(
                refusal_count=m.master_ledgers.refusal_count + 1,
                version=m.master_ledgers.version + 1,
            )
        )

    # ----- reconciliation -----

    async def reconcile(self, master_id: int) -> LedgerReconciliation:
        """Compare materialized ledger totals with the transaction log."""
        ledger = await self._require(master_id)
        rows = (
            await self._session.execute(
                select(
                    m.balance_transactions.transaction_type,
                    func.coalesce(func.sum(m.balance_transactions.amount), 0),
                )
                .where(m.balance_transactions.master_id == master_id)
                .group_by(m.balance_transactions.transaction_type)
            )
        ).all()
        sums = {m.TransactionType(tx_type): Decimal(str(total)).quantize(TWO_PLACES) for tx_type, total in rows}

        prepaid_sum = ZERO
        for tx_type, total in sums.items():
            if tx_type not in m.COMMISSION_TRANSACTION_TYPES:
                prepaid_sum += TRANSACTION_SIGNS[tx_type] * total

        report = LedgerReconciliation(
            master_id=master_id,
            total_commission_owed=ledger.total_commission_owed,
            total_commission_paid=ledger.total_commission_paid,
            prepaid_balance=ledger.prepaid_balance,
            commission_earned_sum=sums.get(T.COMMISSION_EARNED, ZERO),
            payment_sum=sums.get(T.PAYMENT, ZERO),
            prepaid_sum=prepaid_sum,
        )
        if not report.is_consistent:
            LOGGER.error("ledger_mismatch: %s", report)
        return report
