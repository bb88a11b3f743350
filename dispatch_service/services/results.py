"""
Structured outcomes for workflow operations.

Domain failures (guard violations, conflicts, validation) are returned, not
raised, so callers can branch on a stable ``ReasonCode``.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class ReasonKind(str, enum.Enum):
    GUARD = "guard"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    TRANSIENT = "transient"


class ReasonCode(str, enum.Enum):
    # Identity / authorization
    NO_ACTOR = "NO_ACTOR"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    NOT_A_MASTER = "NOT_A_MASTER"
    NOT_ORDER_HOLDER = "NOT_ORDER_HOLDER"
    NOT_ORDER_OWNER = "NOT_ORDER_OWNER"
    DISPUTED_REQUIRES_ADMIN = "DISPUTED_REQUIRES_ADMIN"

    # Claim eligibility
    NOT_VERIFIED = "NOT_VERIFIED"
    INACTIVE = "INACTIVE"
    LEDGER_MISSING = "LEDGER_MISSING"
    BALANCE_BLOCKED = "BALANCE_BLOCKED"
    MAX_JOBS_REACHED = "MAX_JOBS_REACHED"
    TOO_MANY_PENDING = "TOO_MANY_PENDING"
    PLANNED_JOB_DUE_SOON = "PLANNED_JOB_DUE_SOON"

    # Order state
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_NOT_AVAILABLE = "ORDER_NOT_AVAILABLE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_EXPIRED_YET = "NOT_EXPIRED_YET"
    NOT_DISPUTED = "NOT_DISPUTED"

    # Conflicts
    ORDER_NO_LONGER_AVAILABLE = "ORDER_NO_LONGER_AVAILABLE"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"

    # Validation
    VALIDATION_FAILED = "VALIDATION_FAILED"
    PRICE_BELOW_CALLOUT_FEE = "PRICE_BELOW_CALLOUT_FEE"
    PAYMENT_METHOD_REQUIRED = "PAYMENT_METHOD_REQUIRED"
    PROOF_REQUIRED = "PROOF_REQUIRED"
    REASON_REQUIRED = "REASON_REQUIRED"
    SAME_DISPATCHER = "SAME_DISPATCHER"
    TARGET_NOT_DISPATCHER = "TARGET_NOT_DISPATCHER"
    MASTER_NOT_FOUND = "MASTER_NOT_FOUND"

    # Ledger / payouts
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    AMOUNT_EXCEEDS_OWED = "AMOUNT_EXCEEDS_OWED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    BELOW_MIN_PAYOUT = "BELOW_MIN_PAYOUT"
    PAYOUT_NOT_FOUND = "PAYOUT_NOT_FOUND"
    PAYOUT_NOT_PENDING = "PAYOUT_NOT_PENDING"

    # Infrastructure
    TRY_AGAIN = "TRY_AGAIN"

    @property
    def kind(self) -> ReasonKind:
        return REASON_KINDS.get(self, ReasonKind.GUARD)

    @property
    def message(self) -> str:
        return REASON_MESSAGES.get(self, self.value)


REASON_KINDS: dict[ReasonCode, ReasonKind] = {
    ReasonCode.ORDER_NO_LONGER_AVAILABLE: ReasonKind.CONFLICT,
    ReasonCode.CONCURRENT_UPDATE: ReasonKind.CONFLICT,
    ReasonCode.VALIDATION_FAILED: ReasonKind.VALIDATION,
    ReasonCode.PRICE_BELOW_CALLOUT_FEE: ReasonKind.VALIDATION,
    ReasonCode.PAYMENT_METHOD_REQUIRED: ReasonKind.VALIDATION,
    ReasonCode.PROOF_REQUIRED: ReasonKind.VALIDATION,
    ReasonCode.REASON_REQUIRED: ReasonKind.VALIDATION,
    ReasonCode.SAME_DISPATCHER: ReasonKind.VALIDATION,
    ReasonCode.TARGET_NOT_DISPATCHER: ReasonKind.VALIDATION,
    ReasonCode.MASTER_NOT_FOUND: ReasonKind.VALIDATION,
    ReasonCode.INVALID_AMOUNT: ReasonKind.VALIDATION,
    ReasonCode.BELOW_MIN_PAYOUT: ReasonKind.VALIDATION,
    ReasonCode.AMOUNT_EXCEEDS_OWED: ReasonKind.VALIDATION,
    ReasonCode.TRY_AGAIN: ReasonKind.TRANSIENT,
}

REASON_MESSAGES: dict[ReasonCode, str] = {
    ReasonCode.NO_ACTOR: "Could not resolve the current user. Sign in again.",
    ReasonCode.NOT_AUTHORIZED: "You are not allowed to perform this action.",
    ReasonCode.NOT_A_MASTER: "Only masters can claim orders.",
    ReasonCode.NOT_ORDER_HOLDER: "This order is not assigned to you.",
    ReasonCode.NOT_ORDER_OWNER: "This order is handled by another dispatcher.",
    ReasonCode.DISPUTED_REQUIRES_ADMIN: "Disputed orders can only be confirmed by an admin.",
    ReasonCode.NOT_VERIFIED: "Your account is waiting for verification.",
    ReasonCode.INACTIVE: "Your account is inactive.",
    ReasonCode.LEDGER_MISSING: "Your balance account is not set up yet.",
    ReasonCode.BALANCE_BLOCKED: "Your balance is too low. Top up and ask an admin to unblock.",
    ReasonCode.MAX_JOBS_REACHED: "You already hold the maximum number of active jobs.",
    ReasonCode.TOO_MANY_PENDING: "Too many completed jobs are waiting for payment confirmation.",
    ReasonCode.PLANNED_JOB_DUE_SOON: "You have a planned job starting soon.",
    ReasonCode.ORDER_NOT_FOUND: "Order not found.",
    ReasonCode.ORDER_NOT_AVAILABLE: "Order is not available in its current state.",
    ReasonCode.INVALID_TRANSITION: "This action is not allowed for the order's current status.",
    ReasonCode.NOT_EXPIRED_YET: "Order has not reached its expiry window.",
    ReasonCode.NOT_DISPUTED: "Order is not disputed.",
    ReasonCode.ORDER_NO_LONGER_AVAILABLE: "Order is no longer available.",
    ReasonCode.CONCURRENT_UPDATE: "Order was changed by someone else. Refresh and try again.",
    ReasonCode.VALIDATION_FAILED: "Some fields are missing or invalid.",
    ReasonCode.PRICE_BELOW_CALLOUT_FEE: "Price cannot be lower than the callout fee.",
    ReasonCode.PAYMENT_METHOD_REQUIRED: "Select a payment method.",
    ReasonCode.PROOF_REQUIRED: "Transfer payments need a proof link.",
    ReasonCode.REASON_REQUIRED: "Select a reason.",
    ReasonCode.SAME_DISPATCHER: "Order is already handled by this dispatcher.",
    ReasonCode.TARGET_NOT_DISPATCHER: "Target user is not an active dispatcher.",
    ReasonCode.MASTER_NOT_FOUND: "Master not found.",
    ReasonCode.INSUFFICIENT_BALANCE: "Balance is not enough for this amount.",
    ReasonCode.AMOUNT_EXCEEDS_OWED: "Amount exceeds outstanding commission.",
    ReasonCode.INVALID_AMOUNT: "Amount must be a positive number.",
    ReasonCode.BELOW_MIN_PAYOUT: "Amount is below the minimum payout.",
    ReasonCode.PAYOUT_NOT_FOUND: "Payout request not found.",
    ReasonCode.PAYOUT_NOT_PENDING: "Payout request was already processed.",
    ReasonCode.TRY_AGAIN: "Temporary problem. Refresh and try again.",
}


@dataclass(slots=True)
class OperationResult:
    success: bool
    reason: Optional[ReasonCode] = None
    blockers: list[ReasonCode] = field(default_factory=list)
    warnings: list[ReasonCode] = field(default_factory=list)
    message: Optional[str] = None
    payload: Any = None
    # Set when a write may have committed even though the caller saw an error
    outcome_unknown: bool = False

    @classmethod
    def ok(
        cls,
        payload: Any = None,
        *,
        message: Optional[str] = None,
        warnings: Optional[list[ReasonCode]] = None,
    ) -> "OperationResult":
        return cls(success=True, payload=payload, message=message, warnings=list(warnings or []))

    @classmethod
    def fail(
        cls,
        reason: ReasonCode,
        *,
        blockers: Optional[list[ReasonCode]] = None,
        warnings: Optional[list[ReasonCode]] = None,
        message: Optional[str] = None,
        payload: Any = None,
        outcome_unknown: bool = False,
    ) -> "OperationResult":
        return cls(
            success=False,
            reason=reason,
            blockers=list(blockers or [reason]),
            warnings=list(warnings or []),
            message=message or reason.message,
            payload=payload,
            outcome_unknown=outcome_unknown,
        )

    @property
    def kind(self) -> Optional[ReasonKind]:
        return self.reason.kind if self.reason is not None else None
