from __future__ import annotations

import enum
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, Money, Timestamp, metadata, values_enum

__all__ = ["Base", "metadata"]

# ===== Enums =====


class UserRole(str, enum.Enum):
    CLIENT = "client"
    MASTER = "master"
    DISPATCHER = "dispatcher"
    ADMIN = "admin"


class OrderStatus(str, enum.Enum):
    PLACED = "placed"
    REOPENED = "reopened"
    CLAIMED = "claimed"
    STARTED = "started"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    CANCELED_BY_MASTER = "canceled_by_master"
    CANCELED_BY_CLIENT = "canceled_by_client"
    EXPIRED = "expired"


# Statuses in which master_id must be set
HELD_STATUSES = frozenset(
    {
        OrderStatus.CLAIMED,
        OrderStatus.STARTED,
        OrderStatus.COMPLETED,
        OrderStatus.CONFIRMED,
    }
)
OPEN_STATUSES = frozenset({OrderStatus.PLACED, OrderStatus.REOPENED})
ACTIVE_STATUSES = frozenset(
    {
        OrderStatus.PLACED,
        OrderStatus.REOPENED,
        OrderStatus.CLAIMED,
        OrderStatus.STARTED,
    }
)


class Urgency(str, enum.Enum):
    PLANNED = "planned"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class PricingType(str, enum.Enum):
    FIXED = "fixed"
    UNKNOWN = "unknown"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CARD = "card"


class CancelReason(str, enum.Enum):
    SCOPE_MISMATCH = "scope_mismatch"
    CLIENT_UNAVAILABLE = "client_unavailable"
    SAFETY_RISK = "safety_risk"
    TOOLS_MISSING = "tools_missing"
    MATERIALS_UNAVAILABLE = "materials_unavailable"
    ADDRESS_UNREACHABLE = "address_unreachable"
    OTHER = "other"


class TransactionType(str, enum.Enum):
    COMMISSION_EARNED = "commission_earned"
    PAYMENT = "payment"
    TOP_UP = "top_up"
    PAYOUT_PAID = "payout_paid"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    MANUAL_DEDUCTION = "manual_deduction"


# Transaction types that move outstanding commission rather than prepaid balance
COMMISSION_TRANSACTION_TYPES = frozenset(
    {TransactionType.COMMISSION_EARNED, TransactionType.PAYMENT}
)


class PayoutStatus(str, enum.Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


# ===== People & reference data =====


class users(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role: Mapped[UserRole] = mapped_column(
        values_enum(UserRole, "user_role"), nullable=False, index=True
    )
    full_name: Mapped[Optional[str]] = mapped_column(String(160))
    phone: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    is_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now()
    )


class service_types(Base):
    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )
    sort_order: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )


class districts(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )


# ===== Orders =====


class orders(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    client_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    client_name: Mapped[Optional[str]] = mapped_column(String(160))
    client_phone: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    # Digits-only copy of client_phone for search
    client_phone_digits: Mapped[Optional[str]] = mapped_column(String(32), index=True)

    master_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    dispatcher_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_dispatcher_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    service_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    urgency: Mapped[Urgency] = mapped_column(
        values_enum(Urgency, "order_urgency"),
        nullable=False,
        default=Urgency.PLANNED,
        server_default=Urgency.PLANNED.value,
    )
    problem_description: Mapped[Optional[str]] = mapped_column(Text)
    area: Mapped[Optional[str]] = mapped_column(String(120))
    full_address: Mapped[Optional[str]] = mapped_column(Text)
    preferred_date: Mapped[Optional[date]] = mapped_column(Date)
    preferred_time: Mapped[Optional[time]] = mapped_column(Time)
    dispatcher_note: Mapped[Optional[str]] = mapped_column(Text)

    pricing_type: Mapped[PricingType] = mapped_column(
        values_enum(PricingType, "order_pricing_type"),
        nullable=False,
        default=PricingType.UNKNOWN,
        server_default=PricingType.UNKNOWN.value,
    )
    initial_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    callout_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    final_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    price_change_reason: Mapped[Optional[str]] = mapped_column(Text)
    work_performed: Mapped[Optional[str]] = mapped_column(Text)
    hours_worked: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))

    status: Mapped[OrderStatus] = mapped_column(
        values_enum(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PLACED,
        server_default=OrderStatus.PLACED.value,
        index=True,
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(64))
    cancellation_notes: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_master_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        values_enum(PaymentMethod, "payment_method")
    )
    payment_proof_url: Mapped[Optional[str]] = mapped_column(Text)
    payment_confirmed_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    is_disputed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    requires_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), index=True
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    started_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    completed_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    payment_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        Timestamp
    )
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), onupdate=func.now()
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )  # optimistic lock

    __table_args__ = (
        CheckConstraint("callout_fee >= 0", name="callout_fee_non_negative"),
        CheckConstraint(
            "final_price IS NULL OR final_price >= callout_fee",
            name="final_price_floor",
        ),
        CheckConstraint(
            "initial_price IS NULL OR initial_price >= callout_fee",
            name="initial_price_floor",
        ),
        Index("ix_orders__status_created", "status", "created_at"),
        Index("ix_orders__dispatcher_status", "dispatcher_id", "status"),
        Index("ix_orders__assigned_dispatcher_status", "assigned_dispatcher_id", "status"),
        Index("ix_orders__master_status", "master_id", "status"),
    )


class order_audit_log(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    old_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType)
    new_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType)
    performed_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), index=True
    )

    __table_args__ = (
        Index("ix_order_audit_log__order_created_at", "order_id", "created_at"),
    )


# ===== Ledger =====


class master_ledgers(Base):
    master_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    total_earnings: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0"), server_default="0"
    )
    total_commission_owed: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0"), server_default="0"
    )
    total_commission_paid: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0"), server_default="0"
    )
    prepaid_balance: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0"), server_default="0"
    )
    balance_threshold: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0"), server_default="0"
    )
    balance_blocked_at: Mapped[Optional[datetime]] = mapped_column(
        Timestamp, nullable=True
    )
    max_active_jobs: Mapped[int] = mapped_column(
        Integer, nullable=False, default=2, server_default="2"
    )
    active_jobs: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    refusal_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    completed_jobs_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("total_commission_owed >= 0", name="owed_non_negative"),
        CheckConstraint("total_commission_paid >= 0", name="paid_non_negative"),
    )


class balance_transactions(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    master_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        values_enum(TransactionType, "balance_transaction_type"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    payout_request_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payout_requests.id", ondelete="SET NULL"), nullable=True
    )
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), index=True
    )

    __table_args__ = (
        Index("ix_balance_transactions__master_type", "master_id", "transaction_type"),
    )


class payout_requests(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    master_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[PayoutStatus] = mapped_column(
        values_enum(PayoutStatus, "payout_status"),
        nullable=False,
        default=PayoutStatus.REQUESTED,
        server_default=PayoutStatus.REQUESTED.value,
        index=True,
    )
    requested_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    approved_amount: Mapped[Optional[Decimal]] = mapped_column(Money)
    requested_note: Mapped[Optional[str]] = mapped_column(Text)
    admin_note: Mapped[Optional[str]] = mapped_column(Text)
    processed_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now()
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    paid_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)

    __table_args__ = (
        CheckConstraint("requested_amount > 0", name="requested_amount_positive"),
    )


# ===== Notifications =====


class notifications_outbox(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recipient_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        Timestamp, server_default=func.now(), index=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
