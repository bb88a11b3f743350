"""
Shared fixtures: a throwaway SQLite database per test and row factories.

Factories commit what they create. A rejected workflow call rolls the shared
session back, and uncommitted setup rows would go with it.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from dispatch_service.config import settings
from dispatch_service.db import models as m
from dispatch_service.db.base import Base
from dispatch_service.services.identity import Actor
from dispatch_service.services.notifications import NotificationEvent
from dispatch_service.services.orders_service import OrdersService

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def cfg():
    return settings.model_copy()


# ----- stub collaborators -----


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[tuple[int, NotificationEvent, dict[str, Any]]] = []

    async def notify(self, recipient_id, event, payload) -> None:
        self.sent.append((recipient_id, event, dict(payload)))

    def events(self) -> list[NotificationEvent]:
        return [event for _, event, _ in self.sent]


class FailingSink:
    def __init__(self) -> None:
        self.calls = 0

    async def notify(self, recipient_id, event, payload) -> None:
        self.calls += 1
        raise RuntimeError("delivery channel is down")


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def service(session, sink, cfg):
    return OrdersService(session, notifier=sink, cfg=cfg)


# ----- row factories -----


def as_actor(user: m.users) -> Actor:
    return Actor(
        id=user.id,
        role=m.UserRole(user.role),
        is_verified=bool(user.is_verified),
        is_active=bool(user.is_active),
    )


async def _create_user(
    session: AsyncSession,
    role: m.UserRole,
    *,
    full_name: Optional[str] = None,
    is_verified: bool = True,
    is_active: bool = True,
) -> m.users:
    user = m.users(
        role=role,
        full_name=full_name or f"{role.value} user",
        is_verified=is_verified,
        is_active=is_active,
    )
    session.add(user)
    await session.commit()
    return user


async def _create_dispatcher(session: AsyncSession, **kwargs) -> m.users:
    return await _create_user(session, m.UserRole.DISPATCHER, **kwargs)


async def _create_admin(session: AsyncSession, **kwargs) -> m.users:
    return await _create_user(session, m.UserRole.ADMIN, **kwargs)


async def _create_master(
    session: AsyncSession,
    *,
    prepaid_balance: Decimal | str = "1000",
    balance_threshold: Decimal | str = "0",
    max_active_jobs: int = 2,
    blocked_at: Optional[datetime] = None,
    with_ledger: bool = True,
    **kwargs,
) -> m.users:
    """Master user plus a ledger whose balance is backed by a top_up entry."""
    user = await _create_user(session, m.UserRole.MASTER, **kwargs)
    if not with_ledger:
        return user
    balance = Decimal(str(prepaid_balance))
    session.add(
        m.master_ledgers(
            master_id=user.id,
            prepaid_balance=balance,
            balance_threshold=Decimal(str(balance_threshold)),
            balance_blocked_at=blocked_at,
            max_active_jobs=max_active_jobs,
        )
    )
    await session.flush()
    if balance > 0:
        await session.execute(
            insert(m.balance_transactions).values(
                master_id=user.id,
                transaction_type=m.TransactionType.TOP_UP,
                amount=balance,
                balance_before=Decimal("0"),
                balance_after=balance,
                notes="opening balance",
            )
        )
    await session.commit()
    return user


async def _create_order(
    session: AsyncSession,
    *,
    dispatcher_id: Optional[int] = None,
    assigned_dispatcher_id: Optional[int] = None,
    status: m.OrderStatus = m.OrderStatus.PLACED,
    master_id: Optional[int] = None,
    created_at: datetime = NOW - timedelta(minutes=5),
    callout_fee: Decimal | str = "500",
    initial_price: Decimal | str | None = None,
    final_price: Decimal | str | None = None,
    urgency: m.Urgency = m.Urgency.PLANNED,
    service_type: str = "plumbing",
    client_name: str = "Anna Berzina",
    client_phone: str = "+371 2000-1234",
    **extra,
) -> m.orders:
    def money(value):
        return Decimal(str(value)) if value is not None else None

    order = m.orders(
        dispatcher_id=dispatcher_id,
        assigned_dispatcher_id=assigned_dispatcher_id,
        status=status,
        master_id=master_id,
        created_at=created_at,
        updated_at=created_at,
        callout_fee=money(callout_fee),
        initial_price=money(initial_price),
        final_price=money(final_price),
        urgency=urgency,
        service_type=service_type,
        client_name=client_name,
        client_phone=client_phone,
        client_phone_digits="".join(ch for ch in client_phone if ch.isdigit()),
        problem_description=extra.pop("problem_description", "Leaking kitchen tap"),
        version=1,
        **extra,
    )
    session.add(order)
    await session.commit()
    return order


async def reload(session: AsyncSession, model, key):
    return await session.get(model, key, populate_existing=True)
