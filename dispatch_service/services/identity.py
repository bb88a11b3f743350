"""
Acting identity.

Every workflow call receives the actor explicitly. ``IdentityProvider``
is the seam to whatever authentication layer resolves it; resolution
fails closed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy import select

from dispatch_service.db import models as m

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Actor:
    id: int
    role: m.UserRole
    is_verified: bool = True
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role is m.UserRole.ADMIN

    @property
    def is_dispatcher(self) -> bool:
        return self.role is m.UserRole.DISPATCHER

    @property
    def is_master(self) -> bool:
        return self.role is m.UserRole.MASTER

    @property
    def is_staff(self) -> bool:
        return self.role in (m.UserRole.DISPATCHER, m.UserRole.ADMIN)


class IdentityProvider(Protocol):
    async def resolve_current_actor(self) -> Optional[Actor]:
        ...


class StaticIdentityProvider:
    """Returns a fixed actor. Useful for jobs and tests."""

    def __init__(self, actor: Optional[Actor]) -> None:
        self._actor = actor

    async def resolve_current_actor(self) -> Optional[Actor]:
        return self._actor


class DatabaseIdentityProvider:
    """Resolve *user_id* against the ``users`` table."""

    def __init__(self, session_factory, user_id: int) -> None:
        self._session_factory = session_factory
        self._user_id = user_id

    async def resolve_current_actor(self) -> Optional[Actor]:
        try:
            async with self._session_factory() as session:
                row = (
                    await session.execute(
                        select(
                            m.users.id,
                            m.users.role,
                            m.users.is_verified,
                            m.users.is_active,
                        ).where(m.users.id == self._user_id)
                    )
                ).first()
        except Exception as exc:
            logger.warning("resolve_current_actor failed for user=%s: %s", self._user_id, exc)
            return None
        if row is None:
            return None
        return Actor(
            id=row.id,
            role=m.UserRole(row.role),
            is_verified=bool(row.is_verified),
            is_active=bool(row.is_active),
        )
