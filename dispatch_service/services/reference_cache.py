"""
Read-mostly reference data (service types, districts, dispatcher roster).

Entries may be served stale for up to their TTL. Write paths never consult
this cache; they re-read the store.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_service.config import settings
from dispatch_service.db import models as m

logger = logging.getLogger(__name__)

Loader = Callable[[AsyncSession], Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class ServiceTypeRef:
    code: str
    name: str


@dataclass(slots=True, frozen=True)
class DistrictRef:
    id: int
    name: str


@dataclass(slots=True, frozen=True)
class DispatcherRef:
    id: int
    full_name: Optional[str]


async def load_service_types(session: AsyncSession) -> list[ServiceTypeRef]:
    rows = await session.execute(
        select(m.service_types.code, m.service_types.name)
        .where(m.service_types.is_active.is_(True))
        .order_by(m.service_types.sort_order, m.service_types.name)
    )
    return [ServiceTypeRef(code=row.code, name=row.name) for row in rows]


async def load_districts(session: AsyncSession) -> list[DistrictRef]:
    rows = await session.execute(
        select(m.districts.id, m.districts.name)
        .where(m.districts.is_active.is_(True))
        .order_by(m.districts.name)
    )
    return [DistrictRef(id=row.id, name=row.name) for row in rows]


async def load_dispatchers(session: AsyncSession) -> list[DispatcherRef]:
    rows = await session.execute(
        select(m.users.id, m.users.full_name)
        .where(
            m.users.role == m.UserRole.DISPATCHER,
            m.users.is_active.is_(True),
        )
        .order_by(m.users.full_name, m.users.id)
    )
    return [DispatcherRef(id=row.id, full_name=row.full_name) for row in rows]


DEFAULT_LOADERS: dict[str, Loader] = {
    "service_types": load_service_types,
    "districts": load_districts,
    "dispatchers": load_dispatchers,
}


class ReferenceCache:
    """TTL cache keyed by reference name."""

    def __init__(
        self,
        session_factory,
        *,
        ttl_seconds: Optional[dict[str, int]] = None,
        loaders: Optional[dict[str, Loader]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = dict(ttl_seconds or settings.reference_cache_ttl_seconds)
        self._loaders = dict(loaders or DEFAULT_LOADERS)
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _fresh(self, name: str) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        loaded_at, _ = entry
        return self._clock() - loaded_at < self._ttl.get(name, 300)

    async def get(self, name: str) -> Any:
        if name not in self._loaders:
            raise KeyError(f"unknown reference data: {name}")
        if self._fresh(name):
            return self._entries[name][1]
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            if self._fresh(name):
                return self._entries[name][1]
            async with self._session_factory() as session:
                value = await self._loaders[name](session)
            self._entries[name] = (self._clock(), value)
            logger.debug("reference cache reloaded: %s", name)
            return value

    def invalidate(self, name: Optional[str] = None) -> None:
        """Drop one entry, or all of them when *name* is None."""
        if name is None:
            self._entries.clear()
        else:
            self._entries.pop(name, None)

    async def service_types(self) -> list[ServiceTypeRef]:
        return await self.get("service_types")

    async def districts(self) -> list[DistrictRef]:
        return await self.get("districts")

    async def dispatchers(self) -> list[DispatcherRef]:
        return await self.get("dispatchers")
