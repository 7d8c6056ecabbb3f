"""Expiring named leases stored in the database.

Used instead of in-process flags so that several API processes and workers
can share one exclusion: the reconciliation run, and short per-user guards
around subscription creation, reactivation and conversion. Each call runs in
its own session so a lease commit never flushes the caller's work.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from datetime import datetime, timedelta

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from billing.db.session import async_session_factory
from billing.models.lease import Lease
from billing.utils import now_utc

logger = logging.getLogger(__name__)


def new_holder() -> str:
    return uuid.uuid4().hex


def user_lease_name(package_id: str, user_id: str) -> str:
    return f"user:{package_id}:{user_id}"


async def acquire_lease(name: str, holder: str, ttl_seconds: float, now: datetime | None = None) -> bool:
    """Take ``name`` for ``holder`` if it is free, expired, or already ours."""
    now = now or now_utc()
    expires_at = now + timedelta(seconds=ttl_seconds)

    async with async_session_factory() as db:
        result = await db.execute(
            update(Lease)
            .where(Lease.name == name, or_(Lease.expires_at < now, Lease.holder == holder))
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
        )
        if result.rowcount == 1:
            await db.commit()
            logger.debug(f"Lease {name} taken over by {holder}")
            return True

        try:
            await db.execute(insert(Lease).values(name=name, holder=holder, acquired_at=now, expires_at=expires_at))
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.debug(f"Lease {name} is held by another worker")
            return False

    logger.debug(f"Lease {name} acquired by {holder}")
    return True


async def release_lease(name: str, holder: str) -> None:
    async with async_session_factory() as db:
        await db.execute(delete(Lease).where(Lease.name == name, Lease.holder == holder))
        await db.commit()


async def get_lease(name: str) -> Lease | None:
    async with async_session_factory() as db:
        result = await db.execute(select(Lease).where(Lease.name == name))
        return result.scalar_one_or_none()


@asynccontextmanager
async def hold_lease(name: str, ttl_seconds: float, holder: str | None = None) -> AsyncIterator[bool]:
    """Yield whether the lease was acquired; release it on exit if it was."""
    holder = holder or new_holder()
    acquired = await acquire_lease(name, holder, ttl_seconds)
    try:
        yield acquired
    finally:
        if acquired:
            await release_lease(name, holder)
