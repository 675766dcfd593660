"""
Auto-expiring lease used as the sync mutual-exclusion lock.

A lease is a row in ``vault_sync_locks`` keyed by scope. It is taken by
inserting the row, or by overwriting a row whose ``expires_at`` has passed,
so a crashed holder never blocks sync for longer than the TTL.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vault_access.features.mirror.models import SyncLock
from vault_access.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)

SYNC_SCOPE = "vault-sync"


class SyncLease:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scope: str = SYNC_SCOPE,
        ttl_seconds: int = 3600,
    ):
        self._session_factory = session_factory
        self.scope = scope
        self.ttl = timedelta(seconds=ttl_seconds)

    async def acquire(self, holder: str, now: Optional[datetime] = None) -> bool:
        """Take the lease for ``holder``. Returns False while another holder's lease is live."""
        now = now or utcnow()
        expires_at = now + self.ttl

        async with self._session_factory() as db:
            db.add(SyncLock(scope=self.scope, holder=holder, acquired_at=now, expires_at=expires_at))
            try:
                await db.commit()
                log.info("Lease %s acquired by %s", self.scope, holder)
                return True
            except IntegrityError:
                await db.rollback()

            result = await db.execute(
                update(SyncLock)
                .where(SyncLock.scope == self.scope, SyncLock.expires_at < now)
                .values(holder=holder, acquired_at=now, expires_at=expires_at)
            )
            await db.commit()

        if result.rowcount == 1:
            log.warning("Lease %s was expired; taken over by %s", self.scope, holder)
            return True
        return False

    async def release(self, holder: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                delete(SyncLock).where(SyncLock.scope == self.scope, SyncLock.holder == holder)
            )
            await db.commit()
        log.info("Lease %s released by %s", self.scope, holder)

    async def current(self, now: Optional[datetime] = None) -> Optional[SyncLock]:
        """The live lease row, or None if the scope is free or its lease has expired."""
        now = now or utcnow()
        async with self._session_factory() as db:
            lock = await db.scalar(select(SyncLock).where(SyncLock.scope == self.scope))
        if lock is None or as_utc(lock.expires_at) <= now:
            return None
        return lock

    async def is_held(self, now: Optional[datetime] = None) -> bool:
        return await self.current(now) is not None
