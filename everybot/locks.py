"""Per-tenant, non-blocking mutual exclusion for sweep stages."""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import delete, insert, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from everybot.config import settings
from everybot.models.database import TenantLockDB, _new_id


@dataclass
class LockHandle:
    """Proof of a held lock; pass it back to ``TenantLock.release``."""

    tenant_id: str
    scope: str
    token: str = field(default_factory=_new_id)
    connection: Connection | None = None

    @property
    def key(self) -> str:
        return f"everybot_{self.scope}:{self.tenant_id}"


class TenantLock:
    """
    Advisory lock keyed by (tenant, scope).

    PostgreSQL uses ``pg_try_advisory_lock`` on a connection kept open by
    the handle. Elsewhere a row in ``tenant_locks`` marks the lock; a row
    older than the TTL is treated as abandoned and replaced.
    """

    def __init__(self, engine: Engine, ttl_minutes: int | None = None):
        self.engine = engine
        self.ttl = timedelta(minutes=settings.lock_ttl_minutes if ttl_minutes is None else ttl_minutes)

    @property
    def advisory(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def try_acquire(self, tenant_id: str, scope: str) -> LockHandle | None:
        """Take the lock if it is free; never waits."""
        handle = LockHandle(tenant_id=tenant_id, scope=scope)
        if self.advisory:
            return self._try_advisory(handle)
        return self._try_row(handle)

    def release(self, handle: LockHandle | None) -> None:
        if handle is None:
            return
        if handle.connection is not None:
            try:
                handle.connection.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": handle.key})
                handle.connection.commit()
            finally:
                handle.connection.close()
                handle.connection = None
            return

        with self.engine.begin() as conn:
            conn.execute(
                delete(TenantLockDB).where(
                    TenantLockDB.office_id == handle.tenant_id,
                    TenantLockDB.scope == handle.scope,
                    TenantLockDB.token == handle.token,
                )
            )

    @asynccontextmanager
    async def held(self, tenant_id: str, scope: str):
        """Yield a handle, or None when another run holds the lock. Always releases."""
        handle = self.try_acquire(tenant_id, scope)
        try:
            yield handle
        finally:
            self.release(handle)

    def _try_advisory(self, handle: LockHandle) -> LockHandle | None:
        conn = self.engine.connect()
        try:
            acquired = conn.execute(text("SELECT pg_try_advisory_lock(hashtext(:key))"), {"key": handle.key}).scalar()
            conn.commit()
        except Exception:
            conn.close()
            raise
        if not acquired:
            conn.close()
            logger.info("Lock {} is held elsewhere", handle.key)
            return None
        handle.connection = conn
        return handle

    def _try_row(self, handle: LockHandle) -> LockHandle | None:
        now = datetime.now()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(TenantLockDB).where(
                        TenantLockDB.office_id == handle.tenant_id,
                        TenantLockDB.scope == handle.scope,
                        TenantLockDB.acquired_at < now - self.ttl,
                    )
                )
                conn.execute(
                    insert(TenantLockDB).values(
                        office_id=handle.tenant_id,
                        scope=handle.scope,
                        token=handle.token,
                        acquired_at=now,
                    )
                )
        except IntegrityError:
            logger.info("Lock {} is held elsewhere", handle.key)
            return None
        return handle
