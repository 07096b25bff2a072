"""
Transaction Scope
=================
One pooled connection plus one SQLite transaction. Write scopes begin with
``BEGIN IMMEDIATE`` so the write lock is held from the first statement, which
makes read-then-write sequences serializable. Read scopes begin deferred and
do not block writers under WAL.

A scope ends exactly once: commit, rollback, or rollback on leaving an
``async with`` block that did not commit.

An in-memory store has a single connection, so its scopes pass through a
ConnectionGate: one transaction at a time, and a task that already holds the
open transaction joins it instead of waiting on itself.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ipbandb.core.exceptions import TransactionClosedError

logger = logging.getLogger("ipbandb")


class ConnectionGate:
    """Serializes transaction scopes over one shared connection."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._holder: "TransactionScope | None" = None

    def held_by_current_task(self) -> "TransactionScope | None":
        """The open scope when the calling task holds the gate, else None."""
        holder = self._holder
        if holder is None or not holder.active:
            return None
        if self._owner is not asyncio.current_task():
            return None
        return holder

    async def acquire(self, scope: "TransactionScope") -> None:
        await self._lock.acquire()
        self._owner = asyncio.current_task()
        self._holder = scope

    def release(self) -> None:
        self._owner = None
        self._holder = None
        self._lock.release()


class TransactionScope:
    def __init__(
        self,
        engine: AsyncEngine,
        *,
        write: bool = True,
        gate: ConnectionGate | None = None,
    ) -> None:
        self._engine = engine
        self._write = write
        self._gate = gate
        self._conn: AsyncConnection | None = None
        self._joined = False
        self._finished = False

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> "TransactionScope":
        if self._conn is not None or self._finished:
            raise TransactionClosedError("transaction scope already started")

        if self._gate is not None:
            holder = self._gate.held_by_current_task()
            if holder is not None:
                # the holding scope commits or rolls back for both of us
                self._conn = holder.connection
                self._joined = True
                return self
            await self._gate.acquire(self)

        try:
            conn = await self._engine.connect()
            try:
                await conn.execution_options(sqlite_begin="IMMEDIATE" if self._write else "DEFERRED")
                await conn.begin()
            except BaseException:
                await conn.close()
                raise
        except BaseException:
            if self._gate is not None:
                self._gate.release()
            raise
        self._conn = conn
        return self

    async def commit(self) -> None:
        conn = self.connection
        if self._joined:
            self._detach()
            return
        try:
            await conn.commit()
        finally:
            await self._release()

    async def rollback(self) -> None:
        """Roll back; a no-op once the scope has been committed or rolled back."""
        if self._conn is None:
            return
        if self._joined:
            self._detach()
            return
        try:
            await self._conn.rollback()
        finally:
            await self._release()

    async def close(self) -> None:
        """Release the connection, rolling back anything not committed."""
        await self.rollback()

    def _detach(self) -> None:
        self._conn = None
        self._finished = True

    async def _release(self) -> None:
        conn, self._conn = self._conn, None
        self._finished = True
        if conn is None:
            return
        try:
            await conn.close()
        finally:
            if self._gate is not None:
                self._gate.release()

    # ------------------------------------------------------------------
    # Access

    @property
    def active(self) -> bool:
        return self._conn is not None

    @property
    def joined(self) -> bool:
        """True when this scope rides on a transaction the same task already holds."""
        return self._joined

    @property
    def connection(self) -> AsyncConnection:
        if self._conn is None:
            raise TransactionClosedError("transaction scope is not active")
        return self._conn

    async def __aenter__(self) -> "TransactionScope":
        if self._conn is None:
            await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._conn is not None and exc_type is not None:
            logger.debug("ipbandb: rolling back transaction after %s", exc_type.__name__)
        await self.close()
