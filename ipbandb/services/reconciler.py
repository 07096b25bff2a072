"""
Delta Reconciler
================
Streams pending firewall changes and, only when the caller confirms the
firewall accepted all of them, advances the state machine:

    ADD_PENDING                          -> ACTIVE
    REMOVE_PENDING_BECOME_FAILED_LOGIN   -> FAILED_LOGIN (last failed login = now)
    REMOVE_PENDING                       -> row deleted

Anything short of an explicit ``commit()`` leaves every row in its pending
state, so the next enumeration yields the same deltas again.

Usage::

    async with db.enumerate_delta(now) as deltas:
        async for delta in deltas:
            await firewall.apply(delta)
        await deltas.commit()
"""

import logging
from datetime import datetime

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncResult

from ipbandb.core.exceptions import DeltaEnumerationError
from ipbandb.models.database import ip_addresses
from ipbandb.models.enums import AddressState, PENDING_STATES
from ipbandb.models.schemas import AddressDelta
from ipbandb.services.codec import to_unix_ms
from ipbandb.services.transaction import TransactionScope

logger = logging.getLogger("ipbandb")

_PENDING_QUERY = (
    select(ip_addresses.c.address_text, ip_addresses.c.state)
    .where(ip_addresses.c.state.in_(PENDING_STATES))
    .order_by(ip_addresses.c.address)
)


class DeltaEnumeration:
    def __init__(
        self,
        scope: TransactionScope,
        now: datetime,
        reset_failed_login_count: bool = True,
        owns_scope: bool = True,
    ) -> None:
        self._scope = scope
        self._now = now
        self._reset_failed_login_count = reset_failed_login_count
        self._owns_scope = owns_scope
        self._result: AsyncResult | None = None
        self._exhausted = False
        self._finished = False
        self.yielded = 0

    # ------------------------------------------------------------------
    # Context

    async def __aenter__(self) -> "DeltaEnumeration":
        if self._finished:
            raise DeltaEnumerationError("delta enumeration already finished")
        if self._owns_scope and not self._scope.active:
            await self._scope.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self._close_result()
            if exc_type is not None:
                # a failure mid-sequence never leaves a partial transition behind,
                # even in a caller supplied scope
                await self._scope.rollback()
            elif self._owns_scope and not self._finished:
                logger.debug("ipbandb: delta enumeration closed without commit, rolling back")
                await self._scope.rollback()
        finally:
            self._finished = True
            if self._owns_scope:
                await self._scope.close()

    # ------------------------------------------------------------------
    # Iteration

    def __aiter__(self) -> "DeltaEnumeration":
        return self

    async def __anext__(self) -> AddressDelta:
        if self._finished:
            raise DeltaEnumerationError("delta enumeration already finished")
        if self._exhausted:
            raise StopAsyncIteration
        if self._result is None:
            self._result = await self._scope.connection.stream(_PENDING_QUERY)
        row = await self._result.fetchone()
        if row is None:
            self._exhausted = True
            await self._close_result()
            raise StopAsyncIteration
        self.yielded += 1
        return AddressDelta(
            ip_address=row.address_text,
            added=row.state == AddressState.ADD_PENDING,
        )

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    # ------------------------------------------------------------------
    # Terminal

    async def commit(self) -> None:
        """Apply the terminal transitions. Only valid once every delta was consumed."""
        if self._finished:
            raise DeltaEnumerationError("delta enumeration already finished")
        if not self._exhausted:
            raise DeltaEnumerationError("delta enumeration must be fully consumed before commit")

        conn = self._scope.connection
        values = {
            "last_failed_login": case(
                (
                    ip_addresses.c.state == AddressState.REMOVE_PENDING_BECOME_FAILED_LOGIN,
                    to_unix_ms(self._now),
                ),
                else_=ip_addresses.c.last_failed_login,
            ),
            "state": case(
                (ip_addresses.c.state == AddressState.ADD_PENDING, AddressState.ACTIVE.value),
                (
                    ip_addresses.c.state == AddressState.REMOVE_PENDING_BECOME_FAILED_LOGIN,
                    AddressState.FAILED_LOGIN.value,
                ),
                else_=ip_addresses.c.state,
            ),
        }
        if self._reset_failed_login_count:
            values["failed_login_count"] = 0

        updated = await conn.execute(
            update(ip_addresses)
            .where(ip_addresses.c.state.in_([
                AddressState.ADD_PENDING,
                AddressState.REMOVE_PENDING_BECOME_FAILED_LOGIN,
            ]))
            .values(**values)
        )
        deleted = await conn.execute(
            delete(ip_addresses).where(ip_addresses.c.state == AddressState.REMOVE_PENDING)
        )
        if self._owns_scope:
            await self._scope.commit()
        self._finished = True
        logger.info(
            "ipbandb: reconciled %d delta(s), %d row(s) updated, %d row(s) deleted",
            self.yielded, updated.rowcount, deleted.rowcount,
        )

    async def _close_result(self) -> None:
        result, self._result = self._result, None
        if result is not None:
            await result.close()
