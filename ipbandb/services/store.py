"""
IPBan Database
==============
Persistent record of every address the ban policy has seen: failed login
counters, ban windows, and the firewall state of each address.

Every operation takes an optional ``scope``. Without one, the call runs in
its own transaction on its own pooled connection; with one, it joins the
caller's transaction and the caller decides when to commit.

An in-memory store has a single connection. Its transactions run one at a
time, and a call made without a scope from the task that already holds the
open transaction joins it.

Malformed addresses are never an error: the operation returns its "nothing
happened" value (0, False, None or an empty list).
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ipbandb.core.config import Settings, settings as default_settings
from ipbandb.models import migrations
from ipbandb.models.database import MEMORY_PATH, create_store_engine, ip_addresses
from ipbandb.models.enums import AddressState, BANNED_STATES
from ipbandb.models.schemas import AddressDelta, AddressEntry
from ipbandb.services.codec import (
    ban_window,
    entry_from_row,
    parse_address,
    parse_address_range,
    to_unix_ms,
)
from ipbandb.services.reconciler import DeltaEnumeration
from ipbandb.services.transaction import ConnectionGate, TransactionScope

logger = logging.getLogger("ipbandb")

BanRequest = tuple[str, datetime, datetime]

_ENTRY_COLUMNS = (
    ip_addresses.c.address,
    ip_addresses.c.address_text,
    ip_addresses.c.last_failed_login,
    ip_addresses.c.failed_login_count,
    ip_addresses.c.ban_date,
    ip_addresses.c.state,
    ip_addresses.c.ban_end_date,
)


class IPBanDB:
    def __init__(self, db_path: str | None = None, config: Settings = default_settings) -> None:
        self.config = config
        self.db_path = db_path or config.database_path()
        if self.db_path != MEMORY_PATH:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.engine: AsyncEngine = create_store_engine(self.db_path, config)
        # a memory store shares one connection, so its transactions take turns
        self._gate = ConnectionGate() if self.db_path == MEMORY_PATH else None

    # ------------------------------------------------------------------
    # Startup / shutdown

    async def initialize(self) -> None:
        """Create or upgrade the schema. Safe to run on every start."""
        logger.info("ipbandb: initializing database at %s", self.db_path)
        async with self.transaction() as scope:
            await scope.connection.run_sync(migrations.upgrade)
            await scope.commit()

    async def close(self) -> None:
        await self.engine.dispose()

    async def __aenter__(self) -> "IPBanDB":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transactions

    def transaction(self) -> TransactionScope:
        """Unstarted write scope, for ``async with db.transaction() as scope``."""
        return self._new_scope(write=True)

    async def begin_transaction(self) -> TransactionScope:
        return await self._new_scope(write=True).start()

    async def commit_transaction(self, scope: TransactionScope) -> None:
        await scope.commit()

    async def rollback_transaction(self, scope: TransactionScope) -> None:
        """Roll back; nothing happens if the scope was already committed."""
        await scope.rollback()

    def _new_scope(self, *, write: bool) -> TransactionScope:
        return TransactionScope(self.engine, write=write, gate=self._gate)

    @asynccontextmanager
    async def _connection(
        self, scope: TransactionScope | None, *, write: bool
    ) -> AsyncIterator[AsyncConnection]:
        if scope is not None:
            yield scope.connection
            return
        async with self._new_scope(write=write) as own:
            yield own.connection
            await own.commit()

    # ------------------------------------------------------------------
    # Counts

    async def count_addresses(self, *, scope: TransactionScope | None = None) -> int:
        async with self._connection(scope, write=False) as conn:
            return await conn.scalar(select(func.count()).select_from(ip_addresses))

    async def count_banned_addresses(self, *, scope: TransactionScope | None = None) -> int:
        """Rows that carry a ban date, whatever their firewall state."""
        async with self._connection(scope, write=False) as conn:
            return await conn.scalar(
                select(func.count())
                .select_from(ip_addresses)
                .where(ip_addresses.c.ban_date.is_not(None))
            )

    # ------------------------------------------------------------------
    # Failed logins

    async def increment_failed_login(
        self,
        ip_address: str,
        when: datetime,
        amount: int = 1,
        *,
        scope: TransactionScope | None = None,
    ) -> int:
        """
        Add ``amount`` failures for an address and return the stored count.

        Only new rows and rows in FAILED_LOGIN are counted; a banned or
        pending address keeps its count and the current value is returned.
        """
        address = parse_address(ip_address)
        if address is None:
            logger.debug("ipbandb: ignoring failed login for malformed address %r", ip_address)
            return 0

        timestamp = to_unix_ms(when)
        stmt = sqlite_insert(ip_addresses).values(
            address=address.packed,
            address_text=str(address),
            last_failed_login=timestamp,
            failed_login_count=amount,
            ban_date=None,
            state=AddressState.FAILED_LOGIN.value,
            ban_end_date=None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ip_addresses.c.address],
            set_={
                "last_failed_login": timestamp,
                "failed_login_count": ip_addresses.c.failed_login_count + amount,
            },
            where=ip_addresses.c.state == AddressState.FAILED_LOGIN,
        )
        async with self._connection(scope, write=True) as conn:
            await conn.execute(stmt)
            count = await conn.scalar(
                select(ip_addresses.c.failed_login_count)
                .where(ip_addresses.c.address == address.packed)
            )
        return int(count or 0)

    # ------------------------------------------------------------------
    # Bans

    async def _apply_ban(
        self,
        conn: AsyncConnection,
        ip_address: str,
        ban_start: datetime,
        ban_end: datetime,
        now: datetime,
    ) -> int:
        address = parse_address(ip_address)
        if address is None:
            logger.debug("ipbandb: ignoring ban for malformed address %r", ip_address)
            return 0

        start = to_unix_ms(ban_start)
        end = to_unix_ms(ban_end)
        stmt = sqlite_insert(ip_addresses).values(
            address=address.packed,
            address_text=str(address),
            last_failed_login=start,
            failed_login_count=0,
            ban_date=start,
            state=AddressState.ADD_PENDING.value,
            ban_end_date=end,
        )
        # an existing row is only touched when it is not queued for removal and
        # its ban is absent or lapsed; an ACTIVE row stays ACTIVE since the
        # firewall already holds it
        stmt = stmt.on_conflict_do_update(
            index_elements=[ip_addresses.c.address],
            set_={
                "ban_date": start,
                "ban_end_date": end,
                "state": case(
                    (ip_addresses.c.state == AddressState.ACTIVE, AddressState.ACTIVE.value),
                    else_=AddressState.ADD_PENDING.value,
                ),
            },
            where=and_(
                ip_addresses.c.state != AddressState.REMOVE_PENDING,
                or_(
                    ip_addresses.c.ban_end_date.is_(None),
                    ip_addresses.c.ban_end_date <= to_unix_ms(now),
                ),
            ),
        )
        result = await conn.execute(stmt)
        return max(result.rowcount, 0)

    async def apply_ban(
        self,
        ip_address: str,
        ban_start: datetime,
        ban_end: datetime,
        now: datetime,
        *,
        scope: TransactionScope | None = None,
    ) -> int:
        """
        Insert or reopen a ban window. Returns 1 if the ban was written, 0 if
        an unexpired ban or a pending removal already owns the address.
        """
        async with self._connection(scope, write=True) as conn:
            return await self._apply_ban(conn, ip_address, ban_start, ban_end, now)

    async def apply_bans(
        self,
        bans: Iterable[BanRequest],
        now: datetime,
        *,
        scope: TransactionScope | None = None,
    ) -> int:
        """Apply many bans in one transaction. Returns the count of newly written bans."""
        count = 0
        async with self._connection(scope, write=True) as conn:
            for ip_address, ban_start, ban_end in bans:
                count += await self._apply_ban(conn, ip_address, ban_start, ban_end, now)
        return count

    async def get_ban_window(
        self, ip_address: str, *, scope: TransactionScope | None = None
    ) -> tuple[datetime | None, datetime | None] | None:
        """Ban start and end for an address, or None when it is not stored."""
        address = parse_address(ip_address)
        if address is None:
            return None
        async with self._connection(scope, write=False) as conn:
            result = await conn.execute(
                select(ip_addresses.c.ban_date, ip_addresses.c.ban_end_date)
                .where(ip_addresses.c.address == address.packed)
            )
            row = result.first()
        if row is None:
            return None
        return ban_window(row.ban_date, row.ban_end_date)

    # ------------------------------------------------------------------
    # Entries

    async def get_entry(
        self, ip_address: str, *, scope: TransactionScope | None = None
    ) -> AddressEntry | None:
        address = parse_address(ip_address)
        if address is None:
            return None
        async with self._connection(scope, write=False) as conn:
            result = await conn.execute(
                select(*_ENTRY_COLUMNS).where(ip_addresses.c.address == address.packed)
            )
            row = result.first()
        return entry_from_row(row) if row is not None else None

    async def get_state(
        self, ip_address: str, *, scope: TransactionScope | None = None
    ) -> AddressState | None:
        address = parse_address(ip_address)
        if address is None:
            return None
        async with self._connection(scope, write=False) as conn:
            state = await conn.scalar(
                select(ip_addresses.c.state).where(ip_addresses.c.address == address.packed)
            )
        return AddressState(state) if state is not None else None

    async def enumerate_entries(
        self,
        failed_login_cutoff: datetime | None = None,
        ban_cutoff: datetime | None = None,
        *,
        scope: TransactionScope | None = None,
    ) -> AsyncIterator[AddressEntry]:
        """
        Stream entries in address order.

        With no cutoff every row is returned. ``failed_login_cutoff`` selects
        FAILED_LOGIN rows whose last failure is at or before it; ``ban_cutoff``
        selects ACTIVE / ADD_PENDING rows whose ban ends at or before it. Given
        both, rows matching either are returned.
        """
        stmt = select(*_ENTRY_COLUMNS).order_by(ip_addresses.c.address)
        clauses = []
        if failed_login_cutoff is not None:
            clauses.append(and_(
                ip_addresses.c.state == AddressState.FAILED_LOGIN,
                ip_addresses.c.last_failed_login <= to_unix_ms(failed_login_cutoff),
            ))
        if ban_cutoff is not None:
            clauses.append(and_(
                ip_addresses.c.state.in_(BANNED_STATES),
                ip_addresses.c.ban_end_date <= to_unix_ms(ban_cutoff),
            ))
        if clauses:
            stmt = stmt.where(or_(*clauses))

        async with self._connection(scope, write=False) as conn:
            result = await conn.stream(stmt)
            try:
                async for row in result:
                    yield entry_from_row(row)
            finally:
                await result.close()

    async def enumerate_banned_addresses(
        self, *, scope: TransactionScope | None = None
    ) -> AsyncIterator[str]:
        """Addresses the firewall currently enforces."""
        stmt = (
            select(ip_addresses.c.address_text)
            .where(ip_addresses.c.ban_date.is_not(None))
            .where(ip_addresses.c.state == AddressState.ACTIVE)
            .order_by(ip_addresses.c.address)
        )
        async with self._connection(scope, write=False) as conn:
            result = await conn.stream(stmt)
            try:
                async for row in result:
                    yield row.address_text
            finally:
                await result.close()

    # ------------------------------------------------------------------
    # State

    async def set_state(
        self,
        addresses: Iterable[str] | None,
        state: AddressState,
        *,
        scope: TransactionScope | None = None,
    ) -> int:
        """
        Force ``state`` onto the given addresses, or onto every row when
        ``addresses`` is None. Returns the number of rows changed.
        """
        state = AddressState(state)
        count = 0
        async with self._connection(scope, write=True) as conn:
            if addresses is None:
                result = await conn.execute(update(ip_addresses).values(state=state.value))
                return result.rowcount
            for ip_address in addresses:
                address = parse_address(ip_address)
                if address is None:
                    continue
                result = await conn.execute(
                    update(ip_addresses)
                    .where(ip_addresses.c.address == address.packed)
                    .values(state=state.value)
                )
                count += result.rowcount
        return count

    # ------------------------------------------------------------------
    # Firewall deltas

    def enumerate_delta(
        self,
        now: datetime,
        reset_failed_login_count: bool | None = None,
        *,
        scope: TransactionScope | None = None,
    ) -> DeltaEnumeration:
        """Open a delta enumeration; see ipbandb.services.reconciler."""
        if reset_failed_login_count is None:
            reset_failed_login_count = self.config.RESET_FAILED_LOGIN_COUNT_ON_UNBAN
        return DeltaEnumeration(
            scope if scope is not None else self.transaction(),
            now,
            reset_failed_login_count=reset_failed_login_count,
            owns_scope=scope is None,
        )

    async def enumerate_delta_and_update_state(
        self,
        commit: bool,
        now: datetime,
        reset_failed_login_count: bool | None = None,
        *,
        scope: TransactionScope | None = None,
    ) -> AsyncIterator[AddressDelta]:
        """
        Yield every pending delta. When ``commit`` is true and the caller
        consumed all of them, the state transitions are applied. Stopping
        early rolls back.

        The rollback of an abandoned generator waits for ``aclose()``, and the
        write lock is held until then. Wrap the loop in
        ``contextlib.aclosing`` or use ``async with db.enumerate_delta(now)``,
        which releases deterministically.
        """
        async with self.enumerate_delta(now, reset_failed_login_count, scope=scope) as deltas:
            async for delta in deltas:
                yield delta
            if commit:
                await deltas.commit()

    # ------------------------------------------------------------------
    # Deletes

    async def delete_address(
        self, ip_address: str, *, scope: TransactionScope | None = None
    ) -> bool:
        address = parse_address(ip_address)
        if address is None:
            return False
        async with self._connection(scope, write=True) as conn:
            result = await conn.execute(
                delete(ip_addresses).where(ip_addresses.c.address == address.packed)
            )
        return result.rowcount != 0

    async def delete_addresses(
        self, addresses: Iterable[str], *, scope: TransactionScope | None = None
    ) -> int:
        count = 0
        async with self._connection(scope, write=True) as conn:
            for ip_address in addresses:
                address = parse_address(ip_address)
                if address is None:
                    continue
                result = await conn.execute(
                    delete(ip_addresses).where(ip_addresses.c.address == address.packed)
                )
                count += result.rowcount
        return count

    async def delete_address_range(
        self, address_range: str, *, scope: TransactionScope | None = None
    ) -> list[str]:
        """Delete every stored address inside the range and return them."""
        bounds = parse_address_range(address_range)
        if bounds is None:
            logger.debug("ipbandb: ignoring malformed address range %r", address_range)
            return []
        first, last = bounds
        in_range = and_(
            ip_addresses.c.address.between(first, last),
            func.length(ip_addresses.c.address) == len(first),
        )
        async with self._connection(scope, write=True) as conn:
            result = await conn.execute(
                select(ip_addresses.c.address_text)
                .where(in_range)
                .order_by(ip_addresses.c.address)
            )
            deleted = list(result.scalars())
            await conn.execute(delete(ip_addresses).where(in_range))
        return deleted

    async def delete_pending_remove_addresses(
        self, *, scope: TransactionScope | None = None
    ) -> int:
        async with self._connection(scope, write=True) as conn:
            result = await conn.execute(
                delete(ip_addresses).where(ip_addresses.c.state == AddressState.REMOVE_PENDING)
            )
        return result.rowcount

    async def truncate(self, confirm: bool, *, scope: TransactionScope | None = None) -> int:
        """Delete every row, but only when ``confirm`` is true."""
        if not confirm:
            return 0
        async with self._connection(scope, write=True) as conn:
            result = await conn.execute(delete(ip_addresses))
        logger.info("ipbandb: truncated %d row(s)", result.rowcount)
        return result.rowcount
