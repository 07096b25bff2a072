"""
Schema setup for the ip_addresses table.

Older database files were created before ``state`` and ``ban_end_date``
existed. Columns are only ever added, never dropped or retyped, so any older
file can be opened by a newer store.
"""

import logging

import sqlalchemy as sa
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Connection
from sqlalchemy.exc import OperationalError

from ipbandb.models.database import Base, ip_addresses
from ipbandb.models.enums import AddressState

logger = logging.getLogger("ipbandb")


def _additive_columns() -> list[sa.Column]:
    return [
        sa.Column("state", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("ban_end_date", sa.BigInteger(), nullable=True),
    ]


def upgrade(conn: Connection) -> int:
    """
    Bring the schema up to date on a sync connection (use ``run_sync``).

    Returns the number of rows healed from a banned state with no ban date
    to FAILED_LOGIN.
    """
    Base.metadata.create_all(conn)

    op = Operations(MigrationContext.configure(conn))
    existing = {column["name"] for column in sa.inspect(conn).get_columns(ip_addresses.name)}
    for column in _additive_columns():
        if column.name in existing:
            continue
        try:
            op.add_column(ip_addresses.name, column)
            logger.info("ipbandb: added column %s.%s", ip_addresses.name, column.name)
        except OperationalError as exc:
            # already applied by a concurrent opener
            logger.debug("ipbandb: skipped column %s: %s", column.name, exc)

    # create_all skips indexes when the table already existed
    for index in ip_addresses.indexes:
        index.create(conn, checkfirst=True)

    result = conn.execute(
        sa.update(ip_addresses)
        .where(ip_addresses.c.state.in_([AddressState.ACTIVE, AddressState.ADD_PENDING]))
        .where(ip_addresses.c.ban_date.is_(None))
        .values(state=AddressState.FAILED_LOGIN)
    )
    healed = result.rowcount or 0
    if healed:
        logger.warning("ipbandb: moved %d row(s) without a ban date to failed login state", healed)
    return healed
