from sqlalchemy import BigInteger, Integer, LargeBinary, String, event, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from ipbandb.core.config import Settings, settings as default_settings
from ipbandb.models.enums import AddressState

MEMORY_PATH = ":memory:"


class Base(DeclarativeBase):
    pass


class IPAddressRecord(Base):
    __tablename__ = "ip_addresses"

    # 4 bytes for IPv4, 16 for IPv6
    address: Mapped[bytes] = mapped_column(LargeBinary(16), primary_key=True)
    address_text: Mapped[str] = mapped_column(String(64), nullable=False)
    # timestamps are unix epoch milliseconds
    last_failed_login: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    failed_login_count: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ban_date: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    state: Mapped[int] = mapped_column(
        Integer, nullable=False, default=AddressState.ACTIVE.value,
        server_default=text("0"), index=True,
    )
    ban_end_date: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)


ip_addresses = IPAddressRecord.__table__


# --- Database engine ---

def create_store_engine(path: str, config: Settings = default_settings) -> AsyncEngine:
    """
    Build the async engine for a store file, or a single shared connection
    for ":memory:" so the table outlives individual scopes.
    """
    memory = path == MEMORY_PATH
    if memory:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            echo=config.ECHO_SQL,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            echo=config.ECHO_SQL,
            connect_args={"timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS},
        )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # take over BEGIN from the driver so transactions are explicit
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA auto_vacuum = {config.SQLITE_AUTO_VACUUM}")
        if not memory:
            cursor.execute(f"PRAGMA journal_mode = {config.SQLITE_JOURNAL_MODE}")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    return engine
