"""
Test fixtures for the IPBan database.

Uses an in-memory SQLite database for isolation; tests that need real
concurrent connections use a temporary database file.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest_asyncio

from ipbandb.services.store import IPBanDB

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def t(minutes: float) -> datetime:
    """A point in time ``minutes`` after T0."""
    return T0 + timedelta(minutes=minutes)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[IPBanDB, None]:
    """Initialized in-memory store, disposed after the test."""
    async with IPBanDB(":memory:") as store:
        yield store


@pytest_asyncio.fixture
async def file_db(tmp_path) -> AsyncGenerator[IPBanDB, None]:
    """Initialized store backed by a WAL database file."""
    async with IPBanDB(str(tmp_path / "ipban.sqlite")) as store:
        yield store


async def collect(aiterable) -> list:
    return [item async for item in aiterable]
