"""Tests for the administrative command line."""

import pytest

from ipbandb.cli import main


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "cli.sqlite")


@pytest.mark.asyncio
async def test_init_creates_database(db_path: str, capsys):
    assert await main(["--db", db_path, "init"]) == 0
    assert "Database initialized" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_ban_and_commit_deltas(db_path: str, capsys):
    assert await main(["--db", db_path, "ban", "10.0.0.1", "--minutes", "5"]) == 0
    # a second ban while the first is unexpired is refused
    assert await main(["--db", db_path, "ban", "10.0.0.1"]) == 1

    assert await main(["--db", db_path, "deltas", "--commit"]) == 0
    out = capsys.readouterr().out
    assert "+ 10.0.0.1" in out
    assert "1 delta(s) committed" in out

    assert await main(["--db", db_path, "deltas"]) == 0
    assert "0 delta(s)" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_unban_queues_removal(db_path: str, capsys):
    await main(["--db", db_path, "ban", "10.0.0.1"])
    await main(["--db", db_path, "deltas", "--commit"])
    capsys.readouterr()

    assert await main(["--db", db_path, "unban", "10.0.0.1"]) == 0
    assert await main(["--db", db_path, "deltas", "--commit"]) == 0
    assert "- 10.0.0.1" in capsys.readouterr().out

    assert await main(["--db", db_path, "count"]) == 0
    assert "0 address(es), 0 banned" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_unban_unknown_address(db_path: str):
    assert await main(["--db", db_path, "unban", "10.0.0.1"]) == 1


@pytest.mark.asyncio
async def test_list_and_delete(db_path: str, capsys):
    await main(["--db", db_path, "ban", "10.0.0.1"])
    await main(["--db", db_path, "ban", "10.0.0.2"])
    await main(["--db", db_path, "ban", "192.168.0.1"])
    capsys.readouterr()

    assert await main(["--db", db_path, "list"]) == 0
    out = capsys.readouterr().out
    assert "10.0.0.2" in out
    assert "ADD_PENDING" in out

    assert await main(["--db", db_path, "delete-range", "10.0.0.0/8"]) == 0
    assert "Deleted 2 address(es)" in capsys.readouterr().out

    assert await main(["--db", db_path, "delete", "192.168.0.1", "bogus"]) == 0
    assert "Deleted 1 address(es)" in capsys.readouterr().out

    await main(["--db", db_path, "list"])
    assert "No addresses in database" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_truncate_needs_confirmation(db_path: str, capsys):
    await main(["--db", db_path, "ban", "10.0.0.1"])
    assert await main(["--db", db_path, "truncate"]) == 1
    assert await main(["--db", db_path, "truncate", "--yes"]) == 0
    assert "Deleted 1 address(es)" in capsys.readouterr().out
