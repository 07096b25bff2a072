"""
Administrative command line for an IPBan database.

Usage:
    ipbandb init
    ipbandb --db /var/lib/ipban/ipban.sqlite list --ban-cutoff 0
    ipbandb ban 10.0.0.1 --minutes 60
    ipbandb unban 10.0.0.1 --keep-history
    ipbandb deltas --commit
    ipbandb truncate --yes
"""

import argparse
import asyncio
import logging
from contextlib import aclosing
from datetime import datetime, timedelta, timezone

from ipbandb.core.config import settings
from ipbandb.models.enums import AddressState
from ipbandb.services.store import IPBanDB


def _fmt(value: datetime | None) -> str:
    return value.isoformat(timespec="milliseconds") if value else "-"


async def list_entries(db: IPBanDB, failed_login_minutes: int | None, ban_minutes: int | None) -> int:
    """Print entries, optionally filtered by cutoffs expressed in minutes ago."""
    now = datetime.now(timezone.utc)
    failed_cutoff = now - timedelta(minutes=failed_login_minutes) if failed_login_minutes is not None else None
    ban_cutoff = now - timedelta(minutes=ban_minutes) if ban_minutes is not None else None

    shown = 0
    async for entry in db.enumerate_entries(failed_cutoff, ban_cutoff):
        shown += 1
        print(
            f"  {entry.address_text:<40} {entry.state.name:<34} "
            f"failed={entry.failed_login_count} last={_fmt(entry.last_failed_login)} "
            f"ban={_fmt(entry.ban_start_date)}..{_fmt(entry.ban_end_date)}"
        )
    if not shown:
        print("No addresses in database")
    return shown


async def show_deltas(db: IPBanDB, commit: bool) -> int:
    """Print the pending firewall deltas, committing them if requested."""
    now = datetime.now(timezone.utc)
    count = 0
    async with aclosing(db.enumerate_delta_and_update_state(commit, now)) as deltas:
        async for delta in deltas:
            count += 1
            print(f"  {'+' if delta.added else '-'} {delta.ip_address}")
    print(f"✓ {count} delta(s){' committed' if commit and count else ''}")
    return count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ipbandb", description="Manage an IPBan database")
    parser.add_argument(
        "--db",
        help=f"Database path, ':memory:' allowed (default: {settings.database_path()})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create or upgrade the database schema")
    sub.add_parser("count", help="Show address counts")

    p_list = sub.add_parser("list", help="List addresses")
    p_list.add_argument(
        "--failed-login-cutoff",
        type=int,
        metavar="MINUTES",
        help="Only failed logins older than MINUTES",
    )
    p_list.add_argument(
        "--ban-cutoff",
        type=int,
        metavar="MINUTES",
        help="Only bans that ended at least MINUTES ago",
    )

    p_ban = sub.add_parser("ban", help="Ban an address starting now")
    p_ban.add_argument("address")
    p_ban.add_argument("--minutes", type=int, default=60, help="Ban duration (default: 60)")

    p_unban = sub.add_parser("unban", help="Queue an address for firewall removal")
    p_unban.add_argument("address")
    p_unban.add_argument(
        "--keep-history",
        action="store_true",
        help="Keep the address as a failed login after removal",
    )

    p_delete = sub.add_parser("delete", help="Delete addresses")
    p_delete.add_argument("addresses", nargs="+")

    p_range = sub.add_parser("delete-range", help="Delete a range (a-b or CIDR)")
    p_range.add_argument("range")

    p_deltas = sub.add_parser("deltas", help="Show pending firewall changes")
    p_deltas.add_argument("--commit", action="store_true", help="Mark the changes as applied")

    p_truncate = sub.add_parser("truncate", help="Delete every address")
    p_truncate.add_argument("--yes", action="store_true", help="Confirm truncation")

    return parser


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    async with IPBanDB(args.db) as db:
        if args.command == "init":
            print(f"✓ Database initialized at {db.db_path}")

        elif args.command == "count":
            total = await db.count_addresses()
            banned = await db.count_banned_addresses()
            print(f"{total} address(es), {banned} banned")

        elif args.command == "list":
            await list_entries(db, args.failed_login_cutoff, args.ban_cutoff)

        elif args.command == "ban":
            now = datetime.now(timezone.utc)
            count = await db.apply_ban(args.address, now, now + timedelta(minutes=args.minutes), now)
            if not count:
                print(f"❌ {args.address} not banned (invalid, already banned or pending removal)")
                return 1
            print(f"✓ Banned {args.address} for {args.minutes} minute(s)")

        elif args.command == "unban":
            state = (
                AddressState.REMOVE_PENDING_BECOME_FAILED_LOGIN
                if args.keep_history
                else AddressState.REMOVE_PENDING
            )
            if not await db.set_state([args.address], state):
                print(f"❌ {args.address} not found")
                return 1
            print(f"✓ {args.address} queued for removal")

        elif args.command == "delete":
            count = await db.delete_addresses(args.addresses)
            print(f"✓ Deleted {count} address(es)")

        elif args.command == "delete-range":
            deleted = await db.delete_address_range(args.range)
            for address in deleted:
                print(f"  {address}")
            print(f"✓ Deleted {len(deleted)} address(es)")

        elif args.command == "deltas":
            await show_deltas(db, args.commit)

        elif args.command == "truncate":
            if not args.yes:
                print("❌ Refusing to truncate without --yes")
                return 1
            count = await db.truncate(True)
            print(f"✓ Deleted {count} address(es)")

    return 0


def run() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
