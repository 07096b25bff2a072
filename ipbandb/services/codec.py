"""
Entry Codec
===========
Converts between the storage representation of an address row (packed
address bytes, unix epoch milliseconds, integer state) and AddressEntry.
"""

import ipaddress
from datetime import datetime, timedelta, timezone

from sqlalchemy.engine import Row

from ipbandb.models.enums import AddressState
from ipbandb.models.schemas import AddressEntry

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


# ------------------------------------------------------------------
# Addresses

def parse_address(value: str | None) -> IPAddress | None:
    """Parse an address string, returning None when it is malformed."""
    if not value:
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


def parse_address_range(value: str | None) -> tuple[bytes, bytes] | None:
    """
    Parse "first-last", a CIDR network, or a single address into the packed
    bounds of the range. Both bounds must be the same address family.
    """
    if not value:
        return None
    value = value.strip()
    if "-" in value:
        first_text, _, last_text = value.partition("-")
        first = parse_address(first_text)
        last = parse_address(last_text)
        if first is None or last is None or first.version != last.version:
            return None
        if first > last:
            first, last = last, first
        return first.packed, last.packed
    if "/" in value:
        try:
            network = ipaddress.ip_network(value, strict=False)
        except ValueError:
            return None
        return network.network_address.packed, network.broadcast_address.packed
    single = parse_address(value)
    if single is None:
        return None
    return single.packed, single.packed


# ------------------------------------------------------------------
# Timestamps

def to_unix_ms(value: datetime) -> int:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // _ONE_MS


def from_unix_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


# ------------------------------------------------------------------
# Rows

def ban_window(
    ban_date: int | None, ban_end_date: int | None
) -> tuple[datetime | None, datetime | None]:
    """Decode stored ban columns. Without a ban date there is no ban end either."""
    if ban_date is None:
        return None, None
    ban_end = from_unix_ms(ban_end_date) if ban_end_date is not None else None
    return from_unix_ms(ban_date), ban_end


def entry_from_row(row: Row) -> AddressEntry:
    """Decode a full ip_addresses row."""
    ban_start, ban_end = ban_window(row.ban_date, row.ban_end_date)
    return AddressEntry(
        address=row.address,
        address_text=row.address_text,
        last_failed_login=from_unix_ms(row.last_failed_login),
        failed_login_count=row.failed_login_count,
        ban_start_date=ban_start,
        ban_end_date=ban_end,
        state=AddressState(row.state),
    )
