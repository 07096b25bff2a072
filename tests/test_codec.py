"""Tests for the entry codec."""

from datetime import datetime, timedelta, timezone

from ipbandb.services.codec import (
    EPOCH,
    ban_window,
    from_unix_ms,
    parse_address,
    parse_address_range,
    to_unix_ms,
)


# --- Addresses ---


def test_parse_ipv4_and_ipv6():
    assert parse_address("10.0.0.1").packed == bytes([10, 0, 0, 1])
    assert len(parse_address("2001:db8::1").packed) == 16


def test_parse_canonicalises_text():
    assert str(parse_address(" 2001:0db8:0000::0001 ")) == "2001:db8::1"


def test_parse_rejects_garbage():
    assert parse_address("not-an-ip") is None
    assert parse_address("10.0.0.256") is None
    assert parse_address("") is None
    assert parse_address(None) is None


def test_range_with_dash():
    assert parse_address_range("10.0.0.1-10.0.0.9") == (
        bytes([10, 0, 0, 1]),
        bytes([10, 0, 0, 9]),
    )


def test_range_bounds_are_ordered():
    first, last = parse_address_range("10.0.0.9-10.0.0.1")
    assert first < last


def test_range_cidr():
    assert parse_address_range("192.168.1.77/24") == (
        bytes([192, 168, 1, 0]),
        bytes([192, 168, 1, 255]),
    )


def test_range_single_address():
    assert parse_address_range("10.0.0.5") == (bytes([10, 0, 0, 5]), bytes([10, 0, 0, 5]))


def test_range_rejects_mixed_families_and_garbage():
    assert parse_address_range("10.0.0.1-::1") is None
    assert parse_address_range("10.0.0.0/99") is None
    assert parse_address_range("nope") is None


# --- Timestamps ---


def test_unix_ms_truncates_to_milliseconds():
    value = datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=timezone.utc)
    assert from_unix_ms(to_unix_ms(value)) == value.replace(microsecond=123000)


def test_naive_datetime_is_utc():
    naive = datetime(2024, 1, 1, 0, 0, 0)
    assert to_unix_ms(naive) == to_unix_ms(naive.replace(tzinfo=timezone.utc))


def test_epoch_and_offsets():
    assert to_unix_ms(EPOCH) == 0
    assert to_unix_ms(EPOCH + timedelta(seconds=1)) == 1000
    other_zone = datetime(1970, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=1)))
    assert to_unix_ms(other_zone) == 0


# --- Ban windows ---


def test_ban_window_at_epoch_is_kept():
    assert ban_window(0, 300_000) == (EPOCH, EPOCH + timedelta(minutes=5))


def test_ban_window_without_start_has_no_end():
    assert ban_window(None, 300_000) == (None, None)
    assert ban_window(None, None) == (None, None)


def test_ban_window_without_end():
    assert ban_window(1000, None) == (EPOCH + timedelta(seconds=1), None)
