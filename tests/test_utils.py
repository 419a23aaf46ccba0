"""Unit tests for utility functions in unifi_dns_sync.cli.

Tests cover:
- DNS label sanitization (sanitize_dns_label)
- Record type filtering (filter_records_by_type)
- Boolean parsing (_parse_bool)
- Numeric setting parsing (_parse_number)
- Timestamp parsing (_parse_timestamp)
- Run id logging filter (RunIdFilter)
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from unifi_dns_sync.cli import (
    DNSRecord,
    RunIdFilter,
    _parse_bool,
    _parse_number,
    _parse_timestamp,
    filter_records_by_type,
    sanitize_dns_label,
)

# =============================================================================
# Sanitization Tests
# =============================================================================


def test_sanitize_strips_apostrophes_and_punctuation() -> None:
    assert sanitize_dns_label("O'Brien's PC!!") == "obriens-pc"


def test_sanitize_whitespace_only_yields_empty_label() -> None:
    assert sanitize_dns_label(" ") == ""


def test_sanitize_empty_string() -> None:
    assert sanitize_dns_label("") == ""


def test_sanitize_collapses_runs_and_trims_hyphens() -> None:
    assert sanitize_dns_label("--Living   Room / TV--") == "living-room-tv"


def test_sanitize_keeps_digits() -> None:
    assert sanitize_dns_label("Galaxy S21 (5G)") == "galaxy-s21-5g"


def test_sanitize_replaces_non_ascii_letters() -> None:
    assert sanitize_dns_label("Café Büro") == "caf-b-ro"


def test_sanitize_truncates_to_63_characters() -> None:
    label = sanitize_dns_label("a" * 80)

    assert label == "a" * 63


def test_sanitize_trims_hyphen_left_by_truncation() -> None:
    name = "a" * 62 + " " + "b" * 10

    label = sanitize_dns_label(name)

    assert label == "a" * 62
    assert not label.endswith("-")


@pytest.mark.parametrize(
    "name",
    ["O'Brien's PC!!", " ", "--x--", "Living Room TV", "a" * 62 + " b", "ÄÖÜ 123", "printer's"],
)
def test_sanitize_is_idempotent(name: str) -> None:
    once = sanitize_dns_label(name)

    assert sanitize_dns_label(once) == once


# =============================================================================
# Record Filtering Tests
# =============================================================================


def test_filter_records_by_type_keeps_only_matching() -> None:
    records = [
        DNSRecord(name="a.lan", type="A", ip_address="10.0.0.1"),
        DNSRecord(name="lan", type="NS"),
        DNSRecord(name="b.lan", type="AAAA"),
        DNSRecord(name="c.lan", type="A", ip_address="10.0.0.3"),
    ]

    filtered = filter_records_by_type(records, "A")

    assert [r.name for r in filtered] == ["a.lan", "c.lan"]


# =============================================================================
# Parsing Tests
# =============================================================================


@pytest.mark.parametrize("value", ["1", "true", "TRUE", " yes ", "y", "on", True])
def test_parse_bool_truthy(value) -> None:
    assert _parse_bool(value, default=False) is True


@pytest.mark.parametrize("value", ["0", "false", "no", "off", "", False])
def test_parse_bool_falsy(value) -> None:
    assert _parse_bool(value, default=True) is False


def test_parse_bool_none_uses_default() -> None:
    assert _parse_bool(None, default=False) is False
    assert _parse_bool(None) is True


def test_parse_number_missing_uses_default() -> None:
    errors = []

    assert _parse_number(None, "X", 42, errors=errors) == 42
    assert _parse_number("", "X", 42, errors=errors) == 42
    assert errors == []


def test_parse_number_valid_values() -> None:
    errors = []

    assert _parse_number("120", "X", 42, errors=errors) == 120
    assert _parse_number("2.5", "X", 10.0, cast=float, errors=errors) == 2.5
    assert _parse_number("0", "X", 1, allow_zero=True, errors=errors) == 0
    assert errors == []


def test_parse_number_reports_invalid_values() -> None:
    errors = []

    _parse_number("soon", "GRACE", 42, errors=errors)
    _parse_number("0", "TTL", 42, errors=errors)
    _parse_number("-5", "WAIT", 42, allow_zero=True, errors=errors)

    assert errors == [
        "GRACE must be a number, got 'soon'",
        "TTL must be positive, got '0'",
        "WAIT must be non-negative, got '-5'",
    ]


def test_parse_timestamp_z_suffix() -> None:
    assert _parse_timestamp("2024-05-01T12:00:00Z") == datetime(
        2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc
    )


def test_parse_timestamp_pads_short_fraction() -> None:
    parsed = _parse_timestamp("2024-05-01T12:00:00.5Z")

    assert parsed.microsecond == 500000


def test_parse_timestamp_converts_offsets_to_utc() -> None:
    parsed = _parse_timestamp("2024-05-01T07:00:00-05:00")

    assert parsed == datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert parsed.utcoffset() == timedelta(0)


def test_parse_timestamp_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        _parse_timestamp("not a date")


# =============================================================================
# Logging Tests
# =============================================================================


def test_run_id_filter_stamps_records() -> None:
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "hello", None, None)

    assert RunIdFilter("run-123").filter(record) is True
    assert record.run_id == "run-123"
