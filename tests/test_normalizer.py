"""Test numeric encoding and the shared normalization helpers."""
import math
from datetime import date, datetime, timezone

from core.integrations.normalizer import (
    FRACTION_MULTIPLIER,
    encode_numeric_value,
    get_nested,
    headline,
    is_numeric,
    parse_timestamp,
    stable_hash,
    start_of_day,
)


def test_fraction_uses_fixed_multiplier():
    assert encode_numeric_value(82.5) == (82500, 1000)
    assert FRACTION_MULTIPLIER == 1000


def test_integers_keep_default_multiplier():
    assert encode_numeric_value(82) == (82, 1)
    assert encode_numeric_value(82.0) == (82, 1)
    assert encode_numeric_value(7200, default_multiplier=60) == (7200, 60)


def test_numeric_strings_are_parsed():
    assert encode_numeric_value("12.25") == (12250, 1000)
    assert encode_numeric_value("40") == (40, 1)


def test_non_numbers_encode_to_none():
    assert encode_numeric_value(None) == (None, None)
    assert encode_numeric_value("") == (None, None)
    assert encode_numeric_value("abc") == (None, None)
    assert encode_numeric_value(True) == (None, None)
    assert encode_numeric_value(math.nan) == (None, None)
    assert encode_numeric_value(math.inf) == (None, None)


def test_decoded_value_roundtrips_within_three_decimals():
    for raw in (0.1, 3.14159, 99.999, -2.5):
        value, multiplier = encode_numeric_value(raw)
        assert abs(value / multiplier - raw) < 0.0005


def test_is_numeric():
    assert is_numeric(3)
    assert is_numeric("3.5")
    assert not is_numeric("three")
    assert not is_numeric(False)
    assert not is_numeric(None)


def test_headline():
    assert headline("stay_active") == "Stay Active"
    assert headline("recent_daynotes") == "Recent Daynotes"


def test_get_nested_walks_dicts_and_lists():
    data = {"data": [{"user_id": "u-1"}], "meta": {"next": None}}
    assert get_nested(data, "data.0.user_id") == "u-1"
    assert get_nested(data, "data.3.user_id") is None
    assert get_nested(data, "meta.next.page") is None
    assert get_nested(data, "missing") is None


def test_stable_hash_ignores_key_order():
    assert stable_hash({"a": 1, "b": [1, 2]}) == stable_hash({"b": [1, 2], "a": 1})
    assert stable_hash({"a": 1}) != stable_hash({"a": 2})


def test_parse_timestamp():
    assert parse_timestamp("2025-01-28T10:00:00Z") == datetime(2025, 1, 28, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2025-01-28T12:00:00+02:00") == datetime(2025, 1, 28, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2025-01-28") == datetime(2025, 1, 28, tzinfo=timezone.utc)
    assert parse_timestamp(date(2025, 1, 28)) == datetime(2025, 1, 28, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_start_of_day():
    assert start_of_day("2025-01-27") == datetime(2025, 1, 27, tzinfo=timezone.utc)
    assert start_of_day("not a day") is None
