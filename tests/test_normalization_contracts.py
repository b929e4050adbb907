from datetime import datetime, timezone

import pytest

from src.domain.normalization import (
    normalize_subscription_status,
    parse_timestamp,
    to_minor_units,
    to_utc_iso,
)


def test_subscription_status_normalization_contract():
    assert normalize_subscription_status("trial") == "trialing"
    assert normalize_subscription_status("in-trial") == "trialing"
    assert normalize_subscription_status("ACTIVE") == "active"
    assert normalize_subscription_status("cancelled") == "canceled"
    assert normalize_subscription_status("deactivated") == "canceled"
    assert normalize_subscription_status(None) == "active"
    assert normalize_subscription_status("completely_new_value") == "active"


def test_minor_units_contract():
    assert to_minor_units(50) == 5000
    assert to_minor_units("50") == 5000
    assert to_minor_units(12.34) == 1234
    assert to_minor_units("0.005") == 1
    assert to_minor_units(19.99) == 1999


@pytest.mark.parametrize("value", [None, True, "abc", "NaN", "inf"])
def test_minor_units_rejects_invalid_amounts(value):
    with pytest.raises(ValueError):
        to_minor_units(value)


def test_timestamp_parsing_contract():
    expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T10:00:00Z") == expected
    assert parse_timestamp("2024-05-01T12:00:00+02:00") == expected
    assert parse_timestamp(int(expected.timestamp())) == expected
    assert parse_timestamp(int(expected.timestamp()) * 1000) == expected
    assert parse_timestamp(str(int(expected.timestamp()))) == expected
    assert parse_timestamp("2024-05-01T10:00:00") == expected
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None
    assert to_utc_iso("2024-05-01T10:00:00Z") == "2024-05-01T10:00:00+00:00"
    assert to_utc_iso(None) is None
