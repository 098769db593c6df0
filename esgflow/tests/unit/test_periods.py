from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from esgflow.core.errors import ValidationError
from esgflow.services.periods import (
    derive_period,
    format_period,
    is_valid_period,
    parse_moment,
    period_sort_key,
    require_period,
)


ARRIVED = datetime(2024, 6, 30, 23, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["2024-01", "2024-12", "2023-Q4"])
def test_valid_periods(value: str) -> None:
    assert is_valid_period(value)
    assert require_period(value) == value


@pytest.mark.parametrize("value", ["2024-13", "2024-1", "2024-Q5", "24-01", ""])
def test_malformed_periods_are_rejected(value: str) -> None:
    with pytest.raises(ValidationError, match="Malformed period"):
        require_period(value)


def test_format_period_granularity() -> None:
    assert format_period(date(2024, 5, 9)) == "2024-05"
    assert format_period(date(2024, 5, 9), "quarter") == "2024-Q2"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-03-04T10:00:00Z", date(2024, 3, 4)),
        ("2024-03", date(2024, 3, 1)),
        ("2024-Q3", date(2024, 7, 1)),
        ("Tue, 05 Mar 2024 10:00:00 GMT", date(2024, 3, 5)),
        ("1709632800.000100", date(2024, 3, 5)),
        (1709632800, date(2024, 3, 5)),
    ],
)
def test_parse_moment_formats(raw, expected: date) -> None:
    moment = parse_moment(raw)
    assert moment is not None
    assert (moment.year, moment.month, moment.day) == (expected.year, expected.month, expected.day)


@pytest.mark.parametrize("raw", [1706745600000, "1706745600000", 1706745600000.0])
def test_parse_moment_reads_millisecond_epochs(raw) -> None:
    moment = parse_moment(raw)
    assert moment is not None
    assert (moment.year, moment.month, moment.day) == (2024, 2, 1)


@pytest.mark.parametrize("raw", [10**20, "9" * 40, float("inf")])
def test_parse_moment_out_of_range_epoch_is_unparseable(raw) -> None:
    assert parse_moment(raw) is None


def test_derive_period_falls_back_on_out_of_range_epoch() -> None:
    assert derive_period({"timestamp": 10**20}, arrived_at=ARRIVED) == "2024-06"


@pytest.mark.parametrize("raw", [None, True, 42, "not a date", "", {"year": 2024}])
def test_parse_moment_rejects_noise(raw) -> None:
    assert parse_moment(raw) is None


def test_derive_period_prefers_configured_field() -> None:
    payload = {"recorded_at": "2024-01-15", "booked_on": "2023-12-31"}
    assert derive_period(payload, arrived_at=ARRIVED) == "2024-01"
    assert derive_period(payload, arrived_at=ARRIVED, period_field="booked_on") == "2023-12"


def test_derive_period_falls_back_to_arrival() -> None:
    assert derive_period({"kwh": 10}, arrived_at=ARRIVED) == "2024-06"
    assert derive_period({"date": "garbage"}, arrived_at=ARRIVED, granularity="quarter") == "2024-Q2"


def test_derive_period_keeps_explicit_quarter() -> None:
    assert derive_period({"period": "2024-Q1"}, arrived_at=ARRIVED, granularity="quarter") == "2024-Q1"


def test_period_sort_key_orders_chronologically() -> None:
    periods = ["2024-02", "2023-Q4", "2024-10", "2024-01"]
    assert sorted(periods, key=period_sort_key) == ["2023-Q4", "2024-01", "2024-02", "2024-10"]
