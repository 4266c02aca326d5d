from __future__ import annotations

from datetime import UTC, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest

from pytripsync.exceptions import InvalidAmountError, PaymentRejectedError
from pytripsync.state.policy import closure_deadline, next_cutoff, settle_fare, to_amount

CUTOFF = time(23, 59)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (10, Decimal(10)),
        (0.1, Decimal("0.1")),
        ("12.50", Decimal("12.50")),
        (Decimal("-3"), Decimal("-3")),
    ],
)
def test_to_amount_accepts_numbers(value, expected) -> None:
    assert to_amount(value) == expected


@pytest.mark.parametrize("value", [None, True, "ten", float("inf"), Decimal("NaN"), [1]])
def test_to_amount_rejects_non_numbers(value) -> None:
    with pytest.raises(InvalidAmountError):
        to_amount(value)


def test_settle_fare_allows_overdraft_down_to_floor() -> None:
    assert settle_fare(Decimal(50), Decimal(120), floor=Decimal(-100)) == Decimal(-70)
    assert settle_fare(Decimal(50), Decimal(150), floor=Decimal(-100)) == Decimal(-100)


def test_settle_fare_rejects_below_floor() -> None:
    with pytest.raises(PaymentRejectedError) as excinfo:
        settle_fare(Decimal(50), Decimal(200), floor=Decimal(-100))
    assert excinfo.value.balance == Decimal(50)
    assert excinfo.value.fare_amount == Decimal(200)


def test_next_cutoff_same_day_when_still_ahead() -> None:
    now = datetime(2026, 3, 14, 23, 58, tzinfo=UTC)
    assert next_cutoff(now, CUTOFF) == datetime(2026, 3, 14, 23, 59, tzinfo=UTC)


def test_next_cutoff_rolls_over_when_reached() -> None:
    exactly = datetime(2026, 3, 14, 23, 59, tzinfo=UTC)
    assert next_cutoff(exactly, CUTOFF) == datetime(2026, 3, 15, 23, 59, tzinfo=UTC)
    assert next_cutoff(exactly + timedelta(seconds=1), CUTOFF) == datetime(2026, 3, 15, 23, 59, tzinfo=UTC)


def test_closure_deadline_reads_tap_in_in_local_zone() -> None:
    dhaka = timezone(timedelta(hours=6))
    now = datetime(2026, 3, 15, 1, 0, tzinfo=dhaka)
    # 17:30 UTC on the 14th is 23:30 in Dhaka, before that day's cutoff.
    tapped_in = datetime(2026, 3, 14, 17, 30, tzinfo=UTC)

    assert closure_deadline(tapped_in, now, CUTOFF) == datetime(2026, 3, 14, 23, 59, tzinfo=dhaka)


def test_closure_deadline_without_tap_in_time_uses_now() -> None:
    now = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)
    assert closure_deadline(None, now, CUTOFF) == datetime(2026, 3, 14, 23, 59, tzinfo=UTC)
