"""Deterministic money and deadline rules.

Pure functions only; the store and the scheduler apply them under their own
serialization.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from pytripsync.exceptions import InvalidAmountError, PaymentRejectedError


def to_amount(value: Any) -> Decimal:
    """Coerce *value* to a finite :class:`Decimal` or raise :class:`InvalidAmountError`."""
    if isinstance(value, bool):
        raise InvalidAmountError(f"amount must be numeric, got {value!r}", amount=value)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # str() keeps 0.1 as 0.1 instead of its binary expansion
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise InvalidAmountError(f"amount must be numeric, got {value!r}", amount=value) from exc
    else:
        raise InvalidAmountError(f"amount must be numeric, got {value!r}", amount=value)
    if not result.is_finite():
        raise InvalidAmountError(f"amount must be finite, got {value!r}", amount=value)
    return result


def settle_fare(balance: Decimal, fare_amount: Decimal, *, floor: Decimal) -> Decimal:
    """Return the balance after deducting *fare_amount*.

    Raises :class:`PaymentRejectedError` when the result would fall below
    *floor*. The result is never clamped.
    """
    new_balance = balance - fare_amount
    if new_balance < floor:
        raise PaymentRejectedError(
            f"fare {fare_amount} on balance {balance} would leave {new_balance}, below floor {floor}",
            balance=balance,
            fare_amount=fare_amount,
            floor=floor,
        )
    return new_balance


def next_cutoff(after: datetime, cutoff: time) -> datetime:
    """Next occurrence of *cutoff* strictly after *after*, in *after*'s time zone.

    Today's cutoff if it is still in the future, otherwise tomorrow's.
    """
    candidate = after.replace(
        hour=cutoff.hour,
        minute=cutoff.minute,
        second=cutoff.second,
        microsecond=cutoff.microsecond,
    )
    if candidate <= after:
        candidate = candidate + timedelta(days=1)
    return candidate


def closure_deadline(tap_in_time: datetime | None, now: datetime, cutoff: time) -> datetime:
    """Cutoff that applies to a trip tapped in at *tap_in_time*.

    The tap-in time is read in *now*'s time zone. Trips without a tap-in time
    are treated as starting *now*.
    """
    start = now if tap_in_time is None else tap_in_time.astimezone(now.tzinfo)
    return next_cutoff(start, cutoff)
