"""Session record owned by the session store."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from pytripsync.models.trip import Trip, TripStatus


class Session(BaseModel):
    """Immutable snapshot of a card's balance and current trip.

    The store never mutates a ``Session`` in place: every accepted mutation
    commits a new record, so readers always see a complete one.

    Parameters
    ----------
    card_identifier : str
        The card the session was opened for. Fixed for the session's lifetime.
    session_id : str
        Identity used to query the trip status source.
    balance : Decimal
        Current card balance. May be negative down to the overdraft floor.
    trip_status : TripStatus
        ``idle`` before the first trip, ``active`` while one is open,
        ``completed`` after it ends.
    current_trip : Trip or None
        Present exactly when ``trip_status`` is ``active``.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
        str_strip_whitespace=True,
    )

    card_identifier: str
    session_id: str
    balance: Decimal = Decimal(0)
    trip_status: TripStatus = TripStatus.IDLE
    current_trip: Trip | None = None

    @field_validator("card_identifier", "session_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must be non-empty")
        return value

    @field_validator("balance")
    @classmethod
    def _finite_balance(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("balance must be finite")
        return value

    @model_validator(mode="after")
    def _trip_matches_status(self) -> Session:
        has_trip = self.current_trip is not None
        if has_trip != (self.trip_status == TripStatus.ACTIVE):
            raise ValueError("current_trip must be set exactly when trip_status is active")
        return self

    @property
    def has_active_trip(self) -> bool:
        return self.trip_status == TripStatus.ACTIVE

    def evolve(self, **changes: Any) -> Session:
        """Return a validated copy with *changes* applied."""
        data = {
            "card_identifier": self.card_identifier,
            "session_id": self.session_id,
            "balance": self.balance,
            "trip_status": self.trip_status,
            "current_trip": self.current_trip,
        }
        data.update(changes)
        return Session.model_validate(data)
