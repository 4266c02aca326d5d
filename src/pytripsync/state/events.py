"""Trip status change events emitted by the session store."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pytripsync.models.trip import Trip, TripStatus


class StatusChangeCause(StrEnum):
    TAP_IN = "tap_in"
    TAP_OUT = "tap_out"
    DEADLINE = "deadline"
    REMOTE = "remote"
    RESET = "reset"


class TripStatusChanged(BaseModel):
    """A committed trip status transition.

    ``trip`` is the trip that became active, or the trip that just ended.
    """

    model_config = ConfigDict(frozen=True)

    card_identifier: str
    previous: TripStatus
    current: TripStatus
    cause: StatusChangeCause
    trip: Trip | None = None
    balance: Decimal
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def activated(self) -> bool:
        return self.current == TripStatus.ACTIVE and self.previous != TripStatus.ACTIVE

    @property
    def ended(self) -> bool:
        return self.previous == TripStatus.ACTIVE and self.current != TripStatus.ACTIVE
