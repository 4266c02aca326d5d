"""Trip models."""

from __future__ import annotations

from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from pytripsync.models._base import Timestamp, TransitBaseModel


class TripStatus(StrEnum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"


class Coordinate(BaseModel):
    """WGS84 position where a trip started."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result:  # NaN check
        return None
    return result


class Trip(TransitBaseModel):
    """One tap-in-to-tap-out journey.

    Validates both locally created trips and the backend's ongoing-trip
    payload (``tripId``, ``tripStartTime``, ``startingLatitude``,
    ``startingLongitude``, ``busNumber``, ...).
    """

    trip_id: str = Field(validation_alias=AliasChoices("tripId", "id", "trip_id"))
    """Opaque identifier, unique per trip."""

    card_identifier: str | None = Field(
        default=None,
        validation_alias=AliasChoices("cardId", "cardNumber", "card_identifier"),
    )
    session_id: str | None = None
    """Backend bus session the trip belongs to."""

    tap_in_time: Timestamp = Field(
        default=None,
        validation_alias=AliasChoices("tripStartTime", "tapInTime", "tap_in_time"),
    )
    tap_in_location: Coordinate | None = Field(
        default=None,
        validation_alias=AliasChoices("tapInLocation", "tap_in_location"),
    )
    bus_reference: str | None = Field(
        default=None,
        validation_alias=AliasChoices("busNumber", "busReference", "bus_reference"),
    )
    bus_name: str | None = None
    start_place: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tripStartPlace", "startPlace", "start_place"),
    )
    penalty_amount: Decimal | None = None
    is_running: bool = True

    @model_validator(mode="before")
    @classmethod
    def _lift_location(cls, values: Any) -> Any:
        """Fold ``startingLatitude``/``startingLongitude`` into ``tap_in_location``."""
        if not isinstance(values, dict):
            return values
        if values.get("tapInLocation") is not None or values.get("tap_in_location") is not None:
            return values
        latitude = _as_float(values.get("startingLatitude"))
        longitude = _as_float(values.get("startingLongitude"))
        if latitude is None or longitude is None:
            return values
        merged = dict(values)
        merged["tapInLocation"] = {"latitude": latitude, "longitude": longitude}
        return merged

    @field_validator("trip_id", mode="before")
    @classmethod
    def _coerce_trip_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            value = value.strip()
            if not value:
                raise ValueError("trip_id must be non-empty")
        return value
