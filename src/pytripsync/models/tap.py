"""Tap source result and ledger models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from pytripsync.models._base import TransitBaseModel


class TapResult(TransitBaseModel):
    """Outcome of a remote tap-in or tap-out call."""

    balance: Decimal | None = None
    trip_id: str | None = Field(default=None, validation_alias=AliasChoices("tripId", "trip_id"))


class TransactionKind(StrEnum):
    BUS_FARE = "BusFare"
    PENALTY = "Penalty"
    RECHARGE = "Recharge"


class Transaction(BaseModel):
    """Ledger entry recorded by the session store for every balance change."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: TransactionKind
    amount: Decimal
    balance_after: Decimal
    created_at: datetime
    trip_id: str | None = None
