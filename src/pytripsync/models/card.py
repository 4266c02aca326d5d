"""Transit card model."""

from __future__ import annotations

from decimal import Decimal

from pydantic import AliasChoices, Field

from pytripsync.models._base import TransitBaseModel


class Card(TransitBaseModel):
    """The payment card a session is opened for."""

    card_number: str = Field(validation_alias=AliasChoices("cardNumber", "card_number"))
    balance: Decimal = Decimal(0)
    is_active: bool = True
