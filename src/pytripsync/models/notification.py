"""Passenger notification model."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pytripsync.models._base import Timestamp, TransitBaseModel


class Notification(TransitBaseModel):
    """A single notification addressed to a card."""

    id: str = Field(validation_alias=AliasChoices("id", "notificationId"))
    title: str = ""
    message: str = Field(default="", validation_alias=AliasChoices("message", "body"))
    is_read: bool = False
    created_at: Timestamp = Field(
        default=None,
        validation_alias=AliasChoices("createTime", "createdAt", "created_at"),
    )
    read_at: Timestamp = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value
