"""Pydantic models for transit payloads and session records."""

from pytripsync.models.card import Card
from pytripsync.models.notification import Notification
from pytripsync.models.tap import TapResult, Transaction, TransactionKind
from pytripsync.models.trip import Coordinate, Trip, TripStatus

__all__ = [
    "Card",
    "Coordinate",
    "Notification",
    "TapResult",
    "Transaction",
    "TransactionKind",
    "Trip",
    "TripStatus",
]
