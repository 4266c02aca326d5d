"""Custom exception hierarchy for pytripsync."""

from __future__ import annotations

from decimal import Decimal


class TripSyncError(Exception):
    """Base exception for all pytripsync errors."""


class TripSyncConfigError(TripSyncError):
    """Invalid or missing configuration."""


class SourceUnavailableError(TripSyncError):
    """An external source failed transiently (network, timeout, 5xx).

    Background pollers treat this as "state may be stale" and retry on the
    next scheduled tick.
    """

    def __init__(self, message: str, *, source: str = "") -> None:
        self.source = source
        super().__init__(message)


class DomainRejection(TripSyncError):
    """An operation was rejected and the session was left untouched."""

    code: str = "rejected"


class InvalidStateError(DomainRejection):
    """The session is not in a state that allows the operation.

    Raised for a second tap-in while a trip is active, a tap-out without an
    active trip, or an operation on a session that was never opened.
    """

    code = "invalid_state"


class InvalidCardError(DomainRejection):
    """The card is not the one the session was opened for."""

    code = "invalid_card"

    def __init__(self, message: str, *, card_identifier: str = "") -> None:
        self.card_identifier = card_identifier
        super().__init__(message)


class CardNotFoundError(InvalidCardError):
    """The remote tap source does not know the card."""

    code = "card_not_found"


class InsufficientBalanceError(DomainRejection):
    """Balance is below the minimum required to start a trip."""

    code = "insufficient_balance"

    def __init__(
        self,
        message: str,
        *,
        balance: Decimal | None = None,
        required: Decimal | None = None,
    ) -> None:
        self.balance = balance
        self.required = required
        super().__init__(message)


class PaymentRejectedError(DomainRejection):
    """A fare deduction would push the balance below the overdraft floor."""

    code = "payment_rejected"

    def __init__(
        self,
        message: str,
        *,
        balance: Decimal,
        fare_amount: Decimal,
        floor: Decimal,
    ) -> None:
        self.balance = balance
        self.fare_amount = fare_amount
        self.floor = floor
        super().__init__(message)


class InvalidAmountError(DomainRejection):
    """A monetary amount is non-numeric, non-finite or out of range."""

    code = "invalid_amount"

    def __init__(self, message: str, *, amount: object = None) -> None:
        self.amount = amount
        super().__init__(message)
