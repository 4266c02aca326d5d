"""pytripsync - Async trip state synchronisation for transit card clients."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pytripsync")
except PackageNotFoundError:
    __version__ = "0+local"
from pytripsync._clock import Clock, SystemClock
from pytripsync.client import TripSyncClient
from pytripsync.config import TripSyncConfig
from pytripsync.exceptions import (
    CardNotFoundError,
    DomainRejection,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidCardError,
    InvalidStateError,
    PaymentRejectedError,
    SourceUnavailableError,
    TripSyncConfigError,
    TripSyncError,
)
from pytripsync.models import (
    Card,
    Coordinate,
    Notification,
    TapResult,
    Transaction,
    TransactionKind,
    Trip,
    TripStatus,
)
from pytripsync.polling import GateState, PollingCoordinator, PollState, RunToken
from pytripsync.scheduler import ClosureOutcome, DeadlineClosureScheduler, ScheduledClosure
from pytripsync.session import Session
from pytripsync.state.events import StatusChangeCause, TripStatusChanged
from pytripsync.state.notifications import NotificationState, NotificationStore
from pytripsync.state.store import SessionStore
from pytripsync.storage import InMemoryKeyValueStore, KeyValueStore

__all__ = [
    "__version__",
    "Card",
    "CardNotFoundError",
    "Clock",
    "ClosureOutcome",
    "Coordinate",
    "DeadlineClosureScheduler",
    "DomainRejection",
    "GateState",
    "InMemoryKeyValueStore",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidCardError",
    "InvalidStateError",
    "KeyValueStore",
    "Notification",
    "NotificationState",
    "NotificationStore",
    "PaymentRejectedError",
    "PollState",
    "PollingCoordinator",
    "RunToken",
    "ScheduledClosure",
    "Session",
    "SessionStore",
    "SourceUnavailableError",
    "StatusChangeCause",
    "SystemClock",
    "TapResult",
    "Transaction",
    "TransactionKind",
    "Trip",
    "TripStatus",
    "TripStatusChanged",
    "TripSyncClient",
    "TripSyncConfig",
    "TripSyncConfigError",
    "TripSyncError",
]
