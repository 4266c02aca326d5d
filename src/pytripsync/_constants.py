"""Internal constants shared across the library."""

from datetime import time
from decimal import Decimal

# ------------------------------------------------------------------
# Polling cadence (milliseconds)
# ------------------------------------------------------------------

TRIP_ACTIVE_INTERVAL_MS = 30_000.0
TRIP_IDLE_INTERVAL_MS = 60_000.0
TRIP_MIN_SPACING_MS = 5_000.0
NOTIFICATION_INTERVAL_MS = 30_000.0
NOTIFICATION_MIN_SPACING_MS = 10_000.0
# Notification polling starts slightly after trip polling once signed in.
NOTIFICATION_START_DELAY_MS = 3_000.0
RESTART_GRACE_MS = 100.0
# Lower bound applied to whatever an interval provider returns.
MIN_INTERVAL_MS = 1.0

# ------------------------------------------------------------------
# Money rules
# ------------------------------------------------------------------

DEADLINE_CUTOFF = time(23, 59)
DEADLINE_PENALTY = Decimal(100)
OVERDRAFT_FLOOR = Decimal(-100)
MIN_TAP_IN_BALANCE = Decimal(0)

# Upper bound on a single scheduler sleep, so wall-clock jumps (suspend/resume)
# are noticed without waiting for the full delay.
CLOSURE_RECHECK_SECONDS = 300.0

NOTIFICATION_PAGE_SIZE = 10

CLOSURE_STORAGE_KEY = "pytripsync.deadline_closures"

# Completed trip ids remembered per session so a lagging trip status source
# cannot reopen them.
COMPLETED_TRIP_MEMORY = 32
