"""State/store layer.

This package is the single source of truth for the card balance, the current
trip and the unread notification count. Pollers and the deadline scheduler
only ever read from it or call its serialized mutation operations.
"""
