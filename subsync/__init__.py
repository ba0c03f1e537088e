"""Subscription sync core.

This package mirrors a user's YouTube subscriptions and channel uploads into
a relational store: per-user sync locking, resumable progress tracking,
shared quota budgeting, per-channel health tracking and post-run alerting.
"""

from subsync.database import async_session_factory, get_session
from subsync.models import Base, Channel

__all__ = [
    "Base",
    "Channel",
    "async_session_factory",
    "get_session",
]
