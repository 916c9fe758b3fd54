"""
StarBind Store Module

The Store Adapter contract the binding engine consumes, plus an in-memory
backend for development and tests.
"""

from .base import Notification, NotificationCallback, StoreAdapter, SubscriptionHandle
from .memory import InMemoryStore, MemorySubscription

__all__ = [
    "Notification",
    "NotificationCallback",
    "StoreAdapter",
    "SubscriptionHandle",
    "InMemoryStore",
    "MemorySubscription",
]
