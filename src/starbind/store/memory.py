"""
StarBind Store Layer - Memory Backend

In-memory entity store for development and testing.

Notifications are delivered on a later event loop turn, never from inside
``write()``, and a notification already scheduled still reaches its callback
if the subscription is cancelled in the meantime, like a message already on
the wire. Per-key call counters let tests assert subscription churn.
"""

import asyncio
import logging
from collections import Counter
from typing import Dict, List, Optional, Set

from ..core.errors import StoreUnavailable
from ..core.values import EntityId, FieldValue, TargetKey
from .base import Notification, NotificationCallback, StoreAdapter, SubscriptionHandle

logger = logging.getLogger(__name__)


class MemorySubscription(SubscriptionHandle):
    """Subscription handle issued by ``InMemoryStore``."""

    def __init__(self, store: "InMemoryStore", key: TargetKey, callback: NotificationCallback):
        self.store = store
        self.key = key
        self.callback = callback
        self.active = True

    async def unsubscribe(self) -> None:
        await self.store._round_trip(self.key)
        if not self.active:
            return
        self.active = False
        listeners = self.store._listeners.get(self.key, [])
        if self in listeners:
            listeners.remove(self)
        if not listeners:
            self.store._listeners.pop(self.key, None)
        self.store.unsubscribe_calls[self.key] += 1
        logger.debug(f"Unsubscribed from {self.key}")


class InMemoryStore(StoreAdapter):
    """
    In-memory entity store.

    Timestamps come from a logical clock that advances on every write, so
    ordering is deterministic. ``latency`` (seconds) delays every store call
    to simulate an asynchronous transport; ``available = False`` (or a key in
    ``unavailable``) makes calls raise ``StoreUnavailable``.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.available = True
        self.unavailable: Set[TargetKey] = set()
        self.reads: Counter = Counter()
        self.subscribe_calls: Counter = Counter()
        self.unsubscribe_calls: Counter = Counter()
        self._fields: Dict[TargetKey, FieldValue] = {}
        self._listeners: Dict[TargetKey, List[MemorySubscription]] = {}
        self._clock = 0.0
        self._pending = 0

    # --- StoreAdapter ------------------------------------------------------

    async def read(self, entity_id: EntityId, field_id: str) -> FieldValue:
        key = (entity_id, field_id)
        await self._round_trip(key)
        self.reads[key] += 1
        return self._fields.get(key, FieldValue(None, 0.0))

    async def subscribe(
        self, entity_id: EntityId, field_id: str, callback: NotificationCallback
    ) -> MemorySubscription:
        key = (entity_id, field_id)
        await self._round_trip(key)
        handle = MemorySubscription(self, key, callback)
        self._listeners.setdefault(key, []).append(handle)
        self.subscribe_calls[key] += 1
        logger.debug(f"Subscribed to {key}")
        return handle

    # --- test and development helpers --------------------------------------

    def write(
        self,
        entity_id: EntityId,
        field_id: str,
        value,
        writer_id: Optional[EntityId] = None,
        timestamp: Optional[float] = None,
    ) -> FieldValue:
        """Store a value and notify current subscribers on a later loop turn."""
        key = (entity_id, field_id)
        if timestamp is None:
            self._clock += 1.0
            timestamp = self._clock
        else:
            self._clock = max(self._clock, timestamp)
        previous = self._fields.get(key)
        current = FieldValue(value, timestamp, writer_id)
        self._fields[key] = current
        self._notify(Notification(entity_id, field_id, current, previous))
        return current

    def set_entity(self, entity_id: EntityId, **fields) -> None:
        """Write several fields of one entity."""
        for field_id, value in fields.items():
            self.write(entity_id, field_id, value)

    def deliver(
        self,
        entity_id: EntityId,
        field_id: str,
        value,
        timestamp: float,
        writer_id: Optional[EntityId] = None,
    ) -> None:
        """Push a raw notification without touching the stored value (out-of-order or replayed delivery)."""
        self._notify(Notification(entity_id, field_id, FieldValue(value, timestamp, writer_id), None, {"replay": True}))

    def value(self, entity_id: EntityId, field_id: str) -> Optional[FieldValue]:
        return self._fields.get((entity_id, field_id))

    def live_subscriptions(self, entity_id: EntityId, field_id: str) -> int:
        return len(self._listeners.get((entity_id, field_id), []))

    @property
    def pending(self) -> int:
        """Notifications scheduled but not yet delivered."""
        return self._pending

    async def flush(self) -> None:
        """Wait until every scheduled notification has been delivered."""
        while self._pending:
            await asyncio.sleep(0)

    # --- internals ---------------------------------------------------------

    async def _round_trip(self, key: TargetKey) -> None:
        await asyncio.sleep(self.latency)
        if not self.available or key in self.unavailable:
            raise StoreUnavailable(key[0], key[1])

    def _notify(self, notification: Notification) -> None:
        handles = list(self._listeners.get((notification.entity_id, notification.field_id), []))
        if not handles:
            return
        loop = asyncio.get_running_loop()
        for handle in handles:
            self._pending += 1
            if self.latency:
                loop.call_later(self.latency, self._dispatch, handle, notification)
            else:
                loop.call_soon(self._dispatch, handle, notification)

    def _dispatch(self, handle: MemorySubscription, notification: Notification) -> None:
        self._pending -= 1
        try:
            handle.callback(notification)
        except Exception as e:
            logger.error(f"Subscriber callback failed for {handle.key}: {e}")


__all__ = ["InMemoryStore", "MemorySubscription"]
