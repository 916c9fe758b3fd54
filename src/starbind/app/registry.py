"""
Subscription Registry - Deduplicated Store Subscriptions

🔁 One Subscription Per Resolved Target:
The registry sits between N binding consumers and the store's subscribe
primitive. Every consumer that points at the same ``(entity_id, field_id)``
shares one store subscription and one last-known value.

Key Features:
- Refcounted subscriptions keyed by resolved target
- Synchronous replay of the last-known value to late joiners
- Out-of-order protection: only strictly newer timestamps are applied
- Teardown flag so notifications racing an unsubscribe are ignored
- ``rebind`` as ``acquire(new)`` then ``release(old)``
- Error isolation between listeners, and metrics
"""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..core.errors import RegistryClosedError, StoreUnavailable
from ..core.values import FieldValue, TargetKey
from ..store.base import Notification, StoreAdapter, SubscriptionHandle
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

# Receives the latest FieldValue, or None when the target has no value
# (the store rejected the subscribe or the initial read).
Listener = Callable[[Optional[FieldValue]], None]


class RegistryMetrics:
    """Metrics tracking for registry operations"""

    def __init__(self):
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0
        self.notifications_delivered = 0
        self.stale_dropped = 0
        self.ignored_after_teardown = 0
        self.listener_errors = 0
        self.store_errors = 0
        self.start_time = datetime.now()

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary"""
        return {
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
            "subscribe_calls": self.subscribe_calls,
            "unsubscribe_calls": self.unsubscribe_calls,
            "notifications_delivered": self.notifications_delivered,
            "stale_dropped": self.stale_dropped,
            "ignored_after_teardown": self.ignored_after_teardown,
            "listener_errors": self.listener_errors,
            "store_errors": self.store_errors,
        }


class _ListenerEntry:
    __slots__ = ("listener", "active")

    def __init__(self, listener: Listener):
        self.listener = listener
        self.active = True


class Subscription:
    """Represents the single live store subscription for one resolved target"""

    def __init__(self, key: TargetKey):
        self.key = key
        self.entries: List[_ListenerEntry] = []
        self.last: Optional[FieldValue] = None
        self.torn_down = False
        self.failed: Optional[Exception] = None
        self.handle: Optional[SubscriptionHandle] = None
        self.setup_task: Optional[asyncio.Task] = None
        self.created_at = datetime.now()
        self.notifications = 0

    @property
    def refcount(self) -> int:
        return len(self.entries)

    @property
    def has_value(self) -> bool:
        return self.last is not None

    def __repr__(self) -> str:
        state = "torn-down" if self.torn_down else f"refcount={self.refcount}"
        return f"Subscription({self.key!r}, {state})"


class SubscriptionRegistry:
    """
    Refcounted, deduplicated map from resolved target to Subscription.

    All map mutation happens synchronously inside ``acquire``/``release``;
    store calls run as background tasks. The registry has an explicit
    ``init``/``shutdown`` lifecycle and is passed to the components that use
    it rather than looked up globally.
    """

    def __init__(self, store: StoreAdapter, unsubscribe_timeout: Optional[float] = 5.0):
        self.store = store
        self.unsubscribe_timeout = unsubscribe_timeout
        self.metrics = RegistryMetrics()
        self._subscriptions: Dict[TargetKey, Subscription] = {}
        self._tasks = BackgroundTasks("registry")
        self._running = False

    # --- lifecycle ---------------------------------------------------------

    async def init(self) -> "SubscriptionRegistry":
        self._running = True
        logger.info("Subscription registry started")
        return self

    async def shutdown(self) -> None:
        """Tear down every live subscription and wait for the unsubscribes."""
        if not self._running:
            return
        self._running = False
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            for entry in subscription.entries:
                entry.active = False
            subscription.entries.clear()
            self._teardown(subscription)
        await self._tasks.join()
        logger.info(f"Subscription registry stopped ({len(subscriptions)} subscriptions torn down)")

    async def __aenter__(self) -> "SubscriptionRegistry":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def idle(self) -> bool:
        return self._tasks.idle

    @property
    def failures(self) -> int:
        """Background store calls that raised unexpectedly."""
        return self._tasks.failures

    async def drain(self) -> None:
        """Wait for pending subscribe, read and unsubscribe calls."""
        await self._tasks.join()

    # --- consumer API ------------------------------------------------------

    def acquire(self, key: TargetKey, listener: Listener) -> Subscription:
        """
        Register ``listener`` on ``key``, creating the subscription if needed.

        An existing subscription replays its last-known value to the new
        listener before returning. A new one subscribes and reads the
        initial value in the background.

        Raises:
            RegistryClosedError: outside the init/shutdown window
        """
        if not self._running:
            raise RegistryClosedError(f"Cannot acquire {key!r}: registry is not running")

        entry = _ListenerEntry(listener)
        subscription = self._subscriptions.get(key)
        if subscription is None:
            subscription = Subscription(key)
            subscription.entries.append(entry)
            self._subscriptions[key] = subscription
            subscription.setup_task = self._tasks.spawn(self._open(subscription), f"subscribe {key}")
            logger.debug(f"Created subscription for {key}")
            return subscription

        subscription.entries.append(entry)
        logger.debug(f"Joined subscription for {key} (refcount={subscription.refcount})")
        if subscription.last is not None:
            self._call(subscription, entry, subscription.last)
        elif subscription.failed is not None:
            self._call(subscription, entry, None)
        return subscription

    def release(self, key: TargetKey, listener: Listener) -> bool:
        """
        Remove one registration of ``listener`` from ``key``.

        At refcount zero the subscription is marked torn down, removed from
        the map and unsubscribed in the background.

        Returns:
            True if a registration was removed
        """
        subscription = self._subscriptions.get(key)
        if subscription is None:
            return False
        entry = next((e for e in subscription.entries if e.listener == listener), None)
        if entry is None:
            return False

        entry.active = False
        subscription.entries.remove(entry)
        if subscription.entries:
            logger.debug(f"Left subscription for {key} (refcount={subscription.refcount})")
            return True

        del self._subscriptions[key]
        self._teardown(subscription)
        return True

    def rebind(self, old: Optional[TargetKey], new: TargetKey, listener: Listener) -> Subscription:
        """Move ``listener`` from ``old`` to ``new``: acquire first, then release."""
        if old == new:
            existing = self._subscriptions.get(new)
            if existing is not None:
                return existing
            return self.acquire(new, listener)
        subscription = self.acquire(new, listener)
        if old is not None:
            self.release(old, listener)
        logger.debug(f"Rebound listener {old} -> {new}")
        return subscription

    # --- introspection -----------------------------------------------------

    def get(self, key: TargetKey) -> Optional[Subscription]:
        return self._subscriptions.get(key)

    def refcount(self, key: TargetKey) -> int:
        subscription = self._subscriptions.get(key)
        return subscription.refcount if subscription else 0

    def keys(self) -> Iterator[TargetKey]:
        return iter(list(self._subscriptions))

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, key: TargetKey) -> bool:
        return key in self._subscriptions

    async def get_metrics(self) -> Dict[str, Any]:
        """Get comprehensive metrics"""
        metrics = self.metrics.get_summary()
        metrics.update({
            "active_subscriptions": len(self._subscriptions),
            "active_listeners": sum(s.refcount for s in self._subscriptions.values()),
            "pending_tasks": len(self._tasks),
        })
        return metrics

    # --- store side --------------------------------------------------------

    async def _open(self, subscription: Subscription) -> None:
        if subscription.torn_down:
            return
        entity_id, field_id = subscription.key
        self.metrics.subscribe_calls += 1
        try:
            subscription.handle = await self.store.subscribe(
                entity_id, field_id, partial(self._on_notification, subscription)
            )
        except Exception as e:
            self._fail(subscription, "subscribe", e)
            return

        # Released while the subscribe was in flight; _close unsubscribes.
        if subscription.torn_down:
            return

        try:
            initial = await self.store.read(entity_id, field_id)
        except Exception as e:
            self._fail(subscription, "read", e)
            return

        if not subscription.torn_down:
            self._apply(subscription, initial)

    def _fail(self, subscription: Subscription, operation: str, error: Exception) -> None:
        self.metrics.store_errors += 1
        subscription.failed = error
        if isinstance(error, StoreUnavailable):
            logger.warning(f"Store {operation} failed for {subscription.key}: {error}")
        else:
            logger.error(f"Unexpected store error during {operation} of {subscription.key}: {error!r}")
        if not subscription.torn_down and subscription.last is None:
            self._fan_out(subscription, None)

    def _on_notification(self, subscription: Subscription, notification: Notification) -> None:
        if subscription.torn_down:
            self.metrics.ignored_after_teardown += 1
            logger.debug(f"Ignored notification for torn-down subscription {subscription.key}")
            return
        self._apply(subscription, notification.current)

    def _apply(self, subscription: Subscription, value: FieldValue) -> None:
        last = subscription.last
        if last is not None and value.timestamp <= last.timestamp:
            self.metrics.stale_dropped += 1
            logger.debug(
                f"Dropped stale value for {subscription.key} "
                f"(timestamp {value.timestamp} <= {last.timestamp})"
            )
            return
        subscription.last = value
        subscription.failed = None
        subscription.notifications += 1
        self._fan_out(subscription, value)

    def _fan_out(self, subscription: Subscription, value: Optional[FieldValue]) -> None:
        # Snapshot: listeners may release themselves or others while we iterate.
        for entry in list(subscription.entries):
            if entry.active:
                self._call(subscription, entry, value)

    def _call(self, subscription: Subscription, entry: _ListenerEntry, value: Optional[FieldValue]) -> None:
        try:
            entry.listener(value)
            self.metrics.notifications_delivered += 1
        except Exception as e:
            self.metrics.listener_errors += 1
            logger.exception(f"Listener for {subscription.key} raised: {e}")

    def _teardown(self, subscription: Subscription) -> None:
        subscription.torn_down = True
        self._tasks.spawn(self._close(subscription), f"unsubscribe {subscription.key}")
        logger.debug(f"Tearing down subscription for {subscription.key}")

    async def _close(self, subscription: Subscription) -> None:
        if subscription.setup_task is not None and not subscription.setup_task.done():
            await asyncio.wait([subscription.setup_task])
        if subscription.handle is None:
            return
        self.metrics.unsubscribe_calls += 1
        try:
            await asyncio.wait_for(subscription.handle.unsubscribe(), self.unsubscribe_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Unsubscribe from {subscription.key} timed out after {self.unsubscribe_timeout}s")
        except StoreUnavailable as e:
            self.metrics.store_errors += 1
            logger.warning(f"Unsubscribe from {subscription.key} failed: {e}")


__all__ = ["Listener", "RegistryMetrics", "Subscription", "SubscriptionRegistry"]
