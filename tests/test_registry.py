"""
Subscription registry tests: deduplication, refcounts, teardown races,
stale-notification handling and rebinding.
"""

import pytest

from starbind.app.registry import SubscriptionRegistry
from starbind.core.errors import RegistryClosedError

KEY = ("E1", "Temperature")
OTHER = ("E2", "Temperature")


class Listener:
    def __init__(self):
        self.values = []

    def __call__(self, field_value):
        self.values.append(None if field_value is None else field_value.value)


class TestDeduplication:
    """One Subscription per resolved target"""

    @pytest.mark.asyncio
    async def test_shared_target_has_one_store_subscription(self, store, registry, settle):
        store.write("E1", "Temperature", 21)
        first, second = Listener(), Listener()

        registry.acquire(KEY, first)
        registry.acquire(KEY, second)
        await settle()

        assert len(registry) == 1
        assert registry.refcount(KEY) == 2
        assert store.subscribe_calls[KEY] == 1
        assert first.values == [21]
        assert second.values == [21]

    @pytest.mark.asyncio
    async def test_late_joiner_gets_last_value_synchronously(self, store, registry, settle):
        store.write("E1", "Temperature", 30)
        registry.acquire(KEY, Listener())
        await settle()

        late = Listener()
        registry.acquire(KEY, late)
        assert late.values == [30]

    @pytest.mark.asyncio
    async def test_fan_out_in_registration_order(self, store, registry, settle):
        order = []
        registry.acquire(KEY, lambda value: order.append("first"))
        registry.acquire(KEY, lambda value: order.append("second"))
        await settle()
        order.clear()

        store.write("E1", "Temperature", 1)
        await settle()
        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_unwritten_field_delivers_none(self, registry, settle):
        listener = Listener()
        registry.acquire(("E9", "Missing"), listener)
        await settle()
        assert listener.values == [None]


class TestRelease:
    """Teardown at refcount zero"""

    @pytest.mark.asyncio
    async def test_last_release_unsubscribes_exactly_once(self, store, registry, settle):
        first, second = Listener(), Listener()
        registry.acquire(KEY, first)
        registry.acquire(KEY, second)
        await settle()

        assert registry.release(KEY, first)
        await settle()
        assert store.unsubscribe_calls[KEY] == 0
        assert registry.refcount(KEY) == 1

        assert registry.release(KEY, second)
        await settle()
        assert store.unsubscribe_calls[KEY] == 1
        assert KEY not in registry
        assert store.live_subscriptions(*KEY) == 0

    @pytest.mark.asyncio
    async def test_no_delivery_after_release(self, store, registry, settle):
        listener = Listener()
        registry.acquire(KEY, listener)
        await settle()

        store.write("E1", "Temperature", 5)
        registry.release(KEY, listener)
        await settle()

        assert listener.values == [None]
        metrics = await registry.get_metrics()
        assert metrics["ignored_after_teardown"] == 1

    @pytest.mark.asyncio
    async def test_release_before_subscribe_completes(self, store, registry, settle):
        listener = Listener()
        registry.acquire(KEY, listener)
        registry.release(KEY, listener)
        await settle()

        assert listener.values == []
        assert store.unsubscribe_calls[KEY] == store.subscribe_calls[KEY]
        assert store.live_subscriptions(*KEY) == 0

    @pytest.mark.asyncio
    async def test_release_unknown_listener(self, registry):
        assert registry.release(KEY, Listener()) is False

    @pytest.mark.asyncio
    async def test_reacquire_after_teardown_creates_new_subscription(self, store, registry, settle):
        listener = Listener()
        registry.acquire(KEY, listener)
        await settle()
        registry.release(KEY, listener)
        registry.acquire(KEY, listener)
        await settle()

        assert registry.refcount(KEY) == 1
        assert store.subscribe_calls[KEY] == 2
        assert store.unsubscribe_calls[KEY] == 1
        assert store.live_subscriptions(*KEY) == 1


class TestOrdering:
    """Only strictly newer timestamps are applied"""

    @pytest.mark.asyncio
    async def test_same_or_older_timestamp_is_dropped(self, store, registry, settle):
        store.write("E1", "Temperature", 10, timestamp=100.0)
        listener = Listener()
        registry.acquire(KEY, listener)
        await settle()

        store.deliver("E1", "Temperature", 99, timestamp=100.0)
        store.deliver("E1", "Temperature", 98, timestamp=50.0)
        await settle()

        assert listener.values == [10]
        assert registry.get(KEY).last.value == 10
        metrics = await registry.get_metrics()
        assert metrics["stale_dropped"] == 2

    @pytest.mark.asyncio
    async def test_newer_timestamp_is_applied(self, store, registry, settle):
        store.write("E1", "Temperature", 10, timestamp=100.0)
        listener = Listener()
        registry.acquire(KEY, listener)
        await settle()

        store.deliver("E1", "Temperature", 11, timestamp=101.0, writer_id="plc-7")
        await settle()

        assert listener.values == [10, 11]
        assert registry.get(KEY).last.writer_id == "plc-7"


class TestRebind:
    """acquire(new) then release(old)"""

    @pytest.mark.asyncio
    async def test_rebind_moves_one_registration(self, store, registry, settle):
        stay, mover = Listener(), Listener()
        registry.acquire(KEY, stay)
        registry.acquire(KEY, mover)
        await settle()

        registry.rebind(KEY, OTHER, mover)
        assert registry.refcount(KEY) == 1
        assert registry.refcount(OTHER) == 1
        await settle()
        assert store.unsubscribe_calls[KEY] == 0

    @pytest.mark.asyncio
    async def test_rebind_to_same_target_is_a_no_op(self, store, registry, settle):
        listener = Listener()
        registry.acquire(KEY, listener)
        await settle()

        registry.rebind(KEY, KEY, listener)
        await settle()
        assert registry.refcount(KEY) == 1
        assert store.subscribe_calls[KEY] == 1
        assert store.unsubscribe_calls[KEY] == 0

    @pytest.mark.asyncio
    async def test_rebind_storm_leaves_consistent_refcounts(self, store, registry, settle):
        listener = Listener()
        registry.acquire(KEY, listener)
        for _ in range(10):
            registry.rebind(KEY, OTHER, listener)
            registry.rebind(OTHER, KEY, listener)
        await settle()

        assert registry.refcount(KEY) == 1
        assert registry.refcount(OTHER) == 0
        assert store.live_subscriptions(*KEY) == 1
        assert store.live_subscriptions(*OTHER) == 0


class TestFailuresAndLifecycle:
    """Store errors, listener errors and init/shutdown"""

    @pytest.mark.asyncio
    async def test_unavailable_store_fans_out_no_value(self, store, registry, settle):
        store.unavailable.add(KEY)
        listener = Listener()
        registry.acquire(KEY, listener)
        await settle()

        assert listener.values == [None]
        late = Listener()
        registry.acquire(KEY, late)
        assert late.values == [None]

    @pytest.mark.asyncio
    async def test_listener_errors_are_isolated(self, store, registry, settle):
        def broken(value):
            raise RuntimeError("boom")

        healthy = Listener()
        registry.acquire(KEY, broken)
        registry.acquire(KEY, healthy)
        await settle()

        assert healthy.values == [None]
        metrics = await registry.get_metrics()
        assert metrics["listener_errors"] == 1

    @pytest.mark.asyncio
    async def test_acquire_requires_init(self, store):
        registry = SubscriptionRegistry(store)
        with pytest.raises(RegistryClosedError):
            registry.acquire(KEY, Listener())

    @pytest.mark.asyncio
    async def test_shutdown_tears_everything_down(self, store):
        async with SubscriptionRegistry(store) as registry:
            registry.acquire(KEY, Listener())
            registry.acquire(OTHER, Listener())
            await registry.drain()
            assert store.live_subscriptions(*KEY) == 1

        assert len(registry) == 0
        assert store.live_subscriptions(*KEY) == 0
        assert store.live_subscriptions(*OTHER) == 0
        with pytest.raises(RegistryClosedError):
            registry.acquire(KEY, Listener())
