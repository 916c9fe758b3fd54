"""
Shared fixtures for StarBind tests.

Everything runs against the in-memory store. ``settle`` waits until the
engine (or registry) has no pending store call, resolution or delivery.
"""

import pytest
import pytest_asyncio

from starbind import BindingEngine, EngineConfig, Environment, InMemoryStore, SubscriptionRegistry
from starbind.app import PathResolver


class ValueRecorder:
    """Collects values pushed to ``on_change`` callbacks."""

    def __init__(self):
        self.values = []

    def __call__(self, value):
        self.values.append(value)

    @property
    def last(self):
        return self.values[-1]

    def __len__(self):
        return len(self.values)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest_asyncio.fixture
async def registry(store):
    registry = SubscriptionRegistry(store)
    await registry.init()
    yield registry
    await registry.shutdown()


@pytest.fixture
def resolver(store, registry):
    return PathResolver(store, registry, max_hops=8)


@pytest_asyncio.fixture
async def engine(store):
    config = EngineConfig.for_environment(Environment.TESTING)
    engine = BindingEngine(store, config)
    await engine.init()
    yield engine
    await engine.shutdown()


@pytest.fixture
def recorder():
    return ValueRecorder()


@pytest.fixture
def settle(store, registry, resolver):
    """Flush store deliveries and background tasks until nothing is pending."""
    async def settle():
        while True:
            await store.flush()
            await resolver.drain()
            await registry.drain()
            if not store.pending and registry.idle and resolver.idle:
                return
    return settle
