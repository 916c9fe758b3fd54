"""
End-to-end engine tests: the upward interface, subscription sharing,
graph-dependent rebinding and faceplate groups.
"""

import pytest
from pydantic import ValidationError

from starbind import BindingEngine, EngineConfig, Environment, InMemoryStore
from starbind.core.errors import InvalidPathSyntax, RegistryClosedError
from starbind.core.values import UNRESOLVED, EntityReference


def record(expression, mode=None, component="lamp", prop="fill"):
    data = {"componentId": component, "property": prop, "expression": expression}
    if mode:
        data["mode"] = mode
    return data


@pytest.fixture
def plant(store):
    """E1 is a pump whose Parent is E2; E3 is a second, offline site."""
    store.set_entity("E1", Parent=EntityReference("E2"), Temperature=21)
    store.set_entity("E2", Status="Online")
    store.set_entity("E3", Status="Offline")
    return store


class TestUpwardInterface:
    """activate / deactivate"""

    @pytest.mark.asyncio
    async def test_on_change_is_never_called_inside_activate(self, engine, plant, recorder):
        runtime = engine.activate(record("Temperature", "field"), "E1", recorder)
        assert recorder.values == []
        assert runtime in engine.runtimes

        await engine.drain()
        assert recorder.values == [21]

    @pytest.mark.asyncio
    async def test_invalid_path_raises_from_activate(self, engine):
        with pytest.raises(InvalidPathSyntax):
            engine.activate(record("Parent->", "field"), "E1")
        assert engine.runtimes == []
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_malformed_record_raises_validation_error(self, engine):
        with pytest.raises(ValidationError):
            engine.activate({"componentId": "lamp", "expression": "A"}, "E1")

    @pytest.mark.asyncio
    async def test_activate_requires_a_running_engine(self, store):
        engine = BindingEngine(store)
        with pytest.raises(RegistryClosedError):
            engine.activate(record("A"), "E1")

    @pytest.mark.asyncio
    async def test_shutdown_releases_every_subscription(self, plant):
        async with BindingEngine(plant, EngineConfig.for_environment(Environment.TESTING)) as engine:
            engine.activate(record("Parent->Status"), "E1")
            engine.activate(record("Temperature", component="gauge"), "E1")
            await engine.drain()
            assert plant.live_subscriptions("E2", "Status") == 1

        assert not engine.running
        assert engine.runtimes == []
        for key in [("E1", "Parent"), ("E2", "Status"), ("E1", "Temperature")]:
            assert plant.live_subscriptions(*key) == 0
            assert plant.unsubscribe_calls[key] == plant.subscribe_calls[key]


class TestSubscriptionSharing:
    """Deduplication and exactly-once teardown across bindings"""

    @pytest.mark.asyncio
    async def test_two_bindings_share_one_store_subscription(self, engine, plant):
        first = engine.activate(record("Temperature", "field", component="gauge"), "E1")
        second = engine.activate(record("Temperature > 80 ? 'red' : 'green'", "script"), "E1")
        await engine.drain()

        key = ("E1", "Temperature")
        assert engine.registry.refcount(key) == 2
        assert plant.subscribe_calls[key] == 1

        engine.deactivate(first)
        await engine.drain()
        assert plant.unsubscribe_calls[key] == 0

        engine.deactivate(second)
        await engine.drain()
        assert plant.unsubscribe_calls[key] == 1
        assert key not in engine.registry

    @pytest.mark.asyncio
    async def test_replayed_or_older_notifications_do_not_recompute(self, engine, plant, recorder):
        runtime = engine.activate(record("Temperature", "field"), "E1", recorder)
        await engine.drain()
        timestamp = plant.value("E1", "Temperature").timestamp

        plant.deliver("E1", "Temperature", 99, timestamp=timestamp)
        plant.deliver("E1", "Temperature", 98, timestamp=timestamp - 1)
        await engine.drain()

        assert recorder.values == [21]
        assert runtime.updates == 1

    @pytest.mark.asyncio
    async def test_metrics(self, engine, plant):
        engine.activate(record("Parent->Status"), "E1")
        engine.activate(record("Temperature", component="gauge"), "E1")
        await engine.drain()

        metrics = await engine.get_metrics()
        assert metrics["active_bindings"] == 2
        assert metrics["active_watches"] == 2
        assert metrics["active_subscriptions"] == 3
        assert metrics["subscribe_calls"] == 3
        assert metrics["recorded_errors"] == 0
        assert metrics["background_failures"] == 0

    @pytest.mark.asyncio
    async def test_runtime_deactivated_directly_leaves_the_engine(self, engine, plant):
        runtime = engine.activate(record("Temperature", "field"), "E1")
        await engine.drain()

        runtime.deactivate()
        await engine.drain()

        assert runtime.closed
        assert engine.runtimes == []
        metrics = await engine.get_metrics()
        assert metrics["active_bindings"] == 0
        assert metrics["active_subscriptions"] == 0


class TestGraphDependentRebinding:
    """Relation changes retarget dependent bindings"""

    @pytest.mark.asyncio
    async def test_parent_status_follows_the_relation(self, engine, plant, recorder):
        runtime = engine.activate(record("Parent->Status", "field"), "E1", recorder)
        await engine.drain()
        assert recorder.values == ["Online"]

        plant.write("E1", "Parent", EntityReference("E3"))
        await engine.drain()

        assert recorder.values == ["Online", "Offline"]
        assert plant.unsubscribe_calls[("E2", "Status")] == 1
        assert engine.registry.refcount(("E3", "Status")) == 1
        [watch] = runtime.watches
        assert watch.resolutions == 2

    @pytest.mark.asyncio
    async def test_old_target_writes_are_ignored_after_rebind(self, engine, plant, recorder):
        engine.activate(record("Parent->Status", "field"), "E1", recorder)
        await engine.drain()
        plant.write("E1", "Parent", EntityReference("E3"))
        await engine.drain()

        plant.write("E2", "Status", "Maintenance")
        await engine.drain()
        assert recorder.last == "Offline"

    @pytest.mark.asyncio
    async def test_hop_cap_from_configuration(self, plant, recorder):
        config = EngineConfig.from_dict({"environment": "testing", "resolver": {"max_hops": 1}})
        async with BindingEngine(plant, config) as engine:
            engine.activate(record("Parent->Status", "field"), "E1", recorder)
            await engine.drain()
            assert recorder.values == [UNRESOLVED]
            assert len(engine.registry) == 0


class TestScriptBindings:
    """Scripts over unresolved and live values"""

    @pytest.mark.asyncio
    async def test_never_written_dependency_evaluates_to_the_falsy_branch(self, engine, recorder):
        engine.activate(record("Temperature > 80 ? 'red' : 'green'", "script"), "E7", recorder)
        await engine.drain()
        assert recorder.values == ["green"]

        engine.store.write("E7", "Temperature", 85)
        await engine.drain()
        assert recorder.values == ["green", "red"]

    @pytest.mark.asyncio
    async def test_indirect_dependencies_in_scripts(self, engine, plant, recorder):
        plant.write("E2", "Temperature", 30)
        engine.activate(record("Temperature + Parent->Temperature", "script"), "E1", recorder)
        await engine.drain()
        assert recorder.values == [51]

    @pytest.mark.asyncio
    async def test_unavailable_store_degrades_to_unresolved(self, recorder):
        store = InMemoryStore()
        store.unavailable.add(("E1", "Temperature"))
        async with BindingEngine(store, EngineConfig.for_environment(Environment.TESTING)) as engine:
            engine.activate(record("Temperature > 80 ? 'red' : 'green'", "script"), "E1", recorder)
            await engine.drain()
            assert recorder.values == ["green"]


class TestBindingGroup:
    """Faceplate instances"""

    @pytest.mark.asyncio
    async def test_group_values_and_errors(self, engine, plant):
        changes = []
        group = engine.group("E1", [
            record("Parent->Status", "field", component="lamp", prop="text"),
            record("Temperature > 80 ? 'red' : 'green'", "script", component="lamp", prop="fill"),
            record("'Pump'", component="title", prop="text"),
            record("Parent->", "field", component="broken", prop="text"),
            {"property": "missing-component", "expression": "A"},
        ], on_change=lambda key, value: changes.append(key))
        await group.ready()
        await engine.drain()

        assert len(group) == 3
        assert len(group.errors) == 2
        assert group.values == {"lamp:text": "Online", "lamp:fill": "green", "title:text": "Pump"}
        assert sorted(changes) == ["lamp:fill", "lamp:text", "title:text"]

        group.deactivate()
        await engine.drain()
        assert engine.runtimes == []
        assert len(engine.registry) == 0

    @pytest.mark.asyncio
    async def test_duplicate_bindings_keep_the_last(self, engine, plant):
        group = engine.group("E1", [
            record("'first'", component="lamp", prop="text"),
            record("'second'", component="lamp", prop="text"),
        ])
        await engine.drain()

        assert len(group) == 1
        assert len(engine.runtimes) == 1
        assert group.values == {"lamp:text": "second"}
