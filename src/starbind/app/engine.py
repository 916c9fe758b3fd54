"""
Binding Engine - Upward Interface

🚀 Live Data Binding for Visual Components:
The engine is what the presentation layer talks to. It owns the
subscription registry, the path resolver and the expression evaluator for
one session and hands out ``BindingRuntime`` handles.

Key Features:
- ``activate(spec, root, on_change)`` returns the handle before any value is
  delivered; resolution runs in the background
- ``deactivate(handle)`` is synchronous and idempotent
- Accepts persisted ``{componentId, property, expression, mode, transform?}``
  records verbatim
- ``BindingGroup`` activates a faceplate's bindings for one root entity and
  keeps a ``component:property`` value snapshot
- ``drain()`` waits until no store call, resolution or delivery is pending
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..core.errors import InvalidPathSyntax, RegistryClosedError
from ..core.evaluator import ExpressionEvaluator
from ..core.spec import BindingSpec
from ..core.values import EntityId
from ..store.base import StoreAdapter
from .configurator import EngineConfig
from .registry import SubscriptionRegistry
from .resolver import PathResolver
from .runtime import BindingRuntime, ValueCallback
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

SpecLike = Union[BindingSpec, Mapping[str, Any]]


def _as_spec(spec: SpecLike) -> BindingSpec:
    if isinstance(spec, BindingSpec):
        return spec
    return BindingSpec.model_validate(dict(spec))


class BindingEngine:
    """
    Session-scoped binding engine.

    Example:
        ```python
        store = InMemoryStore()
        async with BindingEngine(store) as engine:
            handle = engine.activate(
                {"componentId": "lamp", "property": "fill", "expression": "Parent->Status"},
                root="E1",
                on_change=print,
            )
            await handle.ready()
            ...
            engine.deactivate(handle)
        ```
    """

    def __init__(self, store: StoreAdapter, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or EngineConfig()
        self.registry = SubscriptionRegistry(store, self.config.registry.unsubscribe_timeout)
        self.resolver = PathResolver(store, self.registry, self.config.resolver.max_hops)
        self.evaluator = ExpressionEvaluator(
            max_depth=self.config.evaluator.max_depth,
            max_length=self.config.evaluator.max_expression_length,
            cache_size=self.config.evaluator.cache_size,
        )
        self._runtimes: Dict[int, BindingRuntime] = {}
        self._tasks = BackgroundTasks("engine")
        self._running = False

    # --- lifecycle ---------------------------------------------------------

    async def init(self) -> "BindingEngine":
        await self.registry.init()
        self._running = True
        logger.info("Binding engine started")
        return self

    async def shutdown(self) -> None:
        """Deactivate every binding and tear down all subscriptions."""
        if not self._running:
            return
        self._running = False
        runtimes = list(self._runtimes.values())
        for runtime in runtimes:
            runtime.deactivate()
        self._runtimes.clear()
        self.resolver.close_all()
        await self._tasks.join()
        await self.resolver.drain()
        await self.registry.shutdown()
        logger.info(f"Binding engine stopped ({len(runtimes)} bindings deactivated)")

    async def __aenter__(self) -> "BindingEngine":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def running(self) -> bool:
        return self._running

    # --- upward interface --------------------------------------------------

    def activate(
        self,
        spec: SpecLike,
        root: EntityId,
        on_change: Optional[ValueCallback] = None,
    ) -> BindingRuntime:
        """
        Activate a binding on ``root``.

        ``on_change`` is never called before this method has returned.

        Args:
            spec: BindingSpec or a persisted binding record
            root: Entity the binding's paths are rooted at
            on_change: Receives each new output value (or ``UNRESOLVED``)

        Returns:
            BindingRuntime handle for ``deactivate``

        Raises:
            InvalidPathSyntax: the expression or transform is malformed
            pydantic.ValidationError: the persisted record is malformed
            RegistryClosedError: the engine is not running
        """
        if not self._running:
            raise RegistryClosedError("Cannot activate bindings: engine is not running")
        runtime = BindingRuntime(
            _as_spec(spec),
            root,
            self.resolver,
            self.evaluator,
            on_change,
            max_recorded_errors=self.config.runtime.max_recorded_errors,
        )
        self._runtimes[runtime.id] = runtime
        self._tasks.spawn(runtime.activate(), f"activate {runtime.key}")
        return runtime

    def deactivate(self, runtime: BindingRuntime) -> None:
        """Deactivate a binding. Safe to call more than once."""
        runtime.deactivate()
        self._runtimes.pop(runtime.id, None)

    def group(
        self,
        root: EntityId,
        records: Iterable[SpecLike],
        on_change: Optional[Callable[[str, Any], None]] = None,
    ) -> "BindingGroup":
        """Activate a set of bindings for one root entity."""
        return BindingGroup(self, root, records, on_change).activate()

    # --- introspection -----------------------------------------------------

    def _live(self) -> List[BindingRuntime]:
        # Runtimes deactivated directly, not through the engine, are dropped here.
        for runtime_id in [key for key, runtime in self._runtimes.items() if runtime.closed]:
            del self._runtimes[runtime_id]
        return list(self._runtimes.values())

    @property
    def runtimes(self) -> List[BindingRuntime]:
        return self._live()

    def runtime_errors(self) -> List[Dict[str, Any]]:
        """Recorded evaluation errors of every active binding, oldest first."""
        errors = [error for runtime in self._live() for error in runtime.errors]
        return sorted(errors, key=lambda error: error["timestamp"])

    @property
    def idle(self) -> bool:
        return (
            self._tasks.idle
            and self.resolver.idle
            and self.registry.idle
            and not getattr(self.store, "pending", 0)
        )

    async def drain(self) -> None:
        """Wait until no store call, resolution or notification is pending."""
        while True:
            await asyncio.sleep(0)
            flush = getattr(self.store, "flush", None)
            if flush is not None:
                await flush()
            await self._tasks.join()
            await self.resolver.drain()
            await self.registry.drain()
            if self.idle:
                return

    async def get_metrics(self) -> Dict[str, Any]:
        runtimes = self._live()
        metrics = await self.registry.get_metrics()
        metrics.update({
            "active_bindings": len(runtimes),
            "active_watches": self.resolver.active_watches,
            "recorded_errors": sum(len(runtime.errors) for runtime in runtimes),
            "background_failures": self._tasks.failures + self.resolver.failures + self.registry.failures,
        })
        return metrics


class BindingGroup:
    """
    The bindings of one faceplate instance, rooted at one entity.

    Records that fail validation or parsing are collected in ``errors`` and
    skipped; the rest activate. ``values`` maps ``component:property`` to the
    latest delivered value.
    """

    def __init__(
        self,
        engine: BindingEngine,
        root: EntityId,
        records: Iterable[SpecLike],
        on_change: Optional[Callable[[str, Any], None]] = None,
    ):
        self.engine = engine
        self.root = root
        self.records = list(records)
        self.on_change = on_change
        self.values: Dict[str, Any] = {}
        self.errors: List[Dict[str, Any]] = []
        self.runtimes: Dict[str, BindingRuntime] = {}

    def activate(self) -> "BindingGroup":
        for record in self.records:
            try:
                spec = _as_spec(record)
                runtime = self.engine.activate(spec, self.root, self._listener(spec.key))
            except (ValidationError, InvalidPathSyntax) as e:
                self.errors.append({"binding": record, "error": str(e)})
                logger.warning(f"Skipping invalid binding {record!r} on {self.root}: {e}")
                continue
            previous = self.runtimes.get(spec.key)
            if previous is not None:
                logger.warning(f"Binding {spec.key} on {self.root} is defined twice; keeping the last one")
                self.engine.deactivate(previous)
            self.runtimes[spec.key] = runtime
        return self

    def _listener(self, key: str) -> ValueCallback:
        def on_value(value: Any) -> None:
            self.values[key] = value
            if self.on_change is not None:
                self.on_change(key, value)
        return on_value

    async def ready(self) -> "BindingGroup":
        await asyncio.gather(*(runtime.ready() for runtime in self.runtimes.values()))
        return self

    def deactivate(self) -> None:
        for runtime in self.runtimes.values():
            self.engine.deactivate(runtime)
        self.runtimes.clear()

    def __len__(self) -> int:
        return len(self.runtimes)


__all__ = ["BindingEngine", "BindingGroup"]
