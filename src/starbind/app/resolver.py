"""
Path Resolver - Indirect Path Resolution

🧭 Graph-Dependent Rebinding:
Walks an indirect path such as ``Parent->Parent->Status`` from its root
entity through relation fields to a concrete ``(entity_id, field_id)``
target, and keeps that target current while the relations change.

Key Features:
- One-shot walks through the store's ``read`` primitive (``resolve``)
- ``PathWatch``: a live consumer that also subscribes to every intermediate
  relation and re-walks from the hop that changed
- Generation counter on every re-resolution; results of stale walks are dropped
- Null or list-valued relations resolve to ``UnresolvedPath``, never raise
- Hop cap so cyclic entity graphs cannot cause unbounded walks
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set, Tuple, Union

from ..core.errors import StoreUnavailable
from ..core.paths import FieldPath
from ..core.values import EntityId, EntityList, EntityReference, FieldValue, TargetKey
from ..store.base import StoreAdapter
from .registry import SubscriptionRegistry
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 16


@dataclass(frozen=True)
class ResolvedTarget:
    """Concrete field a path currently points to."""
    entity_id: EntityId
    field_id: str
    generation: int = 0

    @property
    def key(self) -> TargetKey:
        return (self.entity_id, self.field_id)


@dataclass(frozen=True)
class UnresolvedPath:
    """A path that cannot currently be resolved. A steady state, not an error."""
    path: FieldPath
    hop_index: int
    reason: str
    generation: int = 0


Resolution = Union[ResolvedTarget, UnresolvedPath]


def _reference(value: Any) -> Optional[EntityId]:
    if isinstance(value, EntityReference):
        return value.entity_id
    return None


def _hop_failure(path: FieldPath, hop_index: int, value: Any) -> Optional[str]:
    """Reason a relation value cannot be traversed, or None when it can."""
    if isinstance(value, EntityList):
        return f"'{path.hops[hop_index]}' is a list relation"
    if isinstance(value, EntityReference):
        return None if value.entity_id is not None else f"'{path.hops[hop_index]}' is null"
    if value is None:
        return f"'{path.hops[hop_index]}' is null"
    return f"'{path.hops[hop_index]}' is not a relation"


class PathWatch:
    """
    Live resolution of one path for one (binding, dependency-slot) pair.

    Holds a registry registration on every intermediate relation it has
    walked through and on the final target. ``on_value`` receives the final
    field's value, or None while the path is unresolved. ``on_state`` is
    called whenever ``resolving`` or ``settled`` may have changed.
    """

    def __init__(
        self,
        resolver: "PathResolver",
        path: FieldPath,
        on_value: Callable[[Optional[FieldValue]], None],
        on_state: Optional[Callable[["PathWatch"], None]] = None,
    ):
        if path.root is None:
            raise ValueError(f"Cannot watch unrooted path {path}")
        self.resolver = resolver
        self.path = path
        self.on_value = on_value
        self.on_state = on_state
        self.generation = 0
        self.resolutions = 0
        self.target: Optional[ResolvedTarget] = None
        self.unresolved: Optional[UnresolvedPath] = None
        self.resolving = False
        self.closed = False
        # entities[i] is the entity whose relation hops[i] is read; it has one
        # more element than the number of relations walked successfully.
        self._entities: List[EntityId] = [path.root]
        self._hop_keys: List[TargetKey] = []
        self._hop_listeners: List[Callable[[Optional[FieldValue]], None]] = [
            self._make_hop_listener(index) for index in range(len(path.relations))
        ]
        self._awaiting_value = False
        self._committing = False
        self._deferred_hop: Optional[int] = None
        # First hop of the walk in flight; a walk from a later hop would
        # start from entities that walk is about to replace.
        self._walk_start: Optional[int] = None

    @property
    def registry(self) -> SubscriptionRegistry:
        return self.resolver.registry

    @property
    def settled(self) -> bool:
        """Resolution finished and, when resolved, the target has delivered a value."""
        if self.closed or self.resolving:
            return False
        return self.unresolved is not None or (self.target is not None and not self._awaiting_value)

    @property
    def hop_keys(self) -> Tuple[TargetKey, ...]:
        return tuple(self._hop_keys)

    def start(self) -> None:
        """Begin the initial walk in the background."""
        self._rewalk(0)

    def close(self) -> None:
        """Release every held subscription. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self.generation += 1
        if self.target is not None:
            self.registry.release(self.target.key, self._on_final)
        for index, key in enumerate(self._hop_keys):
            self.registry.release(key, self._hop_listeners[index])
        self._hop_keys = []
        self.target = None
        self.resolver._forget(self)

    # --- walking -----------------------------------------------------------

    def _rewalk(self, hop_index: int) -> None:
        if self.closed:
            return
        self.generation += 1
        self.resolving = True
        self._walk_start = hop_index
        start_entity = self._entities[hop_index]
        self.resolver._tasks.spawn(
            self._walk(hop_index, start_entity, self.generation),
            f"resolve {self.path} from hop {hop_index}",
        )
        self._notify_state()

    async def _walk(self, hop_index: int, start_entity: EntityId, generation: int) -> None:
        path = self.path
        if len(path.hops) > self.resolver.max_hops:
            self.resolver._warn_hop_cap(path)
            self._commit([], generation, 0, "too many hops")
            return

        entities = self._entities[:hop_index] + [start_entity]
        for index in range(hop_index, len(path.relations)):
            try:
                field_value = await self.resolver.store.read(entities[index], path.relations[index])
            except StoreUnavailable as e:
                if self._stale(generation):
                    return
                logger.warning(f"Cannot resolve {path}: hop '{path.relations[index]}' unavailable ({e})")
                self._commit(entities, generation, index, f"store unavailable: {e.reason}")
                return
            except Exception as e:
                if self._stale(generation):
                    return
                logger.error(f"Cannot resolve {path}: reading hop '{path.relations[index]}' failed: {e!r}")
                self._commit(entities, generation, index, f"store error: {e!r}")
                return
            if self._stale(generation):
                return
            reason = _hop_failure(path, index, field_value.value)
            if reason is not None:
                self._commit(entities, generation, index, reason)
                return
            entities.append(field_value.value.entity_id)

        self._commit(entities, generation)

    def _stale(self, generation: int) -> bool:
        return self.closed or generation != self.generation

    def _commit(
        self,
        entities: List[EntityId],
        generation: int,
        failed_hop: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        if self._stale(generation):
            return
        registry = self.registry
        relations = self.path.relations
        self._committing = True
        try:
            self._entities = entities
            self.resolutions += 1
            old_hop_keys = self._hop_keys
            new_hop_keys = [
                (entities[index], relations[index])
                for index in range(min(len(entities), len(relations)))
            ]

            # Acquire new hop registrations before releasing the old ones.
            self._hop_keys = new_hop_keys
            for index, key in enumerate(new_hop_keys):
                if index >= len(old_hop_keys) or old_hop_keys[index] != key:
                    registry.acquire(key, self._hop_listeners[index])

            old_target = self.target
            if failed_hop is None:
                self.target = ResolvedTarget(entities[-1], self.path.field, generation)
                self.unresolved = None
                old_key = old_target.key if old_target else None
                if old_key != self.target.key:
                    self._awaiting_value = True
                    logger.debug(f"{self.path} resolved to {self.target.key} (generation {generation})")
                    registry.rebind(old_key, self.target.key, self._on_final)
            else:
                self.target = None
                self.unresolved = UnresolvedPath(self.path, failed_hop, reason, generation)
                self._awaiting_value = False
                if old_target is not None:
                    registry.release(old_target.key, self._on_final)
                logger.debug(f"{self.path} unresolved at hop {failed_hop}: {reason}")

            for index, key in enumerate(old_hop_keys):
                if index >= len(new_hop_keys) or new_hop_keys[index] != key:
                    registry.release(key, self._hop_listeners[index])

            self.resolving = False
            self._walk_start = None
        finally:
            self._committing = False

        if failed_hop is not None:
            self._deliver(None)
        deferred, self._deferred_hop = self._deferred_hop, None
        if deferred is not None:
            self._rewalk(deferred)
        else:
            self._notify_state()

    # --- listeners ---------------------------------------------------------

    def _make_hop_listener(self, index: int) -> Callable[[Optional[FieldValue]], None]:
        def on_hop(field_value: Optional[FieldValue]) -> None:
            self._on_hop(index, field_value)
        on_hop.__qualname__ = f"PathWatch.hop[{index}]"
        return on_hop

    def _on_hop(self, index: int, field_value: Optional[FieldValue]) -> None:
        if self.closed or index >= len(self._hop_keys):
            return
        reference = _reference(field_value.value) if field_value is not None else None
        known = self._entities[index + 1] if index + 1 < len(self._entities) else None
        if reference == known:
            return
        logger.debug(f"Relation {self._hop_keys[index]} of {self.path} changed: {known} -> {reference}")
        if self._committing:
            if self._deferred_hop is None or index < self._deferred_hop:
                self._deferred_hop = index
            return
        if self.resolving and self._walk_start is not None:
            index = min(index, self._walk_start)
        self._rewalk(index)

    def _on_final(self, field_value: Optional[FieldValue]) -> None:
        if self.closed:
            return
        self._awaiting_value = False
        self._deliver(field_value)
        self._notify_state()

    def _deliver(self, field_value: Optional[FieldValue]) -> None:
        try:
            self.on_value(field_value)
        except Exception as e:
            logger.exception(f"Value callback for {self.path} raised: {e}")

    def _notify_state(self) -> None:
        if self.on_state is not None and not self.closed:
            self.on_state(self)

    def __repr__(self) -> str:
        where = self.target.key if self.target else self.unresolved
        return f"PathWatch({self.path}, generation={self.generation}, {where})"


class PathResolver:
    """
    Resolves FieldPaths against the store.

    Intermediate-hop subscriptions go through the shared registry, so
    bindings that share a relation share its store subscription.
    """

    def __init__(self, store: StoreAdapter, registry: SubscriptionRegistry, max_hops: int = DEFAULT_MAX_HOPS):
        self.store = store
        self.registry = registry
        self.max_hops = max_hops
        self._tasks = BackgroundTasks("resolver")
        self._watches: Set[PathWatch] = set()
        self._hop_cap_warned: Set[Tuple[str, ...]] = set()

    async def resolve(self, path: FieldPath) -> Resolution:
        """One-shot walk without subscriptions."""
        if path.root is None:
            raise ValueError(f"Cannot resolve unrooted path {path}")
        if len(path.hops) > self.max_hops:
            self._warn_hop_cap(path)
            return UnresolvedPath(path, 0, "too many hops")
        current = path.root
        for index, relation in enumerate(path.relations):
            try:
                field_value = await self.store.read(current, relation)
            except StoreUnavailable as e:
                return UnresolvedPath(path, index, f"store unavailable: {e.reason}")
            reason = _hop_failure(path, index, field_value.value)
            if reason is not None:
                return UnresolvedPath(path, index, reason)
            current = field_value.value.entity_id
        return ResolvedTarget(current, path.field)

    def watch(
        self,
        path: FieldPath,
        on_value: Callable[[Optional[FieldValue]], None],
        on_state: Optional[Callable[[PathWatch], None]] = None,
    ) -> PathWatch:
        """Create a live watch for ``path``; call ``start()`` on it to begin resolving."""
        watch = PathWatch(self, path, on_value, on_state)
        self._watches.add(watch)
        return watch

    def _forget(self, watch: PathWatch) -> None:
        self._watches.discard(watch)

    def _warn_hop_cap(self, path: FieldPath) -> None:
        if path.hops not in self._hop_cap_warned:
            self._hop_cap_warned.add(path.hops)
            logger.warning(f"Path {path.text} has {len(path.hops)} hops, more than the limit of {self.max_hops}")

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    @property
    def idle(self) -> bool:
        return self._tasks.idle

    @property
    def failures(self) -> int:
        """Path walks that raised unexpectedly."""
        return self._tasks.failures

    async def drain(self) -> None:
        await self._tasks.join()

    def close_all(self) -> None:
        for watch in list(self._watches):
            watch.close()


__all__ = [
    "DEFAULT_MAX_HOPS", "ResolvedTarget", "UnresolvedPath", "Resolution",
    "PathWatch", "PathResolver",
]
