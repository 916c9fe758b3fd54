"""
Binding Runtime - Per-Binding State Machine

⚡ From Store Notifications to Component Values:
A ``BindingRuntime`` owns one active binding. It watches every dependency
path through the resolver, recomputes the output whenever a dependency value
changes, and pushes the output to the owning component only when it
actually changed.

States::

    UNBOUND -> RESOLVING -> BOUND -> (RESOLVING on graph change) -> BOUND -> UNBOUND

Evaluation errors are logged and recorded, and the previous output is kept;
nothing but values or ``UNRESOLVED`` ever crosses the ``on_value_change``
boundary.
"""

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from itertools import count
from typing import Any, Callable, Deque, Dict, List, Optional

from ..core.errors import EvaluationError
from ..core.evaluator import ExpressionEvaluator
from ..core.paths import FieldPath, ParsedExpression
from ..core.spec import BindingSpec
from ..core.values import UNRESOLVED, EntityId, FieldValue, extract_value, same_value
from .resolver import PathResolver, PathWatch

logger = logging.getLogger(__name__)

ValueCallback = Callable[[Any], None]

DEFAULT_MAX_RECORDED_ERRORS = 50

_NOTHING = object()
_runtime_ids = count(1)


class RuntimeState(Enum):
    UNBOUND = "unbound"
    RESOLVING = "resolving"
    BOUND = "bound"


class DependencySlot:
    """One distinct dependency path of a binding and its current value."""

    def __init__(self, path: FieldPath):
        self.path = path
        self.value: Any = UNRESOLVED
        self.watch: Optional[PathWatch] = None

    @property
    def name(self) -> str:
        return self.path.text

    @property
    def settled(self) -> bool:
        return self.watch is not None and self.watch.settled


class BindingRuntime:
    """
    Active binding of one component property.

    Construction parses and compiles the expression (and transform), so an
    invalid binding raises ``InvalidPathSyntax`` before anything is
    subscribed. ``activate()`` starts resolution; ``deactivate()`` is the
    cancellation point and may be called any number of times.
    """

    def __init__(
        self,
        spec: BindingSpec,
        root: EntityId,
        resolver: PathResolver,
        evaluator: ExpressionEvaluator,
        on_value_change: Optional[ValueCallback] = None,
        max_recorded_errors: int = DEFAULT_MAX_RECORDED_ERRORS,
    ):
        self.id = next(_runtime_ids)
        self.spec = spec
        self.root = root
        self.resolver = resolver
        self.evaluator = evaluator
        self.on_value_change = on_value_change

        self.expression: ParsedExpression = spec.parse()
        self.transform: Optional[ParsedExpression] = spec.parse_transform()
        evaluator.check(self.expression)
        if self.transform is not None:
            evaluator.check(self.transform)

        self.slots: Dict[str, DependencySlot] = {}
        for parsed in (self.expression, self.transform):
            if parsed is None:
                continue
            for path in parsed.paths:
                if path.text not in self.slots:
                    self.slots[path.text] = DependencySlot(path.rooted_at(root))

        self.state = RuntimeState.UNBOUND
        self.output: Any = _NOTHING
        self.error = False
        self.last_evaluated: Optional[float] = None
        self.updates = 0
        self.errors: Deque[Dict[str, Any]] = deque(maxlen=max_recorded_errors)
        self._token = 0
        self._activated = False
        self._bound_once = False
        self._closed = False
        self._ready = asyncio.Event()

    # --- lifecycle ---------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._activated and self.state is not RuntimeState.UNBOUND

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def key(self) -> str:
        return self.spec.key

    @property
    def value(self) -> Any:
        """Last output pushed to the component, ``UNRESOLVED`` before the first push."""
        return UNRESOLVED if self.output is _NOTHING else self.output

    @property
    def targets(self) -> Dict[str, Any]:
        """Current ResolvedTarget (or UnresolvedPath) per dependency."""
        return {
            name: (slot.watch.target or slot.watch.unresolved) if slot.watch else None
            for name, slot in self.slots.items()
        }

    @property
    def watches(self) -> List[PathWatch]:
        return [slot.watch for slot in self.slots.values() if slot.watch is not None]

    async def activate(self) -> None:
        """Start resolving every dependency path. Called once, from the event loop."""
        if self._activated:
            return
        self._activated = True
        self._token += 1
        token = self._token
        self.state = RuntimeState.RESOLVING
        logger.debug(f"Activating binding {self.key} on {self.root} ({len(self.slots)} dependencies)")

        for slot in self.slots.values():
            slot.watch = self.resolver.watch(
                slot.path,
                on_value=lambda field_value, slot=slot: self._on_slot_value(token, slot, field_value),
                on_state=lambda watch: self._on_watch_state(token),
            )
        for slot in self.slots.values():
            if self._token != token:
                return
            slot.watch.start()
        self._update_state()

    def deactivate(self) -> None:
        """Release every held subscription and discard runtime state. Idempotent."""
        if self._closed:
            return
        self._closed = True
        # A pending activate() becomes a no-op.
        self._activated = True
        self._token += 1
        self.state = RuntimeState.UNBOUND
        for slot in self.slots.values():
            if slot.watch is not None:
                slot.watch.close()
                slot.watch = None
            slot.value = UNRESOLVED
        self._ready.set()
        logger.debug(f"Deactivated binding {self.key} on {self.root}")

    async def ready(self) -> "BindingRuntime":
        """Wait until the binding is first bound (or deactivated)."""
        await self._ready.wait()
        return self

    # --- callbacks ---------------------------------------------------------

    def _on_slot_value(self, token: int, slot: DependencySlot, field_value: Optional[FieldValue]) -> None:
        if token != self._token:
            return
        slot.value = UNRESOLVED if field_value is None else extract_value(field_value.value)
        if self._bound_once:
            self.recompute()

    def _on_watch_state(self, token: int) -> None:
        if token != self._token:
            return
        self._update_state()

    def _update_state(self) -> None:
        if self.state is RuntimeState.UNBOUND:
            return
        settled = all(slot.settled for slot in self.slots.values())
        previous = self.state
        self.state = RuntimeState.BOUND if settled else RuntimeState.RESOLVING
        if self.state is previous:
            return
        logger.debug(f"Binding {self.key} on {self.root}: {previous.value} -> {self.state.value}")
        if self.state is RuntimeState.BOUND:
            first = not self._bound_once
            self._bound_once = True
            if first:
                self.recompute()
                self._ready.set()

    # --- evaluation --------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Current dependency values keyed by path text."""
        return {name: slot.value for name, slot in self.slots.items()}

    def recompute(self) -> None:
        """Evaluate against the current snapshot and push the output if it changed."""
        if self.state is RuntimeState.UNBOUND:
            return
        token = self._token
        values = self.snapshot()
        try:
            result = self.evaluator.evaluate_parsed(self.expression, values)
            if self.transform is not None:
                result = self.evaluator.transform(self.transform, result, values)
        except EvaluationError as e:
            self._record_error(e)
            return

        self.error = False
        self.last_evaluated = time.time()
        if self.output is not _NOTHING and same_value(result, self.output):
            return
        self.output = result
        self.updates += 1
        if self.on_value_change is None or token != self._token:
            return
        try:
            self.on_value_change(result)
        except Exception as e:
            logger.exception(f"Value change callback for {self.key} raised: {e}")

    def _record_error(self, error: EvaluationError) -> None:
        self.error = True
        self.errors.append({
            "context": f"{self.key}: {error.expression}",
            "error": error.reason,
            "timestamp": time.time(),
        })
        logger.warning(f"Binding {self.key} on {self.root}: {error}")

    def __repr__(self) -> str:
        return f"BindingRuntime({self.key!r}, root={self.root!r}, state={self.state.value})"


__all__ = ["RuntimeState", "DependencySlot", "BindingRuntime", "DEFAULT_MAX_RECORDED_ERRORS"]
