"""
StarBind Core - Field Values

Value records exchanged with the entity store, the entity reference wrappers
used by relation fields, and the unresolved sentinel delivered whenever a
path cannot currently be resolved or a dependency has no value yet.
"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

EntityId = Union[int, str]
TargetKey = Tuple[EntityId, str]


class _Unresolved:
    """Defined-but-falsy placeholder for a value that is not available."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "<unresolved>"

    def __reduce__(self):
        return (_Unresolved, ())


UNRESOLVED = _Unresolved()


def is_unresolved(value: Any) -> bool:
    return value is UNRESOLVED


@dataclass(frozen=True)
class EntityReference:
    """Value of a single-reference relation field."""
    entity_id: Optional[EntityId] = None


@dataclass(frozen=True)
class EntityList:
    """Value of a list-reference relation field (not traversable by paths)."""
    entity_ids: Tuple[EntityId, ...] = ()


@dataclass(frozen=True)
class FieldValue:
    """
    One stored field value as reported by the store.

    Mirrors the store's ``{value, timestamp, writerId}`` record. The
    timestamp orders deliveries within a single subscription.
    """
    value: Any
    timestamp: float
    writer_id: Optional[EntityId] = None


def extract_value(value: Any) -> Any:
    """Unwrap relation wrappers into plain ids before evaluation."""
    if isinstance(value, EntityReference):
        return value.entity_id
    if isinstance(value, EntityList):
        return list(value.entity_ids)
    return value


def same_value(left: Any, right: Any) -> bool:
    """Value equality that does not conflate ``True`` with ``1`` or ``1`` with ``1.0``."""
    if left is right:
        return True
    if type(left) is not type(right):
        return False
    return bool(left == right)


__all__ = [
    "EntityId", "TargetKey", "UNRESOLVED", "is_unresolved",
    "EntityReference", "EntityList", "FieldValue",
    "extract_value", "same_value",
]
