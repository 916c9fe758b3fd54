"""
StarBind Store Layer - Base Classes

This module provides the abstract interface the binding engine consumes from
an entity store: one-shot reads and subscribe/notify, both keyed by
``(entity_id, field_id)``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..core.values import EntityId, FieldValue


@dataclass
class Notification:
    """Change notification delivered to a store subscriber."""
    entity_id: EntityId
    field_id: str
    current: FieldValue
    previous: Optional[FieldValue] = None
    context: Dict[str, Any] = field(default_factory=dict)


NotificationCallback = Callable[[Notification], None]


class SubscriptionHandle(ABC):
    """Handle returned by ``StoreAdapter.subscribe``."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivering notifications to the subscribed callback."""
        pass


class StoreAdapter(ABC):
    """
    Abstract base class for entity stores.

    Implementations may complete reads, subscribes and unsubscribes in any
    order relative to each other and to notification delivery. A rejected
    call raises ``StoreUnavailable``; retrying is the adapter's business.
    """

    @abstractmethod
    async def read(self, entity_id: EntityId, field_id: str) -> FieldValue:
        """
        Read the current value of one field.

        Args:
            entity_id: Entity that owns the field
            field_id: Field name on that entity

        Returns:
            FieldValue; a field that was never written reads as value ``None``
            with timestamp ``0``
        """
        pass

    @abstractmethod
    async def subscribe(
        self, entity_id: EntityId, field_id: str, callback: NotificationCallback
    ) -> SubscriptionHandle:
        """
        Start delivering change notifications for one field to ``callback``.

        Returns:
            SubscriptionHandle whose ``unsubscribe()`` ends the delivery
        """
        pass


__all__ = ["Notification", "NotificationCallback", "SubscriptionHandle", "StoreAdapter"]
