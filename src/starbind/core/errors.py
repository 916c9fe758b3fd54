"""
StarBind Core - Error Taxonomy

Exceptions raised by the binding engine. ``UnresolvedPath`` is deliberately
absent here: an unresolved hop is a steady state reported as a value
(see ``starbind.app.resolver``), not an exception.
"""

from typing import Any, Optional


class BindingError(Exception):
    """Base exception for binding engine errors"""
    pass


class InvalidPathSyntax(BindingError):
    """Raised when a binding expression cannot be parsed"""

    def __init__(self, expression: str, reason: str, position: Optional[int] = None):
        self.expression = expression
        self.reason = reason
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid binding expression {expression!r}{where}: {reason}")


class EvaluationError(BindingError):
    """Raised when an expression throws or produces a non-representable value"""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Failed to evaluate {expression!r}: {reason}")


class StoreUnavailable(BindingError):
    """Raised by a store adapter when a read or subscribe is rejected"""

    def __init__(self, entity_id: Any = None, field_id: Optional[str] = None, reason: str = "store unavailable"):
        self.entity_id = entity_id
        self.field_id = field_id
        self.reason = reason
        target = f" for {entity_id}.{field_id}" if field_id is not None else ""
        super().__init__(f"{reason}{target}")


class RegistryClosedError(BindingError):
    """Raised when the subscription registry is used outside its init/shutdown window"""
    pass


__all__ = [
    "BindingError", "InvalidPathSyntax", "EvaluationError",
    "StoreUnavailable", "RegistryClosedError",
]
