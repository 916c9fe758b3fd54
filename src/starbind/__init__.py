"""
StarBind - Live Data Binding for Faceplate Components

Binds visual component properties to fields of an external entity store.
Binding expressions may follow relations (``Parent->Parent->Status``) or
compute values (``Temperature > 80 ? 'red' : 'green'``); the engine resolves
them, shares one store subscription per resolved field, and pushes each
changed value to its component.
"""

from .core import (
    UNRESOLVED,
    BindingError,
    BindingMode,
    BindingSpec,
    EntityList,
    EntityReference,
    EvaluationError,
    ExpressionEvaluator,
    FieldPath,
    FieldValue,
    InvalidPathSyntax,
    RegistryClosedError,
    StoreUnavailable,
    evaluate,
    extract_dependencies,
    is_unresolved,
    load_bindings,
    parse_expression,
)
from .store import InMemoryStore, Notification, StoreAdapter, SubscriptionHandle
from .app import (
    BindingEngine,
    BindingGroup,
    BindingRuntime,
    EngineConfig,
    Environment,
    PathResolver,
    PathWatch,
    ResolvedTarget,
    RuntimeState,
    SubscriptionRegistry,
    UnresolvedPath,
    configure_logging,
)

__version__ = "0.1.0"

__all__ = [
    # Engine
    'BindingEngine',
    'BindingGroup',
    'BindingRuntime',
    'RuntimeState',
    'SubscriptionRegistry',
    'PathResolver',
    'PathWatch',
    'ResolvedTarget',
    'UnresolvedPath',

    # Bindings
    'BindingSpec',
    'BindingMode',
    'FieldPath',
    'load_bindings',
    'parse_expression',
    'extract_dependencies',
    'ExpressionEvaluator',
    'evaluate',

    # Values
    'UNRESOLVED',
    'is_unresolved',
    'FieldValue',
    'EntityReference',
    'EntityList',

    # Store
    'StoreAdapter',
    'SubscriptionHandle',
    'Notification',
    'InMemoryStore',

    # Errors
    'BindingError',
    'InvalidPathSyntax',
    'EvaluationError',
    'StoreUnavailable',
    'RegistryClosedError',

    # Configuration
    'EngineConfig',
    'Environment',
    'configure_logging',
]
