"""
StarBind Application Layer

Session-scoped services that turn binding specs into live values: the
subscription registry, the path resolver, per-binding runtimes, the engine
facade and configuration.
"""

from .configurator import (
    EngineConfig,
    Environment,
    EvaluatorConfig,
    LoggingConfig,
    RegistryConfig,
    ResolverConfig,
    RuntimeConfig,
    configure_from_dict,
    configure_from_file,
    configure_logging,
    get_config,
    set_config,
)
from .engine import BindingEngine, BindingGroup
from .registry import RegistryMetrics, Subscription, SubscriptionRegistry
from .resolver import PathResolver, PathWatch, ResolvedTarget, UnresolvedPath
from .runtime import BindingRuntime, DependencySlot, RuntimeState
from .tasks import BackgroundTasks

__all__ = [
    # Engine
    "BindingEngine",
    "BindingGroup",
    "BindingRuntime",
    "DependencySlot",
    "RuntimeState",
    # Registry
    "SubscriptionRegistry",
    "Subscription",
    "RegistryMetrics",
    # Resolver
    "PathResolver",
    "PathWatch",
    "ResolvedTarget",
    "UnresolvedPath",
    # Configuration
    "EngineConfig",
    "Environment",
    "EvaluatorConfig",
    "LoggingConfig",
    "RegistryConfig",
    "ResolverConfig",
    "RuntimeConfig",
    "configure_logging",
    "configure_from_dict",
    "configure_from_file",
    "get_config",
    "set_config",
    # Utilities
    "BackgroundTasks",
]
