"""
Configuration Management for StarBind

🔧 Unified Configuration System:
Dataclass configuration for the binding engine, with per-environment
defaults and loading from dictionaries, JSON/YAML files and environment
variables.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..core.evaluator import DEFAULT_CACHE_SIZE, DEFAULT_MAX_DEPTH, DEFAULT_MAX_LENGTH
from .resolver import DEFAULT_MAX_HOPS
from .runtime import DEFAULT_MAX_RECORDED_ERRORS

logger = logging.getLogger(__name__)


class Environment(Enum):
    """Deployment environment; selects the preset in ``EngineConfig.for_environment``"""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class ResolverConfig:
    """Path resolver configuration"""
    max_hops: int = DEFAULT_MAX_HOPS


@dataclass
class RegistryConfig:
    """Subscription registry configuration"""
    unsubscribe_timeout: Optional[float] = 5.0


@dataclass
class EvaluatorConfig:
    """Expression evaluator limits"""
    max_expression_length: int = DEFAULT_MAX_LENGTH
    max_depth: int = DEFAULT_MAX_DEPTH
    cache_size: int = DEFAULT_CACHE_SIZE


@dataclass
class RuntimeConfig:
    """Binding runtime configuration"""
    max_recorded_errors: int = DEFAULT_MAX_RECORDED_ERRORS


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


_SECTIONS = {
    "resolver": ResolverConfig,
    "registry": RegistryConfig,
    "evaluator": EvaluatorConfig,
    "runtime": RuntimeConfig,
    "logging": LoggingConfig,
}

_LOADERS = {
    ".json": json.load,
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
}


@dataclass
class EngineConfig:
    """Complete binding engine configuration"""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    evaluator: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    custom: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_environment(cls, environment: Environment) -> 'EngineConfig':
        """Create configuration for specific environment"""
        config = cls(environment=environment)

        if environment == Environment.DEVELOPMENT:
            config.debug = True
            config.logging.level = "DEBUG"

        elif environment == Environment.TESTING:
            config.logging.level = "WARNING"
            config.registry.unsubscribe_timeout = 1.0

        elif environment == Environment.PRODUCTION:
            config.debug = False
            config.logging.level = "INFO"
            config.logging.file_path = "/var/log/starbind/engine.log"

        return config

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'EngineConfig':
        """Create configuration from dictionary; unknown keys are ignored"""
        if "environment" in config_dict:
            config = cls.for_environment(Environment(config_dict["environment"]))
        else:
            config = cls()

        if "debug" in config_dict:
            config.debug = bool(config_dict["debug"])

        for name in _SECTIONS:
            section = getattr(config, name)
            for key, value in (config_dict.get(name) or {}).items():
                if hasattr(section, key):
                    setattr(section, key, value)
                else:
                    logger.warning(f"Ignoring unknown configuration key {name}.{key}")

        if "custom" in config_dict:
            config.custom = dict(config_dict["custom"])

        return config

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> 'EngineConfig':
        """Load configuration from a JSON or YAML file"""
        path = Path(config_path)
        if not path.is_file():
            raise FileNotFoundError(f"No engine configuration at {path}")

        loader = _LOADERS.get(path.suffix.lower())
        if loader is None:
            raise ValueError(f"Cannot read {path.suffix or 'extensionless'} configuration files: {path}")
        with path.open(encoding="utf-8") as handle:
            return cls.from_dict(loader(handle) or {})

    @classmethod
    def from_environment(cls) -> 'EngineConfig':
        """Create configuration from environment variables"""
        env_name = os.getenv('STARBIND_ENV', 'development')
        config = cls.for_environment(Environment(env_name))

        if os.getenv('STARBIND_DEBUG'):
            config.debug = os.getenv('STARBIND_DEBUG').lower() == 'true'

        if os.getenv('STARBIND_MAX_HOPS'):
            config.resolver.max_hops = int(os.getenv('STARBIND_MAX_HOPS'))

        if os.getenv('STARBIND_LOG_LEVEL'):
            config.logging.level = os.getenv('STARBIND_LOG_LEVEL').upper()

        if os.getenv('STARBIND_LOG_FILE'):
            config.logging.file_path = os.getenv('STARBIND_LOG_FILE')

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        data = {"environment": self.environment.value, "debug": self.debug}
        for name in _SECTIONS:
            data[name] = asdict(getattr(self, name))
        data["custom"] = dict(self.custom)
        return data


def configure_logging(config: Optional[LoggingConfig] = None, logger_name: str = "starbind") -> logging.Logger:
    """
    Install level, format and an optional rotating file handler on the
    ``starbind`` logger. Calling it again replaces the handlers it installed.
    """
    config = config or LoggingConfig()
    target = logging.getLogger(logger_name)
    target.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    for handler in list(target.handlers):
        if getattr(handler, "_starbind", False):
            target.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(config.format)
    handlers = [logging.StreamHandler()]
    if config.file_path:
        Path(config.file_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            config.file_path, maxBytes=config.max_file_size, backupCount=config.backup_count
        ))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._starbind = True
        target.addHandler(handler)
    return target


# Global configuration management
_current_config: Optional[EngineConfig] = None


def set_config(config: EngineConfig):
    """Set the global configuration"""
    global _current_config
    _current_config = config


def get_config() -> EngineConfig:
    """Get the current global configuration"""
    global _current_config

    if _current_config is None:
        _current_config = EngineConfig.from_environment()

    return _current_config


def configure_from_file(config_path: Union[str, Path]) -> EngineConfig:
    """Configure the engine from file"""
    config = EngineConfig.from_file(config_path)
    set_config(config)
    return config


def configure_from_dict(config_dict: Dict[str, Any]) -> EngineConfig:
    """Configure the engine from dictionary"""
    config = EngineConfig.from_dict(config_dict)
    set_config(config)
    return config


__all__ = [
    "Environment", "ResolverConfig", "RegistryConfig", "EvaluatorConfig",
    "RuntimeConfig", "LoggingConfig", "EngineConfig", "configure_logging",
    "set_config", "get_config", "configure_from_file", "configure_from_dict",
]
