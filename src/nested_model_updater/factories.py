"""Registry of nested handlers, looked up by the identifiers used in relation options."""

from __future__ import annotations

import importlib
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from .errors import ConfigurationError
from .models import DEFAULT_UPDATER, DEFAULT_VALIDATOR


@runtime_checkable
class ModelUpdaterInterface(Protocol):
    def create(self, data: Any) -> Any: ...

    def update(self, data: Any, record: Any, attribute: Optional[str] = None) -> Any: ...


@runtime_checkable
class NestedValidatorInterface(Protocol):
    def validation_rules(self, data: Any, creating: bool = True) -> Any: ...

    def validate(self, data: Any, creating: bool = True) -> bool: ...


HandlerFactory = Callable[..., Any]


def import_string(path: str) -> Any:
    """Import ``package.module:attribute`` (or ``package.module.attribute``)."""
    if ":" in path:
        module_name, _, attribute = path.partition(":")
    else:
        module_name, _, attribute = path.rpartition(".")
    if not module_name or not attribute:
        raise ImportError(f"'{path}' is not an importable 'module:attribute' path")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise ImportError(f"Module '{module_name}' has no attribute '{attribute}'") from exc


class HandlerRegistry:
    """Maps handler identifiers to factories that build nested parsers."""

    def __init__(self, kind: str, interface: type) -> None:
        self.kind = kind
        self.interface = interface
        self._factories: Dict[str, HandlerFactory] = {}

    def register(self, name: str, factory: HandlerFactory) -> None:
        self._factories[name] = factory

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def resolve(self, name: str) -> HandlerFactory:
        factory = self._factories.get(name)
        if factory is not None:
            return factory
        if "." in name or ":" in name:
            try:
                return import_string(name)
            except ImportError as exc:
                raise ConfigurationError(f"Unknown nested {self.kind} '{name}': {exc}") from exc
        raise ConfigurationError(f"Unknown nested {self.kind} '{name}'")

    def make(self, name: str, **kwargs: Any) -> Any:
        handler = self.resolve(name)(**kwargs)
        if not isinstance(handler, self.interface):
            raise ConfigurationError(
                f"Nested {self.kind} '{name}' does not provide the {self.interface.__name__} methods"
            )
        return handler


# Default handlers register themselves on import of updater.py / validator.py.
UPDATERS = HandlerRegistry("updater", ModelUpdaterInterface)
VALIDATORS = HandlerRegistry("validator", NestedValidatorInterface)

__all__ = [
    "DEFAULT_UPDATER",
    "DEFAULT_VALIDATOR",
    "HandlerRegistry",
    "ModelUpdaterInterface",
    "NestedValidatorInterface",
    "UPDATERS",
    "VALIDATORS",
    "import_string",
]
