"""Exception taxonomy for nested create/update and validation."""

from __future__ import annotations

from typing import Optional


class NestedUpdaterError(Exception):
    """Base class for all errors raised by the nested model updater."""


class NestedKeyError(NestedUpdaterError):
    """Error that can be traced back to a node of the nested payload."""

    def __init__(self, message: str = "", nested_key: Optional[str] = None) -> None:
        self.base_message = message
        self.nested_key = nested_key or ""
        if nested_key:
            message = f"{message} (nesting: {nested_key})"
        super().__init__(message)

    def with_nested_key(self, nested_key: Optional[str]) -> "NestedKeyError":
        self.nested_key = nested_key or ""
        message = self.base_message
        if nested_key:
            message = f"{message} (nesting: {nested_key})"
        self.args = (message,)
        return self


class InvalidNestedDataError(NestedKeyError):
    """Raised for malformed nested data or inconsistent temporary id usage."""


class DisallowedNestedActionError(NestedKeyError):
    """Raised when the data asks for a create or update the relation does not permit."""


class ModelSaveFailureError(NestedKeyError):
    """Raised when the storage layer refused to persist a record."""


class NestedModelNotFoundError(NestedKeyError):
    """Raised when a record referenced by key does not exist."""

    def __init__(
        self,
        model: Optional[type] = None,
        nested_key: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.model = model
        name = model.__name__ if model is not None else "unknown model"
        super().__init__(message or f"No query results for model [{name}]", nested_key)


class ConfigurationError(NestedUpdaterError):
    """Raised for missing or malformed relation or rules configuration."""


class NestedValidationError(NestedUpdaterError):
    """Raised by callers that want a failed validation as an exception."""

    def __init__(self, messages: "dict[str, list[str]]") -> None:
        self.messages = messages
        count = sum(len(items) for items in messages.values())
        super().__init__(f"Nested data failed validation ({count} error(s))")
