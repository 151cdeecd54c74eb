"""Validation rule maps: merging inherent and custom rules, and evaluating them against data."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import (Any, Callable, Dict, Iterable, Iterator, List, Mapping,
                    Optional, Sequence, Tuple, Union)

from dateutil import parser as dtparse

from .errors import ConfigurationError
from .logging_utils import get_logger

LOGGER = get_logger("rules")

RuleSet = Union[str, Sequence[Any]]
RuleMap = Dict[str, RuleSet]

_MISSING = object()


def normalize_rules(rules: Optional[RuleSet]) -> List[Any]:
    """Turn ``"required|integer"`` or a list of rules into a token list."""
    if rules is None:
        return []
    if isinstance(rules, str):
        return [token for token in rules.split("|") if token]
    return list(rules)


def merge_rule_sets(inherent: Optional[RuleSet], custom: Optional[RuleSet]) -> List[Any]:
    merged: List[Any] = []
    for token in normalize_rules(inherent) + normalize_rules(custom):
        if token not in merged:
            merged.append(token)
    return merged


def merge_inherent_rules_with_custom(
    inherent: Mapping[str, RuleSet], custom: Mapping[str, RuleSet]
) -> RuleMap:
    """Merge custom rules into inherent ones; shared keys keep both sides, deduplicated."""
    result: RuleMap = dict(inherent)
    for key, rule_set in custom.items():
        if key not in result:
            result[key] = rule_set
            continue
        result[key] = merge_rule_sets(result[key], rule_set)
    return result


def rule_is_required(rules: Optional[RuleSet]) -> bool:
    return "required" in normalize_rules(rules)


def prefix_keys(rules: Mapping[str, RuleSet], prefix: str) -> RuleMap:
    return {f"{prefix}{key}": value for key, value in rules.items()}


def data_get(data: Any, path: str) -> Tuple[bool, Any]:
    """Look up a dot-notation path in nested mappings and lists."""
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return False, None
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return False, None
            current = current[index]
        else:
            return False, None
    return True, current


class MessageBag:
    """Validation messages grouped by dot-notation key."""

    def __init__(self, messages: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._messages: Dict[str, List[str]] = {}
        for key, items in (messages or {}).items():
            for message in items:
                self.add(key, message)

    def add(self, key: str, message: str) -> None:
        bucket = self._messages.setdefault(key, [])
        if message not in bucket:
            bucket.append(message)

    def has(self, key: str) -> bool:
        return bool(self._messages.get(key))

    def get(self, key: str) -> List[str]:
        return list(self._messages.get(key, []))

    def first(self, key: Optional[str] = None) -> Optional[str]:
        if key is not None:
            items = self._messages.get(key)
            return items[0] if items else None
        for items in self._messages.values():
            if items:
                return items[0]
        return None

    def keys(self) -> List[str]:
        return list(self._messages)

    def all(self) -> List[str]:
        return [message for items in self._messages.values() for message in items]

    def to_dict(self) -> Dict[str, List[str]]:
        return {key: list(items) for key, items in self._messages.items()}

    def __len__(self) -> int:
        return sum(len(items) for items in self._messages.values())

    def __bool__(self) -> bool:
        return len(self) > 0

    def __iter__(self) -> Iterator[Tuple[str, List[str]]]:
        return iter(self.to_dict().items())

    def __repr__(self) -> str:
        return f"MessageBag({self.to_dict()!r})"


def _label(attribute: str) -> str:
    return attribute.replace("_", " ")


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()) is not None


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _size(value: Any) -> Optional[float]:
    if isinstance(value, str) and not _is_numeric(value):
        return float(len(value))
    if isinstance(value, (list, tuple, dict)):
        return float(len(value))
    if _is_numeric(value):
        return float(value)
    if isinstance(value, str):
        return float(len(value))
    return None


class RuleEvaluator:
    """Evaluates a flat rule map against nested data, collecting every failure.

    ``exists`` and ``unique`` rules need a store with an ``exists_in_table``
    method; the remaining rules are pure checks.
    """

    IMPLICIT_RULES = frozenset({"required", "present"})

    def __init__(self, store: Any = None) -> None:
        self.store = store
        self._checks: Dict[str, Callable[[str, Any, List[str]], Optional[str]]] = {
            "array": self._check_array,
            "mapping": self._check_mapping,
            "integer": self._check_integer,
            "numeric": self._check_numeric,
            "string": self._check_string,
            "boolean": self._check_boolean,
            "date": self._check_date,
            "max": self._check_max,
            "min": self._check_min,
            "between": self._check_between,
            "size": self._check_size,
            "in": self._check_in,
            "not_in": self._check_not_in,
            "regex": self._check_regex,
            "exists": self._check_exists,
            "unique": self._check_unique,
        }

    def evaluate(self, data: Any, rules: Mapping[str, RuleSet]) -> MessageBag:
        bag = MessageBag()
        for attribute, rule_set in rules.items():
            for message in self.evaluate_attribute(data, attribute, rule_set):
                bag.add(attribute, message)
        if bag:
            LOGGER.debug("Validation failed for %d attribute(s)", len(bag.keys()))
        return bag

    def evaluate_attribute(self, data: Any, attribute: str, rule_set: RuleSet) -> List[str]:
        tokens = normalize_rules(rule_set)
        present, value = data_get(data, attribute)
        names = [self._parse(token)[0] for token in tokens if isinstance(token, str)]

        messages: List[str] = []
        if "present" in names and not present:
            messages.append(f"The {_label(attribute)} field must be present.")
        if "required" in names and (not present or _is_empty(value)):
            messages.append(f"The {_label(attribute)} field is required.")
            return messages
        if not present:
            return messages
        if value is None and "nullable" in names:
            return messages

        for token in tokens:
            if callable(token):
                message = token(attribute, value)
                if message:
                    messages.append(message)
                continue
            name, parameters = self._parse(token)
            if name in self.IMPLICIT_RULES or name in ("nullable", "sometimes"):
                continue
            check = self._checks.get(name)
            if check is None:
                raise ConfigurationError(f"Unknown validation rule '{name}' for {attribute}")
            message = check(attribute, value, parameters)
            if message:
                messages.append(message)
        return messages

    @staticmethod
    def _parse(token: str) -> Tuple[str, List[str]]:
        name, _, raw = token.partition(":")
        if name == "regex":
            return name, [raw]
        return name.strip(), [part.strip() for part in raw.split(",")] if raw else []

    @staticmethod
    def _check_array(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if isinstance(value, (Mapping, list, tuple)):
            return None
        return f"The {_label(attribute)} must be an array."

    @staticmethod
    def _check_mapping(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if isinstance(value, Mapping):
            return None
        return f"The {_label(attribute)} must be an object."

    @staticmethod
    def _check_integer(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if _is_integer(value):
            return None
        return f"The {_label(attribute)} must be an integer."

    @staticmethod
    def _check_numeric(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if _is_numeric(value):
            return None
        return f"The {_label(attribute)} must be a number."

    @staticmethod
    def _check_string(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if isinstance(value, str):
            return None
        return f"The {_label(attribute)} must be a string."

    @staticmethod
    def _check_boolean(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if value in (True, False, 0, 1, "0", "1", "true", "false"):
            return None
        return f"The {_label(attribute)} field must be true or false."

    @staticmethod
    def _check_date(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if isinstance(value, str):
            try:
                dtparse.parse(value)
            except (ValueError, OverflowError):
                pass
            else:
                return None
        return f"The {_label(attribute)} is not a valid date."

    @staticmethod
    def _limit(parameters: List[str], rule: str) -> float:
        try:
            return float(parameters[0])
        except (IndexError, ValueError) as exc:
            raise ConfigurationError(f"Rule '{rule}' needs a numeric parameter") from exc

    def _check_max(self, attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        limit = self._limit(parameters, "max")
        size = _size(value)
        if size is not None and size <= limit:
            return None
        return f"The {_label(attribute)} may not be greater than {parameters[0]}."

    def _check_min(self, attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        limit = self._limit(parameters, "min")
        size = _size(value)
        if size is not None and size >= limit:
            return None
        return f"The {_label(attribute)} must be at least {parameters[0]}."

    def _check_between(self, attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        low = self._limit(parameters[:1], "between")
        high = self._limit(parameters[1:2], "between")
        size = _size(value)
        if size is not None and low <= size <= high:
            return None
        return f"The {_label(attribute)} must be between {parameters[0]} and {parameters[1]}."

    def _check_size(self, attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        expected = self._limit(parameters, "size")
        if _size(value) == expected:
            return None
        return f"The {_label(attribute)} must be {parameters[0]}."

    @staticmethod
    def _check_in(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if str(value) in parameters:
            return None
        return f"The selected {_label(attribute)} is invalid."

    @staticmethod
    def _check_not_in(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if str(value) not in parameters:
            return None
        return f"The selected {_label(attribute)} is invalid."

    @staticmethod
    def _check_regex(attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        pattern = parameters[0]
        if len(pattern) > 1 and pattern[0] == pattern[-1] == "/":
            pattern = pattern[1:-1]
        if isinstance(value, str) and re.search(pattern, value):
            return None
        return f"The {_label(attribute)} format is invalid."

    def _lookup(self, attribute: str, value: Any, parameters: List[str], rule: str) -> bool:
        if self.store is None:
            raise ConfigurationError(f"Rule '{rule}' for {attribute} needs a record store")
        if not parameters or not parameters[0]:
            raise ConfigurationError(f"Rule '{rule}' for {attribute} needs a table name")
        column_name = parameters[1] if len(parameters) > 1 else attribute.rsplit(".", 1)[-1]
        return self.store.exists_in_table(parameters[0], column_name, value)

    def _check_exists(self, attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if self._lookup(attribute, value, parameters, "exists"):
            return None
        return f"The selected {_label(attribute)} is invalid."

    def _check_unique(self, attribute: str, value: Any, parameters: List[str]) -> Optional[str]:
        if not self._lookup(attribute, value, parameters, "unique"):
            return None
        return f"The {_label(attribute)} has already been taken."
