"""Shared traversal machinery for the nested updater and the nested validator."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional, Union

from .errors import InvalidNestedDataError, NestedModelNotFoundError
from .persistence import RecordStore
from .schema import NOT_A_RELATION, NestingConfig, RelationDescriptor


class NodeAction(str, enum.Enum):
    DISSOCIATE = "dissociate"
    LINK = "link"
    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True)
class NodeClassification:
    action: NodeAction
    key: Any = None
    existing: Any = None

    @property
    def creating(self) -> bool:
        return self.action is NodeAction.CREATE


@dataclass(frozen=True)
class Partition:
    """One data level split into plain attributes and nested relation keys."""

    direct: Mapping[str, Any]
    relations: Mapping[str, RelationDescriptor]


@dataclass
class NodeContext:
    """State of one create/update/validate call for a single tree node."""

    data: dict[str, Any]
    partition: Partition
    creating: bool = True
    record: Any = None
    belongs_tos_updated: bool = False


def is_empty_key(value: Any) -> bool:
    return value is None or value == ""


def append_nested_key(
    nested_key: Optional[str], key: str, index: Union[int, str, None] = None
) -> str:
    prefix = f"{nested_key}." if nested_key else ""
    suffix = f".{index}" if index is not None else ""
    return f"{prefix}{key}{suffix}"


def normalize_nested_data(
    data: Any, key_name: str, nested_key: Optional[str] = None
) -> dict[str, Any]:
    """Normalize one relation node: scalar is a key, ``None`` is empty, mapping is payload."""
    if data is None:
        return {}
    if isinstance(data, (str, int, float, bool)):
        return {key_name: data}
    if isinstance(data, Mapping):
        return dict(data)
    if hasattr(data, "to_dict") and callable(data.to_dict):
        converted = data.to_dict()
        if isinstance(converted, Mapping):
            return dict(converted)
    raise InvalidNestedDataError(
        "Nested data should be key (scalar) or mapping data", nested_key
    )


def iter_plural_items(
    value: Any, nested_key: Optional[str] = None
) -> Iterator[tuple[Union[int, str], Any]]:
    """Yield ``(index, item)`` pairs of a plural relation's data in order."""
    if value is None:
        return iter(())
    if isinstance(value, Mapping):
        return iter(list(value.items()))
    if isinstance(value, (list, tuple)):
        return enumerate(value)
    raise InvalidNestedDataError("Nested data for plural relation should be a list", nested_key)


def classify_node(
    store: RecordStore,
    descriptor: RelationDescriptor,
    data: Mapping[str, Any],
    load: bool = False,
) -> NodeClassification:
    """Decide whether normalized node data creates, updates or links a record.

    Incrementing keys are judged by presence alone; a natural key is only an
    update or link if a record with that key exists. With ``load`` set the
    existing record is fetched and returned for the caller's use.
    """
    if not data:
        return NodeClassification(NodeAction.DISSOCIATE)

    key = data.get(descriptor.key_name)
    if is_empty_key(key):
        return NodeClassification(NodeAction.CREATE)

    existing = None
    if descriptor.incrementing:
        if load:
            existing = store.find_by(descriptor.model, descriptor.key_name, key)
    elif load:
        existing = store.find_by(descriptor.model, descriptor.key_name, key)
        if existing is None:
            return NodeClassification(NodeAction.CREATE, key)
    elif not store.exists(descriptor.model, descriptor.key_name, key):
        return NodeClassification(NodeAction.CREATE, key)

    action = NodeAction.LINK if len(data) == 1 else NodeAction.UPDATE
    return NodeClassification(action, key, existing)


class NestedTreeAnalyzer:
    """Partitions a data level into direct attributes and nested relations."""

    def __init__(self, config: NestingConfig) -> None:
        self.config = config

    def partition(self, model: type, data: Mapping[str, Any]) -> Partition:
        direct: dict[str, Any] = {}
        relations: dict[str, RelationDescriptor] = {}
        for key, value in data.items():
            if key == self.config.temporary_id_key:
                continue
            descriptor = self.config.resolve(model, key)
            if descriptor is NOT_A_RELATION:
                direct[key] = value
            else:
                relations[key] = descriptor
        return Partition(direct=direct, relations=relations)


class AbstractNestedParser:
    """Common base: knows its model, its place in the tree and its parent relation."""

    def __init__(
        self,
        model: type,
        config: NestingConfig,
        store: Optional[RecordStore] = None,
        parent_attribute: Optional[str] = None,
        nested_key: Optional[str] = None,
        parent_record: Any = None,
        parent_model: Optional[type] = None,
    ) -> None:
        self.model = model
        self.config = config
        self.store = store
        self.parent_attribute = parent_attribute
        self.nested_key = nested_key
        self.parent_record = parent_record
        self.parent_model = (
            type(parent_record) if parent_record is not None else parent_model
        )
        self.analyzer = NestedTreeAnalyzer(config)
        self.parent_relation: Optional[RelationDescriptor] = None
        if parent_attribute and self.parent_model is not None:
            self.parent_relation = config.get_relation_info(
                parent_attribute, self.parent_model
            )

    def is_top_level(self) -> bool:
        return self.parent_attribute is None and self.parent_relation is None

    def append_nested_key(self, key: str, index: Union[int, str, None] = None) -> str:
        return append_nested_key(self.nested_key, key, index)

    def nested_key_prefix(self) -> str:
        return f"{self.nested_key}." if self.nested_key else ""

    def get_relation_info_for_data_key_in_dot_notation(
        self, key: str
    ) -> Optional[RelationDescriptor]:
        """Resolve a dotted data path like ``comments.0.author`` to its descriptor."""
        parts = key.split(".")
        model = self.model
        descriptor: Optional[RelationDescriptor] = None
        while parts:
            attribute = parts.pop(0)
            if parts and parts[0].isdigit():
                parts.pop(0)
            resolved = self.config.resolve(model, attribute)
            if resolved is NOT_A_RELATION:
                return None
            descriptor = resolved
            model = resolved.model
        return descriptor

    def require_store(self) -> RecordStore:
        if self.store is None:
            raise RuntimeError(f"{type(self).__name__} needs a RecordStore for this call")
        return self.store

    def get_model_by_lookup_attribute(
        self,
        key: Any,
        attribute: Optional[str] = None,
        model: Optional[type] = None,
        nested_key: Optional[str] = None,
        required: bool = True,
    ) -> Any:
        model = model or self.model
        record = self.require_store().find_by(model, attribute, key)
        if record is None and required:
            raise NestedModelNotFoundError(model, nested_key or self.nested_key)
        return record
