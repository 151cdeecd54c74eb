"""Relation metadata: which payload keys are nested relations, and how they behave."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml
from pydantic import ValidationError
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import Mapper, RelationshipDirection

from .config import DEFAULT_TEMPORARY_ID_KEY, Settings
from .errors import ConfigurationError
from .logging_utils import get_logger
from .models import (NestingDocument, RelationOptions, RelationsMapping,
                     ValidationOptions)

LOGGER = get_logger("schema")


class RelationKind(str, enum.Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO_MANY = "belongs_to_many"


class _NotARelation:
    """Sentinel returned when a payload key is a plain attribute."""

    _instance: Optional["_NotARelation"] = None

    def __new__(cls) -> "_NotARelation":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_A_RELATION"


NOT_A_RELATION = _NotARelation()


@dataclass(frozen=True)
class RelationDescriptor:
    """Everything the updater and validator need to know about one nested key."""

    relation_method: str
    kind: RelationKind
    model: type
    key_name: str
    incrementing: bool
    updater: str
    validator: str
    update_allowed: bool
    create_allowed: bool
    detach_missing: Optional[bool] = None
    delete_detached: bool = False
    rules_class: Optional[str] = None
    rules_method: Optional[str] = None

    def __post_init__(self) -> None:
        if self.create_allowed and not self.update_allowed:
            raise ConfigurationError(
                f"Relation '{self.relation_method}' allows create but not update"
            )

    @property
    def singular(self) -> bool:
        return self.kind in (RelationKind.BELONGS_TO, RelationKind.HAS_ONE)

    @property
    def belongs_to(self) -> bool:
        """Whether the foreign key for this relation is stored on the parent record."""
        return self.kind is RelationKind.BELONGS_TO

    @property
    def table_name(self) -> str:
        return mapper_for(self.model).local_table.name

    def detaches_missing(self) -> bool:
        if self.detach_missing is not None:
            return self.detach_missing
        return self.kind in (RelationKind.HAS_ONE, RelationKind.BELONGS_TO_MANY)


def mapper_for(model: type) -> Mapper:
    try:
        return sa_inspect(model)
    except NoInspectionAvailable as exc:
        raise ConfigurationError(f"{model!r} is not a mapped model class") from exc


def model_name(model: Union[type, str]) -> str:
    return model if isinstance(model, str) else model.__name__


def _primary_key_column(model: type):
    mapper = mapper_for(model)
    if len(mapper.primary_key) != 1:
        raise ConfigurationError(
            f"{model.__name__} must have exactly one primary key column for nesting"
        )
    return mapper.primary_key[0]


def primary_key_field(model: type) -> str:
    return mapper_for(model).get_property_by_column(_primary_key_column(model)).key


def primary_key_is_generated(model: type) -> bool:
    column = _primary_key_column(model)
    return mapper_for(model).local_table.autoincrement_column is column


def _relation_kind(prop: Any) -> RelationKind:
    if prop.direction is RelationshipDirection.MANYTOONE:
        return RelationKind.BELONGS_TO
    if prop.direction is RelationshipDirection.MANYTOMANY:
        return RelationKind.BELONGS_TO_MANY
    return RelationKind.HAS_MANY if prop.uselist else RelationKind.HAS_ONE


@dataclass(frozen=True)
class NestingConfig:
    """Immutable relation and validation configuration.

    ``relations`` maps a model name to its nested keys; a key's value is
    ``True`` for defaults or a :class:`RelationOptions`.
    """

    relations: Mapping[str, Mapping[str, Union[bool, RelationOptions]]] = field(
        default_factory=dict
    )
    validation: ValidationOptions = field(default_factory=ValidationOptions)
    database_transactions: bool = True
    allow_temporary_ids: bool = False
    temporary_id_key: str = DEFAULT_TEMPORARY_ID_KEY
    _cache: Dict[Tuple[str, str], Any] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        frozen = {
            model_name(model): MappingProxyType(dict(keys))
            for model, keys in self.relations.items()
        }
        object.__setattr__(self, "relations", MappingProxyType(frozen))

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(
        cls,
        document: Mapping[str, Any],
        settings: Optional[Settings] = None,
    ) -> "NestingConfig":
        try:
            parsed = NestingDocument.model_validate(dict(document))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid nesting configuration: {exc}") from exc

        validation_defaults: dict[str, Any] = {}
        if settings is not None:
            validation_defaults = {
                "model-rules-module": settings.rules_module,
                "model-rules-postfix": settings.rules_postfix,
                "model-rules-method": settings.rules_method,
                "allow-missing-rules": settings.allow_missing_rules,
            }
        try:
            validation = ValidationOptions.model_validate(
                {**validation_defaults, **(parsed.validation or {})}
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid validation configuration: {exc}") from exc

        def pick(value: Any, from_settings: Any, default: Any) -> Any:
            if value is not None:
                return value
            return from_settings if settings is not None else default

        return cls(
            relations=parsed.relations,
            validation=validation,
            database_transactions=pick(
                parsed.database_transactions,
                settings.database_transactions if settings else None,
                True,
            ),
            allow_temporary_ids=pick(
                parsed.allow_temporary_ids,
                settings.allow_temporary_ids if settings else None,
                False,
            ),
            temporary_id_key=pick(
                parsed.temporary_id_key,
                settings.temporary_id_key if settings else None,
                DEFAULT_TEMPORARY_ID_KEY,
            ),
        )

    @classmethod
    def from_yaml(
        cls, path: Union[str, Path], settings: Optional[Settings] = None
    ) -> "NestingConfig":
        with Path(path).open("r", encoding="utf-8") as fh:
            document = yaml.safe_load(fh) or {}
        if not isinstance(document, Mapping):
            raise ConfigurationError(f"{path} does not contain a mapping")
        LOGGER.debug("Loaded nesting configuration from %s", path)
        return cls.from_mapping(document, settings)

    @classmethod
    def from_relations(cls, relations: RelationsMapping, **options: Any) -> "NestingConfig":
        """Build a configuration straight from Python, options as plain dicts allowed."""
        normalized: dict[str, dict[str, Union[bool, RelationOptions]]] = {}
        for model, keys in relations.items():
            normalized[model_name(model)] = {
                key: (
                    RelationOptions.model_validate(value)
                    if isinstance(value, Mapping)
                    else value
                )
                for key, value in keys.items()
            }
        validation = options.pop("validation", None)
        if isinstance(validation, Mapping):
            validation = ValidationOptions.model_validate(dict(validation))
        return cls(
            relations=normalized,
            validation=validation or ValidationOptions(),
            **options,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_nested_relation_config_by_key(
        self, key: str, parent_model: Union[type, str]
    ) -> Union[bool, RelationOptions]:
        keys = self.relations.get(model_name(parent_model))
        if not keys:
            return False
        return keys.get(key, False)

    def is_key_nested_relation(self, key: str, parent_model: Union[type, str]) -> bool:
        return bool(self.get_nested_relation_config_by_key(key, parent_model))

    def _options_for(self, key: str, parent_model: Union[type, str]) -> RelationOptions:
        config = self.get_nested_relation_config_by_key(key, parent_model)
        if isinstance(config, RelationOptions):
            return config
        return RelationOptions()

    def resolve(self, parent_model: type, key: str) -> Union[RelationDescriptor, _NotARelation]:
        """Return the descriptor for ``key`` on ``parent_model`` or ``NOT_A_RELATION``."""
        if not self.is_key_nested_relation(key, parent_model):
            return NOT_A_RELATION
        return self.get_relation_info(key, parent_model)

    def get_relation_info(self, key: str, parent_model: type) -> RelationDescriptor:
        cache_key = (model_name(parent_model), key)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        if not self.is_key_nested_relation(key, parent_model):
            raise ConfigurationError(
                f"{key} is not a nested relation, cannot gather data for model "
                f"{model_name(parent_model)}"
            )

        options = self._options_for(key, parent_model)
        method = options.method or key
        mapper = mapper_for(parent_model)
        if method not in mapper.relationships:
            raise ConfigurationError(
                f"{parent_model.__name__} has no relationship '{method}' for nested key '{key}'"
            )
        prop = mapper.relationships[method]
        related = prop.mapper.class_

        update_allowed = not options.link_only
        descriptor = RelationDescriptor(
            relation_method=method,
            kind=_relation_kind(prop),
            model=related,
            key_name=primary_key_field(related),
            incrementing=primary_key_is_generated(related),
            updater=options.updater,
            validator=options.validator,
            update_allowed=update_allowed,
            create_allowed=update_allowed and not options.update_only,
            detach_missing=options.detach,
            delete_detached=options.delete_detached,
            rules_class=options.rules,
            rules_method=options.rules_method,
        )
        self._cache[cache_key] = descriptor
        return descriptor
