from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_RULES_METHOD

DEFAULT_UPDATER = "updater"
DEFAULT_VALIDATOR = "validator"


class RelationOptions(BaseModel):
    """Options for one nested relation key, as written in the relations document."""

    link_only: bool = Field(False, alias="link-only")
    update_only: bool = Field(False, alias="update-only")
    updater: str = DEFAULT_UPDATER
    method: Optional[str] = None
    detach: Optional[bool] = None
    delete_detached: bool = Field(False, alias="delete-detached")
    validator: str = DEFAULT_VALIDATOR
    rules: Optional[str] = None
    rules_method: Optional[str] = Field(None, alias="rules-method")

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class ModelRulesOptions(BaseModel):
    rules_class: str = Field(alias="class")
    method: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class ValidationOptions(BaseModel):
    model_rules_module: Optional[str] = Field(None, alias="model-rules-module")
    model_rules_postfix: str = Field("", alias="model-rules-postfix")
    model_rules_method: str = Field(DEFAULT_RULES_METHOD, alias="model-rules-method")
    allow_missing_rules: bool = Field(True, alias="allow-missing-rules")
    model_rules: dict[str, Union[str, ModelRulesOptions]] = Field(
        default_factory=dict, alias="model-rules"
    )

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class NestingDocument(BaseModel):
    """Top-level layout of a relations document (YAML or mapping)."""

    database_transactions: Optional[bool] = Field(None, alias="database-transactions")
    allow_temporary_ids: Optional[bool] = Field(None, alias="allow-temporary-ids")
    temporary_id_key: Optional[str] = Field(None, alias="temporary-id-key")
    relations: dict[str, dict[str, Union[bool, RelationOptions]]] = Field(
        default_factory=dict
    )
    validation: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of one nested create, update or link.

    ``record`` is ``None`` with ``success`` set when the relation was
    deliberately dissociated.
    """

    record: Any = None
    success: bool = True


RelationsMapping = Mapping[str, Mapping[str, Union[bool, RelationOptions]]]
