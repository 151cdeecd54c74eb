"""Bookkeeping for temporary ids: records referenced by a symbolic token before they exist."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional

from .errors import InvalidNestedDataError
from .schema import model_name, primary_key_field, primary_key_is_generated


@dataclass
class TemporaryId:
    """Status of one temporary id token within a single top-level operation."""

    token: str
    model: Optional[type] = None
    data: Optional[dict[str, Any]] = None
    record: Any = None
    created: bool = False
    # True if ANY usage of the token may create the record; other usages link to it.
    allowed_to_create: bool = False


class TemporaryIds:
    """Registry of temporary ids seen (so far) in one nested create or update."""

    def __init__(self) -> None:
        self._ids: Dict[str, TemporaryId] = {}

    def __contains__(self, token: object) -> bool:
        return token in self._ids

    def __iter__(self) -> Iterator[TemporaryId]:
        return iter(self._ids.values())

    def __len__(self) -> int:
        return len(self._ids)

    def get(self, token: str) -> Optional[TemporaryId]:
        return self._ids.get(token)

    def _get_or_create(self, token: str) -> TemporaryId:
        entry = self._ids.get(token)
        if entry is None:
            entry = self._ids[token] = TemporaryId(token=token)
        return entry

    def see(
        self,
        token: str,
        model: type,
        data: Optional[Mapping[str, Any]] = None,
        allow_create: bool = False,
        nested_key: Optional[str] = None,
    ) -> TemporaryId:
        """Record one sighting of ``token`` and check it against earlier sightings."""
        entry = self._get_or_create(token)

        if entry.model is None:
            entry.model = model
        elif entry.model is not model:
            raise InvalidNestedDataError(
                f"Mixed model class usage for temporary ID '{token}'", nested_key
            )

        if data:
            payload = dict(data)
            if primary_key_is_generated(model) and primary_key_field(model) in payload:
                raise InvalidNestedDataError(
                    f"Create data defined for temporary ID '{token}' must not contain "
                    "primary key value.",
                    nested_key,
                )
            if entry.data is not None and entry.data != payload:
                raise InvalidNestedDataError(
                    "Multiple inconsistent create data definitions given for "
                    f"temporary ID '{token}'.",
                    nested_key,
                )
            if not entry.created:
                entry.data = payload

        if allow_create:
            entry.allowed_to_create = True

        return entry

    def check_usage(self) -> None:
        """Fail unless every token has create data and at least one creatable usage."""
        for entry in self._ids.values():
            if entry.data is None:
                raise InvalidNestedDataError(
                    f"No create data defined for temporary ID '{entry.token}'"
                )
            if not entry.allowed_to_create:
                raise InvalidNestedDataError(
                    f"Not allowed to create new {model_name(entry.model)} for temporary "
                    f"ID '{entry.token}' for any referenced nested relation"
                )

    def record_for(self, token: str) -> Any:
        entry = self._ids.get(token)
        return entry.record if entry else None

    def data_for(self, token: str) -> Optional[dict[str, Any]]:
        entry = self._ids.get(token)
        return entry.data if entry else None

    def set_record(self, token: str, record: Any) -> None:
        entry = self._get_or_create(token)
        entry.record = record
        entry.created = True
