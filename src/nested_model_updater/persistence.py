from __future__ import annotations

import datetime as dt
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

from dateutil import parser as dtparse
from sqlalchemy import column, func, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .logging_utils import get_logger
from .schema import (RelationDescriptor, mapper_for, primary_key_field,
                     primary_key_is_generated)

LOGGER = get_logger("persistence")


def _python_type(model: type, attribute: str) -> Optional[type]:
    prop = mapper_for(model).column_attrs.get(attribute)
    if prop is None:
        return None
    try:
        return prop.columns[0].type.python_type
    except NotImplementedError:
        return None


def convert_scalar(python_type: Optional[type], value: Any) -> Any:
    """Convert a JSON value into the Python type a column expects.

    Values that cannot be converted are returned unchanged so the database
    gets to report the problem.
    """
    if value is None or python_type is None or isinstance(value, python_type):
        return value

    if python_type is bool:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "1", "yes"}:
                return True
            if lowered in {"false", "0", "no"}:
                return False
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        return value

    if python_type is int:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value)
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    if python_type is float:
        if isinstance(value, (int, str)) and not isinstance(value, bool):
            try:
                return float(value)
            except ValueError:
                return value
        return value

    if python_type is Decimal:
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            try:
                return Decimal(str(value))
            except InvalidOperation:
                return value
        return value

    if python_type is dt.datetime and isinstance(value, str):
        try:
            return dtparse.isoparse(value)
        except ValueError:
            return value

    if python_type is dt.date and isinstance(value, str):
        try:
            return dtparse.isoparse(value).date()
        except ValueError:
            return value

    return value


class RecordStore:
    """Record and transaction collaborator backed by a SQLAlchemy session.

    The session is shared by every level of one nested operation, so all
    writes of the tree land in the same transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.last_error: Optional[SQLAlchemyError] = None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find(self, model: type, key: Any) -> Any:
        return self.find_by(model, primary_key_field(model), key)

    def find_by(self, model: type, attribute: Optional[str], value: Any) -> Any:
        attribute = attribute or primary_key_field(model)
        if attribute == primary_key_field(model):
            value = convert_scalar(_python_type(model, attribute), value)
            return self.session.get(model, value)
        stmt = select(model).where(getattr(model, attribute) == value).limit(1)
        return self.session.scalars(stmt).first()

    def exists(self, model: type, attribute: Optional[str], value: Any) -> bool:
        attribute = attribute or primary_key_field(model)
        value = convert_scalar(_python_type(model, attribute), value)
        stmt = select(func.count()).select_from(model).where(
            getattr(model, attribute) == value
        )
        return (self.session.scalar(stmt) or 0) > 0

    def exists_in_table(self, table_name: str, column_name: str, value: Any) -> bool:
        """Existence check by plain table and column names, for ``exists:`` rules."""
        target = table(table_name, column(column_name))
        stmt = select(func.count()).select_from(target).where(
            target.c[column_name] == value
        )
        return (self.session.scalar(stmt) or 0) > 0

    def primary_key_field(self, model: type) -> str:
        return primary_key_field(model)

    def primary_key_is_generated(self, model: type) -> bool:
        return primary_key_is_generated(model)

    def key_of(self, record: Any) -> Any:
        return getattr(record, primary_key_field(type(record)))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def new(self, model: type) -> Any:
        return model()

    def fill(self, record: Any, attributes: Mapping[str, Any], force: bool = False) -> None:
        """Set direct attributes, honouring an optional ``__fillable__`` guard."""
        model = type(record)
        fillable: Optional[Sequence[str]] = getattr(model, "__fillable__", None)
        for key, value in attributes.items():
            if not force and fillable is not None and key not in fillable:
                LOGGER.debug("Skipping guarded attribute %s on %s", key, model.__name__)
                continue
            setattr(record, key, convert_scalar(_python_type(model, key), value))

    def save(self, record: Any) -> bool:
        try:
            self.session.add(record)
            self.session.flush()
        except SQLAlchemyError as exc:
            LOGGER.error("Failed persisting %s: %s", type(record).__name__, exc)
            self.last_error = exc
            return False
        return True

    def delete(self, record: Any) -> None:
        self.session.delete(record)
        self.session.flush()

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def related(self, record: Any, descriptor: RelationDescriptor) -> Any:
        return getattr(record, descriptor.relation_method)

    def associate(self, record: Any, descriptor: RelationDescriptor, related: Any) -> None:
        setattr(record, descriptor.relation_method, related)

    def dissociate(self, record: Any, descriptor: RelationDescriptor) -> None:
        setattr(record, descriptor.relation_method, None)

    def save_on_relation(
        self, parent: Any, descriptor: RelationDescriptor, record: Any
    ) -> bool:
        """Attach ``record`` to ``parent``'s relation so the foreign key is filled, then save."""
        if descriptor.singular:
            if getattr(parent, descriptor.relation_method) is not record:
                setattr(parent, descriptor.relation_method, record)
        else:
            collection = getattr(parent, descriptor.relation_method)
            if record not in collection:
                collection.append(record)
        return self.save(record)

    def related_keys(self, record: Any, descriptor: RelationDescriptor) -> list[Any]:
        value = getattr(record, descriptor.relation_method)
        if value is None:
            return []
        items = [value] if descriptor.singular else list(value)
        return [self.key_of(item) for item in items]

    def sync_many(
        self,
        record: Any,
        descriptor: RelationDescriptor,
        related: Sequence[Any],
        detaching: bool = True,
    ) -> list[Any]:
        """Sync a many-to-many association; returns the records that were detached."""
        collection = getattr(record, descriptor.relation_method)
        for item in related:
            if item not in collection:
                collection.append(item)

        detached: list[Any] = []
        if detaching:
            keep = {id(item) for item in related}
            for item in list(collection):
                if id(item) not in keep:
                    collection.remove(item)
                    detached.append(item)
        self.session.flush()
        return detached

    def detach_from_relation(
        self,
        record: Any,
        descriptor: RelationDescriptor,
        keep_keys: Iterable[Any],
    ) -> list[Any]:
        """Remove related records whose keys are not in ``keep_keys``.

        Removing from a one-to-many relation nulls the child's foreign key on
        flush; the detached records are returned for optional deletion.
        """
        keep = set(keep_keys)
        detached: list[Any] = []
        if descriptor.singular:
            current = getattr(record, descriptor.relation_method)
            if current is not None and self.key_of(current) not in keep:
                setattr(record, descriptor.relation_method, None)
                detached.append(current)
        else:
            collection = getattr(record, descriptor.relation_method)
            for item in list(collection):
                if self.key_of(item) not in keep:
                    collection.remove(item)
                    detached.append(item)
        self.session.flush()
        return detached

    def expire_relation(self, record: Any, descriptor: RelationDescriptor) -> None:
        """Drop the loaded relation so the next access reloads it from the database."""
        if record in self.session:
            self.session.expire(record, [descriptor.relation_method])

    def is_in_use(
        self,
        parent_model: type,
        descriptor: RelationDescriptor,
        related: Any,
        exclude: Any = None,
    ) -> bool:
        """Whether another ``parent_model`` record still references ``related``."""
        relation = getattr(parent_model, descriptor.relation_method)
        key_column = getattr(descriptor.model, descriptor.key_name)
        condition = key_column == self.key_of(related)
        criterion = relation.has(condition) if descriptor.singular else relation.any(condition)
        stmt = select(func.count()).select_from(parent_model).where(criterion)
        if exclude is not None:
            parent_key = getattr(parent_model, primary_key_field(parent_model))
            stmt = stmt.where(parent_key != self.key_of(exclude))
        return (self.session.scalar(stmt) or 0) > 0

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Run the block in one transaction; roll back and re-raise on any error."""
        if not self.session.in_transaction():
            self.session.begin()
        try:
            yield self.session
            self.session.commit()
        except BaseException:
            LOGGER.warning("Rolling back nested operation")
            self.session.rollback()
            raise
