"""Create or update a record together with its nested related records."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .errors import (DisallowedNestedActionError, InvalidNestedDataError,
                     ModelSaveFailureError, NestedModelNotFoundError)
from .factories import UPDATERS, HandlerRegistry
from .logging_utils import get_logger
from .models import DEFAULT_UPDATER, UpdateResult
from .parser import (AbstractNestedParser, NodeAction, NodeContext,
                     append_nested_key, classify_node, is_empty_key,
                     iter_plural_items, normalize_nested_data)
from .persistence import RecordStore
from .schema import NestingConfig, RelationDescriptor, RelationKind
from .temporary_ids import TemporaryIds

LOGGER = get_logger("updater")


class ModelUpdater(AbstractNestedParser):
    """Persists one level of nested data and recurses into its relations.

    Relations whose foreign key lives on the record (belongs-to) are handled
    before the record is saved; all other relations need the record's key
    and are handled afterwards. A top-level call wraps the whole tree in one
    transaction.
    """

    def __init__(
        self,
        model: type,
        config: NestingConfig,
        store: RecordStore,
        parent_attribute: Optional[str] = None,
        nested_key: Optional[str] = None,
        parent_record: Any = None,
        parent_model: Optional[type] = None,
        temporary_ids: Optional[TemporaryIds] = None,
        registry: Optional[HandlerRegistry] = None,
    ) -> None:
        super().__init__(
            model,
            config,
            store,
            parent_attribute=parent_attribute,
            nested_key=nested_key,
            parent_record=parent_record,
            parent_model=parent_model,
        )
        self.temporary_ids = temporary_ids
        self.registry = registry or UPDATERS
        self._force_fill = False
        self._no_database_transaction = False
        self._unguarded_attributes: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(self, data: Mapping[str, Any]) -> UpdateResult:
        return self._create_or_update(data, creating=True)

    def force_create(self, data: Mapping[str, Any]) -> UpdateResult:
        return self.force(True).create(data)

    def update(
        self,
        data: Mapping[str, Any],
        record: Any,
        attribute: Optional[str] = None,
    ) -> UpdateResult:
        """Update ``record``, given as an instance or as a key looked up by ``attribute``."""
        if not isinstance(record, self.model):
            record = self.get_model_by_lookup_attribute(record, attribute)
        return self._create_or_update(data, creating=False, record=record)

    def force_update(
        self,
        data: Mapping[str, Any],
        record: Any,
        attribute: Optional[str] = None,
    ) -> UpdateResult:
        return self.force(True).update(data, record, attribute)

    def force(self, force: bool = True) -> "ModelUpdater":
        """Fill direct attributes ignoring the model's ``__fillable__`` guard."""
        self._force_fill = force
        return self

    def get_unguarded_attributes(self) -> Dict[str, Any]:
        return dict(self._unguarded_attributes)

    def set_unguarded_attributes(self, attributes: Mapping[str, Any]) -> "ModelUpdater":
        self._unguarded_attributes = dict(attributes)
        return self

    def set_unguarded_attribute(self, key: str, value: Any) -> "ModelUpdater":
        self._unguarded_attributes[key] = value
        return self

    def clear_unguarded_attributes(self) -> "ModelUpdater":
        self._unguarded_attributes = {}
        return self

    def enable_database_transaction(self) -> "ModelUpdater":
        self._no_database_transaction = False
        return self

    def disable_database_transaction(self) -> "ModelUpdater":
        self._no_database_transaction = True
        return self

    def should_use_transaction(self) -> bool:
        if self._no_database_transaction or not self.config.database_transactions:
            return False
        return self.nested_key is None

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    def _create_or_update(
        self, data: Mapping[str, Any], creating: bool, record: Any = None
    ) -> UpdateResult:
        if not isinstance(data, Mapping):
            raise InvalidNestedDataError("Nested data should be mapping data", self.nested_key)
        data = dict(data)
        context = NodeContext(
            data=data,
            partition=self.analyzer.partition(self.model, data),
            creating=creating,
            record=record,
        )

        if not self.should_use_transaction():
            return self._perform(context)

        with self.require_store().transaction():
            result = self._perform(context)
        LOGGER.info(
            "Committed nested %s of %s",
            "create" if creating else "update",
            self.model.__name__,
        )
        return result

    def _perform(self, context: NodeContext) -> UpdateResult:
        try:
            if self.is_top_level():
                self._analyze_temporary_ids(context.data)
            if context.creating:
                context.record = self.require_store().new(self.model)

            self._handle_belongs_to_relations(context)
            self._update_and_persist_model(context)
            self._handle_has_and_belongs_to_many_relations(context)
        finally:
            self.clear_unguarded_attributes()
        return UpdateResult(context.record)

    def _analyze_temporary_ids(self, data: Mapping[str, Any]) -> None:
        """Walk the whole tree once and check every temporary id before writing anything."""
        if not self.config.allow_temporary_ids:
            return
        self.temporary_ids = TemporaryIds()
        self._collect_temporary_ids(self.model, data, None, self.temporary_ids)
        self.temporary_ids.check_usage()
        if len(self.temporary_ids):
            LOGGER.debug("Prepared %d temporary id(s)", len(self.temporary_ids))

    def _collect_temporary_ids(
        self,
        model: type,
        data: Mapping[str, Any],
        nested_key: Optional[str],
        ids: TemporaryIds,
    ) -> None:
        token_key = self.config.temporary_id_key
        for attribute, descriptor in self.analyzer.partition(model, data).relations.items():
            value = data[attribute]
            if descriptor.singular:
                items = [(None, value)]
            else:
                items = iter_plural_items(value, append_nested_key(nested_key, attribute))
            for index, item in items:
                if not isinstance(item, Mapping):
                    continue
                item_key = append_nested_key(nested_key, attribute, index)
                if token_key in item:
                    payload = {k: v for k, v in item.items() if k != token_key}
                    ids.see(
                        item[token_key],
                        descriptor.model,
                        data=payload or None,
                        allow_create=descriptor.create_allowed,
                        nested_key=item_key,
                    )
                self._collect_temporary_ids(descriptor.model, item, item_key, ids)

    def _update_and_persist_model(self, context: NodeContext) -> None:
        direct = context.partition.direct
        if (
            not context.creating
            and not direct
            and not self._unguarded_attributes
            and not context.belongs_tos_updated
        ):
            return

        store = self.require_store()
        store.fill(context.record, direct, force=self._force_fill)
        for key, value in self._unguarded_attributes.items():
            setattr(context.record, key, value)

        if self._should_save_on_parent_relation():
            saved = store.save_on_relation(self.parent_record, self.parent_relation, context.record)
        else:
            saved = store.save(context.record)

        if not saved:
            raise ModelSaveFailureError(
                f"Failed persisting instance of {self.model.__name__} on "
                f"{'create' if context.creating else 'update'} operation",
                self.nested_key,
            ) from store.last_error

    def _should_save_on_parent_relation(self) -> bool:
        if self.parent_record is None or self.parent_relation is None:
            return False
        return self.parent_relation.kind in (RelationKind.HAS_ONE, RelationKind.HAS_MANY)

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def _handle_belongs_to_relations(self, context: NodeContext) -> None:
        store = self.require_store()
        for attribute, descriptor in context.partition.relations.items():
            if not descriptor.belongs_to:
                continue

            context.belongs_tos_updated = True
            formerly_associated = store.related(context.record, descriptor)

            result = self._handle_nested_single_update_or_create(
                context, context.data[attribute], descriptor, attribute
            )

            if result.record is not None:
                store.associate(context.record, descriptor, result.record)
                if (
                    descriptor.delete_detached
                    and formerly_associated is not None
                    and formerly_associated is not result.record
                ):
                    self._delete_formerly_related_record(context, formerly_associated, descriptor)
                continue

            store.dissociate(context.record, descriptor)
            if descriptor.delete_detached and formerly_associated is not None:
                self._delete_formerly_related_record(context, formerly_associated, descriptor)

    def _handle_has_and_belongs_to_many_relations(self, context: NodeContext) -> None:
        store = self.require_store()
        for attribute, descriptor in context.partition.relations.items():
            if descriptor.belongs_to:
                continue

            value = context.data[attribute]
            if descriptor.singular:
                items = [(None, value)]
            else:
                items = iter_plural_items(value, self.append_nested_key(attribute))

            records = []
            for index, item in items:
                result = self._handle_nested_single_update_or_create(
                    context, item, descriptor, attribute, index
                )
                if result.record is None or store.key_of(result.record) is None:
                    continue
                records.append(result.record)

            if descriptor.kind is RelationKind.BELONGS_TO_MANY:
                self._sync_belongs_to_many(context, descriptor, records)
                continue

            for record in records:
                if not store.save_on_relation(context.record, descriptor, record):
                    raise ModelSaveFailureError(
                        f"Failed saving {descriptor.model.__name__} on relation "
                        f"'{descriptor.relation_method}'",
                        self.append_nested_key(attribute),
                    ) from store.last_error
            self._detach_missing(context, descriptor, records, attribute)

    def _sync_belongs_to_many(
        self,
        context: NodeContext,
        descriptor: RelationDescriptor,
        records: Sequence[Any],
    ) -> None:
        store = self.require_store()
        formerly_related = [
            item for item in store.related(context.record, descriptor) if item not in records
        ]
        store.sync_many(
            context.record, descriptor, records, detaching=descriptor.detaches_missing()
        )
        if descriptor.delete_detached and formerly_related:
            for item in formerly_related:
                self._delete_formerly_related_record(context, item, descriptor)
            store.expire_relation(context.record, descriptor)

    def _detach_missing(
        self,
        context: NodeContext,
        descriptor: RelationDescriptor,
        records: Sequence[Any],
        attribute: str,
    ) -> None:
        """Detach (or delete) has-one/has-many records left out of the data."""
        if not descriptor.detaches_missing() and not descriptor.delete_detached:
            return

        store = self.require_store()
        keep = [store.key_of(record) for record in records]

        if descriptor.delete_detached:
            current = store.related(context.record, descriptor)
            current = [current] if descriptor.singular else list(current)
            for item in current:
                if item is not None and store.key_of(item) not in keep:
                    self._delete_formerly_related_record(context, item, descriptor)
            store.expire_relation(context.record, descriptor)
            return

        try:
            detached = store.detach_from_relation(context.record, descriptor, keep)
        except SQLAlchemyError as exc:
            raise ModelSaveFailureError(
                f"Failed detaching {descriptor.model.__name__} records from "
                f"'{descriptor.relation_method}'",
                self.append_nested_key(attribute),
            ) from exc
        if detached:
            LOGGER.debug(
                "Detached %d %s record(s) from %s",
                len(detached),
                descriptor.model.__name__,
                self.append_nested_key(attribute),
            )

    def _delete_formerly_related_record(
        self, context: NodeContext, related: Any, descriptor: RelationDescriptor
    ) -> None:
        """Delete a record no longer related, unless another parent still refers to it."""
        store = self.require_store()
        if store.is_in_use(self.model, descriptor, related, exclude=context.record):
            LOGGER.debug(
                "Keeping %s %s, still in use by another %s",
                descriptor.model.__name__,
                store.key_of(related),
                self.model.__name__,
            )
            return
        store.delete(related)

    def _handle_nested_single_update_or_create(
        self,
        context: NodeContext,
        raw: Any,
        descriptor: RelationDescriptor,
        attribute: str,
        index: Any = None,
    ) -> UpdateResult:
        store = self.require_store()
        nested_key = self.append_nested_key(attribute, index)
        data = normalize_nested_data(raw, descriptor.key_name, nested_key)

        token_key = self.config.temporary_id_key
        if token_key in data:
            if not self.config.allow_temporary_ids or self.temporary_ids is None:
                raise InvalidNestedDataError(
                    f"Temporary ID key '{token_key}' used while temporary IDs are disabled",
                    nested_key,
                )
            token = data[token_key]
            entry = self.temporary_ids.get(token)
            if entry is None:
                return UpdateResult()

            if entry.record is None:
                if entry.data is None:
                    return UpdateResult()
                self._log_action(NodeAction.CREATE, nested_key)
                updater = self._make_nested_updater(descriptor, attribute, nested_key, context.record)
                result = updater.create(entry.data)
                if result.record is None:
                    return UpdateResult()
                self.temporary_ids.set_record(token, result.record)
                return result

            # Already created for an earlier branch: link to it.
            data = {descriptor.key_name: store.key_of(entry.record)}

        if not data:
            self._log_action(NodeAction.DISSOCIATE, nested_key)
            return UpdateResult()

        update_id = data.get(descriptor.key_name)

        if not descriptor.update_allowed:
            if is_empty_key(update_id):
                raise DisallowedNestedActionError(
                    "Not allowed to create new for link-only nested relation", nested_key
                )
            data = {descriptor.key_name: update_id}

        classification = classify_node(store, descriptor, data, load=True)
        existing = classification.existing

        if not descriptor.update_allowed or classification.action is NodeAction.LINK:
            if existing is None:
                raise NestedModelNotFoundError(descriptor.model, nested_key)
            self._log_action(NodeAction.LINK, nested_key)
            return UpdateResult(existing)

        if classification.creating and not descriptor.create_allowed:
            raise DisallowedNestedActionError(
                "Not allowed to create new for update-only nested relation", nested_key
            )

        self._log_action(classification.action, nested_key)
        updater = self._make_nested_updater(descriptor, attribute, nested_key, context.record)
        if classification.creating:
            result = updater.create(data)
        else:
            result = updater.update(
                data,
                existing if existing is not None else update_id,
                descriptor.key_name,
            )

        if result.record is None:
            return UpdateResult()
        return result

    def _make_nested_updater(
        self,
        descriptor: RelationDescriptor,
        attribute: str,
        nested_key: str,
        parent_record: Any,
    ) -> Any:
        return self.registry.make(
            descriptor.updater,
            model=descriptor.model,
            config=self.config,
            store=self.store,
            parent_attribute=attribute,
            nested_key=nested_key,
            parent_record=parent_record,
            temporary_ids=self.temporary_ids,
            registry=self.registry,
        )

    def _log_action(self, action: NodeAction, nested_key: str) -> None:
        LOGGER.debug(
            "%s %s",
            action.value,
            nested_key,
            extra={"nested_key": nested_key, "node_action": action.value},
        )


UPDATERS.register(DEFAULT_UPDATER, ModelUpdater)
