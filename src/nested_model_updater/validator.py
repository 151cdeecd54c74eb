"""Build and check validation rules for nested data, mirroring the updater's decisions."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Set

from .errors import ConfigurationError, NestedValidationError
from .factories import VALIDATORS, HandlerRegistry, import_string
from .logging_utils import get_logger
from .models import DEFAULT_VALIDATOR, ModelRulesOptions
from .parser import (AbstractNestedParser, NodeAction, Partition,
                     append_nested_key, classify_node, iter_plural_items)
from .persistence import RecordStore
from .rules import (MessageBag, RuleEvaluator, RuleMap,
                    merge_inherent_rules_with_custom, prefix_keys,
                    rule_is_required)
from .schema import NestingConfig, RelationDescriptor

LOGGER = get_logger("validator")


class NestedValidator(AbstractNestedParser):
    """Generates a flat, dot-notation rule map for a nested payload and evaluates it.

    Per-model rules come from a rules provider: an object whose rules method
    takes ``"create"`` or ``"update"`` and returns a rule map. The provider is
    looked up from the parent relation's ``rules`` option, then the model's
    ``validation.model-rules`` entry, then ``<model-rules-module>:<Model><postfix>``.
    """

    def __init__(
        self,
        model: type,
        config: NestingConfig,
        store: Optional[RecordStore] = None,
        parent_attribute: Optional[str] = None,
        nested_key: Optional[str] = None,
        parent_record: Any = None,
        parent_model: Optional[type] = None,
        registry: Optional[HandlerRegistry] = None,
        seen_temporary_ids: Optional[Set[Any]] = None,
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
        self.registry = registry or VALIDATORS
        # Shared with nested validators so only a token's first usage counts as a create.
        self.seen_temporary_ids = seen_temporary_ids if seen_temporary_ids is not None else set()
        self._messages: Optional[MessageBag] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate(self, data: Mapping[str, Any], creating: bool = True) -> bool:
        rules = self.validation_rules(data, creating)
        bag = RuleEvaluator(self.store).evaluate(data, rules)
        self._messages = bag if bag else None
        return not bag

    def validate_or_raise(self, data: Mapping[str, Any], creating: bool = True) -> None:
        if not self.validate(data, creating):
            raise NestedValidationError(self._messages.to_dict())

    def messages(self) -> Optional[MessageBag]:
        return self._messages

    def validation_rules(self, data: Mapping[str, Any], creating: bool = True) -> RuleMap:
        if not isinstance(data, Mapping):
            raise ConfigurationError("Validation data must be a mapping")
        data = dict(data)
        partition = self.analyzer.partition(self.model, data)
        if self.is_top_level():
            self.seen_temporary_ids = set()

        rules = self.get_direct_model_validation_rules(prefix_nesting=True, creating=creating)
        rules.update(self._nested_relation_rules(data, partition, creating))
        return rules

    def get_direct_model_validation_rules(
        self, prefix_nesting: bool = False, creating: bool = True
    ) -> RuleMap:
        provider = self._make_model_rules_instance()
        if provider is None:
            return {}

        method = self._determine_model_rules_method()
        rules_method = getattr(provider, method, None)
        if not callable(rules_method):
            raise ConfigurationError(f"{type(provider).__name__} has no method '{method}'")

        rules = rules_method("create" if creating else "update")
        if not isinstance(rules, Mapping):
            raise ConfigurationError(
                f"{type(provider).__name__}.{method} did not return a rule mapping"
            )
        rules = dict(rules)
        if prefix_nesting:
            rules = prefix_keys(rules, self.nested_key_prefix())
        return rules

    # ------------------------------------------------------------------
    # Nested relations
    # ------------------------------------------------------------------

    def _nested_relation_rules(
        self, data: Mapping[str, Any], partition: Partition, creating: bool
    ) -> RuleMap:
        rules: RuleMap = {}
        # Belongs-to relations come first, in the order the updater writes them.
        relations = sorted(partition.relations.items(), key=lambda pair: not pair[1].belongs_to)
        for attribute, descriptor in relations:
            value = data[attribute]
            if descriptor.singular:
                rules.update(self._rules_for_single_item(descriptor, attribute, value, None, creating))
                continue

            # Plural relations must be lists; each item gets its own rules.
            rules[self.nested_key_prefix() + attribute] = "nullable|array" if value is None else "array"
            if not isinstance(value, (list, tuple, Mapping)):
                continue
            for index, item in iter_plural_items(value):
                rules.update(self._rules_for_single_item(descriptor, attribute, item, index, creating))
        return rules

    def _rules_for_single_item(
        self,
        descriptor: RelationDescriptor,
        attribute: str,
        item: Any,
        index: Any,
        creating: bool,
    ) -> RuleMap:
        rules: RuleMap = {}
        dot_key = append_nested_key(None, attribute, index)
        key = self.nested_key_prefix() + dot_key
        nested_key = self.append_nested_key(attribute, index)

        if item is None or isinstance(item, (str, int, float, bool)):
            return self._rules_for_scalar_item(descriptor, item, key, dot_key, nested_key, creating)

        # Anything else has to be the related record's data.
        if not isinstance(item, Mapping):
            rules[key] = "mapping"
            return rules
        rules[key] = "array"

        data = dict(item)
        if self.config.allow_temporary_ids and self.config.temporary_id_key in data:
            return self._rules_for_temporary_id(descriptor, attribute, data, nested_key, rules)

        if not data:
            self._log_action(NodeAction.DISSOCIATE, nested_key)
            return rules

        key_name = descriptor.key_name
        key_rules = []
        if descriptor.incrementing:
            key_rules.append("integer")

        if not descriptor.update_allowed:
            # Link-only: only the key is used, so only the key is validated.
            self._log_action(NodeAction.LINK, nested_key)
            key_rules += ["required", f"exists:{descriptor.table_name},{key_name}"]
            rules[f"{key}.{key_name}"] = key_rules
            return rules

        key_required = not descriptor.create_allowed or not descriptor.incrementing
        key_must_exist = not descriptor.create_allowed

        store = self.store if descriptor.incrementing else self.require_store()
        classification = classify_node(store, descriptor, data)
        if not classification.creating:
            key_must_exist = True

        if key_required:
            key_rules.append("required")
        if key_must_exist:
            key_rules.append(f"exists:{descriptor.table_name},{key_name}")
        if key_rules:
            rules[f"{key}.{key_name}"] = key_rules

        self._log_action(classification.action, nested_key)
        return merge_inherent_rules_with_custom(
            rules,
            self._nested_validation_rules(
                descriptor, attribute, nested_key, data, classification.creating
            ),
        )

    def _rules_for_scalar_item(
        self,
        descriptor: RelationDescriptor,
        item: Any,
        key: str,
        dot_key: str,
        nested_key: str,
        creating: bool,
    ) -> RuleMap:
        """Rules for a relation given as a bare key, or as None to dissociate."""
        rules: RuleMap = {}
        if item is None:
            action = NodeAction.DISSOCIATE
        elif descriptor.incrementing or not descriptor.update_allowed:
            action = NodeAction.LINK
        else:
            # An unknown natural key creates a record holding just that key.
            lookup = {descriptor.key_name: item}
            action = classify_node(self.require_store(), descriptor, lookup).action
        self._log_action(action, nested_key)

        if descriptor.incrementing:
            direct = self.get_direct_model_validation_rules(creating=creating)
            required = rule_is_required(direct.get(dot_key))
            rules[key] = f"{'required' if required else 'nullable'}|integer"
        elif item is not None and not (descriptor.update_allowed and descriptor.create_allowed):
            rules[key] = ["required", f"exists:{descriptor.table_name},{descriptor.key_name}"]
        return rules

    def _rules_for_temporary_id(
        self,
        descriptor: RelationDescriptor,
        attribute: str,
        data: dict[str, Any],
        nested_key: str,
        rules: RuleMap,
    ) -> RuleMap:
        """The first usage of a token creates its record; every later usage links to it."""
        token = data.pop(self.config.temporary_id_key)
        first_usage = token not in self.seen_temporary_ids
        self.seen_temporary_ids.add(token)
        self._log_action(NodeAction.CREATE if first_usage else NodeAction.LINK, nested_key)

        # A bare token refers to create data given elsewhere in the tree.
        if not data:
            return rules
        return merge_inherent_rules_with_custom(
            rules, self._nested_validation_rules(descriptor, attribute, nested_key, data, True)
        )

    def _nested_validation_rules(
        self,
        descriptor: RelationDescriptor,
        attribute: str,
        nested_key: str,
        data: Mapping[str, Any],
        creating: bool,
    ) -> RuleMap:
        validator = self.registry.make(
            descriptor.validator,
            model=descriptor.model,
            config=self.config,
            store=self.store,
            parent_attribute=attribute,
            nested_key=nested_key,
            parent_model=self.model,
            registry=self.registry,
            seen_temporary_ids=self.seen_temporary_ids,
        )
        return validator.validation_rules(data, creating)

    # ------------------------------------------------------------------
    # Rules providers
    # ------------------------------------------------------------------

    def _model_rules_entry(self) -> Any:
        return self.config.validation.model_rules.get(self.model.__name__)

    def _determine_model_rules_class(self) -> Optional[str]:
        reference = self.parent_relation.rules_class if self.parent_relation else None

        if not reference:
            entry = self._model_rules_entry()
            reference = entry.rules_class if isinstance(entry, ModelRulesOptions) else entry

        if not reference and self.config.validation.model_rules_module:
            validation = self.config.validation
            reference = (
                f"{validation.model_rules_module}:"
                f"{self.model.__name__}{validation.model_rules_postfix}"
            )
        return reference

    def _determine_model_rules_method(self) -> str:
        method = self.parent_relation.rules_method if self.parent_relation else None
        if not method:
            entry = self._model_rules_entry()
            if isinstance(entry, ModelRulesOptions):
                method = entry.method
        return method or self.config.validation.model_rules_method

    def _make_model_rules_instance(self) -> Any:
        reference = self._determine_model_rules_class()
        target = None
        if reference:
            try:
                target = import_string(reference)
            except ImportError as exc:
                LOGGER.debug("No rules provider %s for %s: %s", reference, self.model.__name__, exc)

        if target is None:
            if not self.config.validation.allow_missing_rules:
                raise ConfigurationError(
                    f"{reference or self.model.__name__} is not a usable rules provider"
                )
            return None

        return target() if isinstance(target, type) else target

    def _log_action(self, action: NodeAction, nested_key: str) -> None:
        LOGGER.debug(
            "%s %s",
            action.value,
            nested_key,
            extra={"nested_key": nested_key, "node_action": action.value},
        )


VALIDATORS.register(DEFAULT_VALIDATOR, NestedValidator)
