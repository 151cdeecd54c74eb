"""Model mixin exposing nested create and update directly on mapped classes."""

from __future__ import annotations

from typing import Any, ClassVar, Mapping, Optional

from sqlalchemy.orm import Session

from .models import DEFAULT_UPDATER, UpdateResult
from .persistence import RecordStore
from .schema import NestingConfig
from .updater import UPDATERS


class NestedUpdatable:
    """Adds ``nested_create`` / ``nested_update`` to a declarative model.

    The model sets ``__nesting_config__`` to a :class:`NestingConfig` (or
    passes one per call) and may name a custom updater in
    ``__model_updater__``.
    """

    __nesting_config__: ClassVar[Optional[NestingConfig]] = None
    __model_updater__: ClassVar[str] = DEFAULT_UPDATER

    @classmethod
    def _nested_updater(cls, session: Session, config: Optional[NestingConfig]) -> Any:
        config = config or cls.__nesting_config__
        if config is None:
            config = NestingConfig()
        return UPDATERS.make(
            cls.__model_updater__,
            model=cls,
            config=config,
            store=RecordStore(session),
        )

    @classmethod
    def nested_create(
        cls,
        session: Session,
        data: Mapping[str, Any],
        config: Optional[NestingConfig] = None,
    ) -> UpdateResult:
        return cls._nested_updater(session, config).create(data)

    def nested_update(
        self,
        session: Session,
        data: Mapping[str, Any],
        config: Optional[NestingConfig] = None,
    ) -> UpdateResult:
        return self._nested_updater(session, config).update(data, self)
