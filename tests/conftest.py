"""
Pytest configuration and shared fixtures for the nested model updater tests.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Generator, List, Mapping, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from nested_model_updater.persistence import RecordStore
from nested_model_updater.schema import NestingConfig

from .models import Author, Base, Comment, Genre, Post, Special

BASE_RELATIONS: Dict[str, Dict[str, Any]] = {
    "Post": {
        "genre": True,
        "comments": True,
        "authors": True,
        "specials": True,
    },
    "Comment": {
        "author": True,
        "tags": True,
    },
    "Author": {
        "posts": True,
        "comments": True,
    },
}

VALIDATION = {
    "model-rules-module": "tests.rules",
    "model-rules-postfix": "Rules",
}


class RecordingStore(RecordStore):
    """Record store that remembers the order in which records were saved."""

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.saved: List[Any] = []

    def save(self, record: Any) -> bool:
        self.saved.append(record)
        return super().save(record)


@pytest.fixture
def engine():
    engine = create_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def store(session) -> RecordStore:
    return RecordStore(session)


@pytest.fixture
def recording_store(session) -> RecordingStore:
    return RecordingStore(session)


@pytest.fixture
def make_config():
    """Build a NestingConfig from the base relations plus per-test overrides."""

    def factory(
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None, **options: Any
    ) -> NestingConfig:
        relations = {model: dict(keys) for model, keys in BASE_RELATIONS.items()}
        for model, keys in (overrides or {}).items():
            relations.setdefault(model, {}).update(keys)
        options.setdefault("validation", dict(VALIDATION))
        return NestingConfig.from_relations(relations, **options)

    return factory


@pytest.fixture
def config(make_config) -> NestingConfig:
    return make_config()


@pytest.fixture
def seed(session):
    """Insert committed records: ``seed(Genre(name="x"), ...)`` returns them refreshed."""

    def factory(*records: Any) -> List[Any]:
        session.add_all(records)
        session.commit()
        return list(records)

    return factory


@pytest.fixture
def blog(seed) -> Dict[str, Any]:
    """A small committed data set shared by many tests."""
    genre = Genre(name="Fiction")
    other_genre = Genre(name="Poetry")
    first_author = Author(name="Ann", gender="f")
    second_author = Author(name="Bob", gender="m")
    post = Post(title="Existing", body="Body", genre=genre)
    post.authors = [first_author, second_author]
    first_comment = Comment(title="First", post=post, author=first_author)
    second_comment = Comment(title="Second", post=post)
    loose_comment = Comment(title="Loose")
    special = Special(special="xyz", name="Existing special")
    seed(
        genre,
        other_genre,
        first_author,
        second_author,
        post,
        first_comment,
        second_comment,
        loose_comment,
        special,
    )
    return {
        "genre": genre,
        "other_genre": other_genre,
        "first_author": first_author,
        "second_author": second_author,
        "post": post,
        "first_comment": first_comment,
        "second_comment": second_comment,
        "loose_comment": loose_comment,
        "special": special,
    }


@pytest.fixture
def node_actions(caplog):
    """Collect ``nested_key -> action`` decisions logged by a traversal."""
    caplog.set_level(logging.DEBUG, logger="nested_updater")

    def collect(logger_name: str) -> Dict[str, str]:
        return {
            record.nested_key: record.node_action
            for record in caplog.records
            if record.name == logger_name and hasattr(record, "node_action")
        }

    return collect
