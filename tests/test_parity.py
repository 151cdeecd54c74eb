"""
Randomized checks that validation and persistence classify every node the same way.
"""

from __future__ import annotations

import random
import string
from typing import Any, Dict, List

import pytest

from nested_model_updater.updater import ModelUpdater
from nested_model_updater.validator import NestedValidator

from .models import Post


class PayloadGenerator:
    """Builds a random Post payload over the seeded blog and records the expected node actions."""

    def __init__(
        self,
        rng: random.Random,
        blog: Dict[str, Any],
        seed: int,
        temporary_ids: bool = False,
    ) -> None:
        self.rng = rng
        self.seed = seed
        self.temporary_ids = temporary_ids
        self.token_usages: List[Dict[str, Any]] = []
        self.genre_ids = [blog["genre"].id, blog["other_genre"].id]
        self.author_ids = [blog["first_author"].id, blog["second_author"].id]
        self.comment_ids = [
            blog["first_comment"].id,
            blog["second_comment"].id,
            blog["loose_comment"].id,
        ]
        self.special_key = blog["special"].special
        self.expected: Dict[str, str] = {}

    def word(self) -> str:
        return "".join(self.rng.choice(string.ascii_lowercase) for _ in range(6))

    def post(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"title": self.word()}
        if self.rng.random() < 0.8:
            data["genre"] = self.genre("genre")
        if self.rng.random() < 0.8:
            data["comments"] = self.comments()
        if self.rng.random() < 0.6:
            data["specials"] = self.specials()
        if self.rng.random() < 0.6:
            data["authors"] = self.authors()
        if self.token_usages:
            # Exactly one usage of the shared token carries its create data.
            self.rng.choice(self.token_usages)["name"] = self.word()
        return data

    def genre(self, key: str) -> Any:
        genre_id = self.rng.choice(self.genre_ids)
        choice = self.rng.randrange(6)
        if choice == 0:
            self.expected[key] = "dissociate"
            return None
        if choice == 1:
            self.expected[key] = "dissociate"
            return {}
        if choice == 2:
            self.expected[key] = "link"
            return genre_id
        if choice == 3:
            self.expected[key] = "link"
            return {"id": genre_id}
        if choice == 4:
            self.expected[key] = "update"
            return {"id": genre_id, "name": self.word()}
        self.expected[key] = "create"
        return {"name": self.word()}

    def shared_author(self, key: str) -> Dict[str, Any]:
        """A usage of one temporary id; the first one processed creates the author."""
        self.expected[key] = "link" if self.token_usages else "create"
        item: Dict[str, Any] = {"_tmp_id": "shared"}
        self.token_usages.append(item)
        return item

    def author(self, key: str) -> Any:
        if self.temporary_ids and self.rng.random() < 0.5:
            return self.shared_author(key)
        author_id = self.rng.choice(self.author_ids)
        choice = self.rng.randrange(4)
        if choice == 0:
            self.expected[key] = "dissociate"
            return None
        if choice == 1:
            self.expected[key] = "link"
            return author_id
        if choice == 2:
            self.expected[key] = "update"
            return {"id": author_id, "name": self.word()}
        self.expected[key] = "create"
        return {"name": self.word(), "gender": self.rng.choice("mf")}

    def comments(self) -> List[Any]:
        available = list(self.comment_ids)
        self.rng.shuffle(available)
        items: List[Any] = []
        for index in range(self.rng.randrange(4)):
            key = f"comments.{index}"
            choice = self.rng.randrange(3)
            if choice == 0 and available:
                self.expected[key] = "link"
                items.append(available.pop())
                continue
            item: Dict[str, Any] = {"title": self.word()}
            if choice == 1 and available:
                item["id"] = available.pop()
                self.expected[key] = "update"
            else:
                self.expected[key] = "create"
            if self.rng.random() < 0.5:
                item["author"] = self.author(f"{key}.author")
            items.append(item)
        return items

    def specials(self) -> List[Any]:
        items: List[Any] = []
        existing_used = False
        for index in range(self.rng.randrange(4)):
            key = f"specials.{index}"
            choice = self.rng.randrange(5)
            if choice == 0 and not existing_used:
                existing_used = True
                self.expected[key] = "link"
                items.append(self.special_key)
            elif choice == 1 and not existing_used:
                existing_used = True
                self.expected[key] = "update"
                items.append({"special": self.special_key, "name": self.word()})
            elif choice == 2:
                self.expected[key] = "create"
                items.append(f"n{self.seed}-{index}")
            else:
                self.expected[key] = "create"
                items.append({"special": f"s{self.seed}-{index}", "name": self.word()})
        return items

    def authors(self) -> List[Any]:
        items: List[Any] = []
        for index, author_id in enumerate(self.rng.sample(self.author_ids, self.rng.randrange(3))):
            key = f"authors.{index}"
            if self.rng.random() < 0.5:
                self.expected[key] = "link"
                items.append(author_id)
            else:
                self.expected[key] = "update"
                items.append({"id": author_id, "name": self.word()})
        if self.rng.random() < 0.5:
            key = f"authors.{len(items)}"
            self.expected[key] = "create"
            items.append({"name": self.word()})
        return items


class TestValidatorUpdaterParity:
    @pytest.mark.parametrize("rng_seed", range(25))
    def test_both_traversals_agree(self, rng_seed, store, config, blog, node_actions):
        generator = PayloadGenerator(random.Random(rng_seed), blog, rng_seed)
        data = generator.post()

        NestedValidator(Post, config, store).validation_rules(data)
        ModelUpdater(Post, config, store).create(data)

        validated = node_actions("nested_updater.validator")
        updated = node_actions("nested_updater.updater")
        assert validated == generator.expected
        assert updated == generator.expected

    @pytest.mark.parametrize("rng_seed", range(25))
    def test_shared_temporary_ids_agree(self, rng_seed, store, make_config, blog, node_actions):
        config = make_config(allow_temporary_ids=True)
        generator = PayloadGenerator(random.Random(rng_seed), blog, rng_seed, temporary_ids=True)
        data = generator.post()

        NestedValidator(Post, config, store).validation_rules(data)
        ModelUpdater(Post, config, store).create(data)

        assert node_actions("nested_updater.validator") == generator.expected
        assert node_actions("nested_updater.updater") == generator.expected

    def test_bare_token_before_its_data(self, store, make_config, blog, node_actions):
        config = make_config(allow_temporary_ids=True)
        data = {
            "title": "p",
            "comments": [
                {"title": "one", "author": {"_tmp_id": "a"}},
                {"title": "two", "author": {"_tmp_id": "a", "name": "Late"}},
            ],
        }
        expected = {
            "comments.0": "create",
            "comments.0.author": "create",
            "comments.1": "create",
            "comments.1.author": "link",
        }

        NestedValidator(Post, config, store).validation_rules(data)
        ModelUpdater(Post, config, store).create(data)

        assert node_actions("nested_updater.validator") == expected
        assert node_actions("nested_updater.updater") == expected

    def test_scalar_natural_keys(self, store, config, blog, node_actions):
        data = {"title": "p", "specials": [blog["special"].special, "fresh"]}
        expected = {"specials.0": "link", "specials.1": "create"}

        NestedValidator(Post, config, store).validation_rules(data)
        ModelUpdater(Post, config, store).create(data)

        assert node_actions("nested_updater.validator") == expected
        assert node_actions("nested_updater.updater") == expected


class TestPlainAttributes:
    @pytest.mark.parametrize("rng_seed", range(10))
    def test_direct_attributes_round_trip(self, rng_seed, session, store, config):
        rng = random.Random(rng_seed)
        data = {
            "title": "".join(rng.choice(string.ascii_letters) for _ in range(rng.randrange(1, 50))),
            "body": rng.choice([None, "", "body " * rng.randrange(1, 20)]),
        }

        rules = NestedValidator(Post, config, store).validation_rules(data)
        result = ModelUpdater(Post, config, store).create(data)

        assert set(rules) == {"title", "body"}
        stored = session.get(Post, result.record.id)
        assert (stored.title, stored.body) == (data["title"], data["body"])
