from __future__ import annotations

import argparse
import importlib
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .config import Settings
from .db_connector import DatabaseSession
from .errors import (ConfigurationError, NestedKeyError,
                     NestedValidationError)
from .logging_utils import get_logger, setup_logging
from .persistence import RecordStore
from .schema import NestingConfig, mapper_for
from .updater import ModelUpdater
from .validator import NestedValidator

console = Console()
LOGGER = get_logger("cli")


def _load_payload(source: str) -> dict[str, Any]:
    if source == "-":
        payload = json.load(sys.stdin)
    else:
        with Path(source).open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
    if not isinstance(payload, dict):
        raise ConfigurationError("The payload must be a JSON object")
    return payload


def _load_model(models: str, model: str) -> type:
    try:
        module = importlib.import_module(models)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import models module '{models}': {exc}") from exc
    model_cls = getattr(module, model, None)
    if not isinstance(model_cls, type):
        raise ConfigurationError(f"'{models}' has no model class '{model}'")
    mapper_for(model_cls)
    return model_cls


def _load_config(settings: Settings, relations: Optional[Path]) -> NestingConfig:
    path = relations or (Path(settings.relations_file) if settings.relations_file else None)
    if path is None:
        LOGGER.warning("No relations file given; every key is treated as an attribute")
        return NestingConfig.from_mapping({}, settings)
    return NestingConfig.from_yaml(path, settings)


def _print_messages(validator: NestedValidator) -> None:
    table = Table(title="Validation failed", show_lines=False)
    table.add_column("Key", style="cyan")
    table.add_column("Message", style="red")
    messages = validator.messages()
    for key, items in (messages.to_dict() if messages else {}).items():
        for message in items:
            table.add_row(key, message)
    console.print(table)


def validate_payload(settings: Settings, args: argparse.Namespace) -> int:
    """Validate a payload without writing anything."""
    model_cls = _load_model(args.models, args.model)
    config = _load_config(settings, args.relations)
    data = _load_payload(args.payload)

    database = DatabaseSession(settings.database_url)
    database.open()
    try:
        if args.create_schema:
            database.ensure_schema(model_cls.metadata)
        with database.session() as session:
            validator = NestedValidator(model_cls, config, RecordStore(session))
            valid = validator.validate(data, creating=not args.update)
    finally:
        database.dispose()

    if not valid:
        _print_messages(validator)
        return 2
    console.print("[green]✓[/green] Payload is valid")
    return 0


def persist_payload(settings: Settings, args: argparse.Namespace) -> int:
    """Validate a payload, then create or update the record it describes."""
    model_cls = _load_model(args.models, args.model)
    config = _load_config(settings, args.relations)
    payload = _load_payload(args.payload)
    record_id = getattr(args, "record_id", None)
    creating = record_id is None

    database = DatabaseSession(settings.database_url)
    database.open()
    try:
        if args.create_schema:
            database.ensure_schema(model_cls.metadata)
        with database.session() as session:
            store = RecordStore(session)
            validator = NestedValidator(model_cls, config, store)
            if not validator.validate(payload, creating=creating):
                _print_messages(validator)
                return 2

            updater = ModelUpdater(model_cls, config, store)
            if creating:
                result = updater.create(payload)
            else:
                result = updater.update(payload, record_id, args.key_attribute)
            if not config.database_transactions:
                session.commit()
            key = store.key_of(result.record)
    finally:
        database.dispose()

    console.print(f"[green]✓[/green] {'Created' if creating else 'Updated'} {args.model} {key}")
    return 0


COMMANDS: Dict[str, Callable[[Settings, argparse.Namespace], int]] = {
    "validate": validate_payload,
    "create": persist_payload,
    "update": persist_payload,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nested-model-updater",
        description="Create, update or validate records from nested JSON payloads.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    commands = {
        "validate": "Validate a payload without writing anything.",
        "create": "Create a record and its nested relations from a payload.",
        "update": "Update an existing record and its nested relations from a payload.",
    }
    subcommands = {}
    for name, help_text in commands.items():
        sub = subparsers.add_parser(name, help=help_text, description=help_text)
        sub.add_argument("payload", help="JSON payload file, or '-' for stdin.")
        sub.add_argument("--model", "-m", required=True, help="Name of the mapped model class.")
        sub.add_argument(
            "--models", required=True, help="Importable module that defines the mapped models."
        )
        sub.add_argument(
            "--relations",
            "-r",
            type=Path,
            default=None,
            help="Relations YAML file (default: NESTED_RELATIONS_FILE).",
        )
        sub.add_argument(
            "--create-schema", action="store_true", help="Create missing tables before writing."
        )
        subcommands[name] = sub

    subcommands["validate"].add_argument(
        "--update", action="store_true", help="Validate as an update instead of a create."
    )
    subcommands["update"].add_argument(
        "--id", dest="record_id", required=True, help="Key of the record to update."
    )
    subcommands["update"].add_argument(
        "--key-attribute", default=None, help="Look the record up by this attribute."
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
    except Exception as exc:  # pragma: no cover - guard for CLI usage
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    setup_logging(settings.log_level)

    try:
        code = COMMANDS[args.command](settings, args)
    except ConfigurationError as exc:
        LOGGER.error("Configuration error: %s", exc)
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    except (NestedKeyError, NestedValidationError) as exc:
        LOGGER.error("Invalid nested data: %s", exc)
        print(f"Invalid nested data: {exc}", file=sys.stderr)
        sys.exit(2)
    except Exception as exc:  # pragma: no cover - guard for CLI usage
        LOGGER.exception("Nested operation failed")
        print(f"Nested operation failed: {exc}", file=sys.stderr)
        sys.exit(3)
    sys.exit(code)


if __name__ == "__main__":
    main()
