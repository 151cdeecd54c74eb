"""Configuration loading for the nested model updater."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///:memory:"
DEFAULT_TEMPORARY_ID_KEY = "_tmp_id"
DEFAULT_RULES_METHOD = "rules"


def _bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _str(value: Optional[str], default: Optional[str]) -> Optional[str]:
    if value is None:
        return default
    value = value.strip()
    return value or default


@dataclass(frozen=True)
class Settings:
    database_url: str
    relations_file: Optional[str]
    database_transactions: bool
    allow_temporary_ids: bool
    temporary_id_key: str
    allow_missing_rules: bool
    rules_module: Optional[str]
    rules_postfix: str
    rules_method: str
    log_level: str

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()

        return cls(
            database_url=_str(os.getenv("NESTED_DATABASE_URL"), DEFAULT_DATABASE_URL),
            relations_file=_str(os.getenv("NESTED_RELATIONS_FILE"), None),
            database_transactions=_bool(os.getenv("NESTED_DATABASE_TRANSACTIONS"), True),
            # Temporary ids are opt-in; a stray "_tmp_id" key is rejected otherwise.
            allow_temporary_ids=_bool(os.getenv("NESTED_ALLOW_TEMPORARY_IDS"), False),
            temporary_id_key=_str(
                os.getenv("NESTED_TEMPORARY_ID_KEY"), DEFAULT_TEMPORARY_ID_KEY
            ),
            allow_missing_rules=_bool(os.getenv("NESTED_ALLOW_MISSING_RULES"), True),
            rules_module=_str(os.getenv("NESTED_RULES_MODULE"), None),
            rules_postfix=os.getenv("NESTED_RULES_POSTFIX", "").strip(),
            rules_method=_str(os.getenv("NESTED_RULES_METHOD"), DEFAULT_RULES_METHOD),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        )
