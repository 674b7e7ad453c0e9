"""Entity store configuration schema."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

ALLOWED_JOURNAL_MODES: set[str] = {"wal", "delete", "truncate", "memory"}


class StoreConfig(BaseModel):
    """Validated connection pool and database configuration."""

    db_path: str | None = Field(default=None)
    pool_size: int = Field(default=5, ge=1, le=64)
    pool_timeout_seconds: float = Field(default=5.0, gt=0.0)
    busy_timeout_ms: int = Field(default=5000, ge=0)
    operation_timeout_seconds: float | None = Field(default=10.0, gt=0.0)
    journal_mode: str = Field(default="wal")

    @field_validator("journal_mode")
    @classmethod
    def _validate_journal_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ALLOWED_JOURNAL_MODES:
            allowed = ", ".join(sorted(ALLOWED_JOURNAL_MODES))
            raise ValueError(f"Unsupported journal_mode: {value!r}. Allowed: {allowed}")
        return normalized

    @field_validator("db_path")
    @classmethod
    def _validate_db_path(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("db_path must not be blank")
        return stripped


def load_store_config(config_path: str | Path) -> StoreConfig:
    """Load store config from a JSON config file.

    Returns:
    - StoreConfig with defaults when the ``store`` section is missing or null.
    - StoreConfig validated from the ``store`` section otherwise.
    Raises:
    - FileNotFoundError if config file is missing.
    - pydantic ValidationError on invalid store values.
    - json.JSONDecodeError for malformed JSON.
    """

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(path)

    payload = json.loads(path.read_text(encoding="utf-8"))
    section = payload.get("store") if isinstance(payload, dict) else None
    if section is None:
        return StoreConfig()
    if not isinstance(section, dict):
        raise ValueError("store must be an object when provided")

    return StoreConfig.model_validate(section)
