"""Tests for the store configuration schema."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from pr_assigner.config_schema import StoreConfig, load_store_config


def test_default_config() -> None:
    config = StoreConfig()
    assert config.db_path is None
    assert config.pool_size == 5
    assert config.pool_timeout_seconds == 5.0
    assert config.busy_timeout_ms == 5000
    assert config.operation_timeout_seconds == 10.0
    assert config.journal_mode == "wal"


def test_pool_size_bounds() -> None:
    with pytest.raises(ValidationError):
        StoreConfig(pool_size=0)
    with pytest.raises(ValidationError):
        StoreConfig(pool_size=65)


def test_timeouts_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        StoreConfig(pool_timeout_seconds=0)
    with pytest.raises(ValidationError):
        StoreConfig(operation_timeout_seconds=-1)
    with pytest.raises(ValidationError):
        StoreConfig(busy_timeout_ms=-5)


def test_operation_timeout_can_be_disabled() -> None:
    assert StoreConfig(operation_timeout_seconds=None).operation_timeout_seconds is None


def test_journal_mode_normalized() -> None:
    assert StoreConfig(journal_mode=" DELETE ").journal_mode == "delete"


def test_invalid_journal_mode_rejected() -> None:
    with pytest.raises(ValidationError, match="Unsupported journal_mode"):
        StoreConfig(journal_mode="off")


def test_blank_db_path_rejected() -> None:
    with pytest.raises(ValidationError):
        StoreConfig(db_path="   ")


def test_load_store_config_from_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "store": {
                    "db_path": str(tmp_path / "data.sqlite3"),
                    "pool_size": 8,
                    "journal_mode": "truncate",
                }
            }
        ),
        encoding="utf-8",
    )
    loaded = load_store_config(config_path)
    assert loaded.pool_size == 8
    assert loaded.journal_mode == "truncate"
    assert loaded.db_path == str(tmp_path / "data.sqlite3")


def test_load_store_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_store_config(tmp_path / "missing.json")


def test_load_store_config_missing_key(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"other": {}}), encoding="utf-8")
    assert load_store_config(config_path) == StoreConfig()


def test_load_store_config_explicit_null_uses_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"store": None}), encoding="utf-8")
    assert load_store_config(config_path) == StoreConfig()


def test_load_store_config_non_object_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"store": [1, 2]}), encoding="utf-8")
    with pytest.raises(ValueError, match="store must be an object"):
        load_store_config(config_path)


def test_load_store_config_invalid_value(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"store": {"pool_size": 0}}), encoding="utf-8")
    with pytest.raises(ValidationError):
        load_store_config(config_path)
