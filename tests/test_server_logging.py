"""Tests for assigner logfile configuration in server logging setup."""

from __future__ import annotations

import io
import json
import logging
from pathlib import Path

from pr_assigner import server


def _reset_assigner_logger_handlers() -> None:
    logger = logging.getLogger("pr_assigner")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _get_console_handler() -> logging.Handler:
    logger = logging.getLogger("pr_assigner")
    for handler in logger.handlers:
        if getattr(handler, "_pr_assigner_role", None) == "console":
            return handler
    raise AssertionError("Missing assigner console handler")


def test_configure_logging_writes_structured_assigner_log(
    monkeypatch,
    tmp_path: Path,
) -> None:
    _reset_assigner_logger_handlers()
    monkeypatch.delenv("ASSIGNER_LOG_DIR", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

    server._configure_logging()
    logger = logging.getLogger("pr_assigner")
    token = server.caller_tag.set("alice")
    try:
        logger.info("assigner log entry")
    finally:
        server.caller_tag.reset(token)
        _reset_assigner_logger_handlers()

    log_path = tmp_path / "xdg" / "pr-assigner" / "logs" / "assigner.jsonl"
    assert log_path.exists()
    lines = [line for line in log_path.read_text(encoding="utf-8").splitlines() if line.strip()]
    assert lines
    payload = json.loads(lines[-1])
    assert payload["message"] == "assigner log entry"
    assert payload["caller_tag"] == "alice"
    assert payload["level"] == "info"
    assert payload["logger"] == "pr_assigner"
    assert payload["ts"].endswith("Z")


def test_logfile_records_operation_name(monkeypatch, tmp_path: Path) -> None:
    _reset_assigner_logger_handlers()
    monkeypatch.setenv("ASSIGNER_LOG_DIR", str(tmp_path / "logs"))

    server._configure_logging()
    logger = logging.getLogger("pr_assigner")
    logger.info("reassign_reviewer -> pr-1 bob => carol")
    logger.info("Assigner ready")
    _reset_assigner_logger_handlers()

    log_path = tmp_path / "logs" / "assigner.jsonl"
    payloads = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert payloads[0]["operation"] == "reassign_reviewer"
    assert payloads[0]["subject"] == "pr-1"
    assert "operation" not in payloads[1]
    assert "subject" not in payloads[1]


def test_configure_logging_honors_log_dir_override(monkeypatch, tmp_path: Path) -> None:
    _reset_assigner_logger_handlers()
    monkeypatch.setenv("ASSIGNER_LOG_DIR", str(tmp_path / "custom-logs"))

    server._configure_logging()
    logging.getLogger("pr_assigner").info("override entry")
    _reset_assigner_logger_handlers()

    log_path = tmp_path / "custom-logs" / "assigner.jsonl"
    assert log_path.exists()
    assert "override entry" in log_path.read_text(encoding="utf-8")


def test_configure_logging_rotates_assigner_log(
    monkeypatch,
    tmp_path: Path,
) -> None:
    _reset_assigner_logger_handlers()
    monkeypatch.delenv("ASSIGNER_LOG_DIR", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("ASSIGNER_LOG_MAX_BYTES", "1024")
    monkeypatch.setenv("ASSIGNER_LOG_BACKUPS", "2")

    server._configure_logging()
    logger = logging.getLogger("pr_assigner")
    for idx in range(3):
        logger.info("x" * 900 + f"-{idx}")
    _reset_assigner_logger_handlers()

    base = tmp_path / "xdg" / "pr-assigner" / "logs" / "assigner.jsonl"
    assert base.exists()
    assert Path(f"{base}.1").exists()


def test_configure_logging_is_idempotent(monkeypatch, tmp_path: Path) -> None:
    _reset_assigner_logger_handlers()
    monkeypatch.setenv("ASSIGNER_LOG_DIR", str(tmp_path / "logs"))

    server._configure_logging()
    server._configure_logging()
    handlers = logging.getLogger("pr_assigner").handlers
    assert len(handlers) == 2
    _reset_assigner_logger_handlers()


def test_console_lines_carry_caller_tag(monkeypatch, tmp_path: Path) -> None:
    _reset_assigner_logger_handlers()
    monkeypatch.setenv("ASSIGNER_LOG_DIR", str(tmp_path / "logs"))
    server._configure_logging()
    stream_handler = _get_console_handler()
    stream = io.StringIO()
    stream_handler.setStream(stream)

    token = server.caller_tag.set("bob")
    try:
        logging.getLogger("pr_assigner").info("merge_pull_request -> pr-1 MERGED")
    finally:
        server.caller_tag.reset(token)
    stream_handler.flush()

    assert "I [bob] merge_pull_request -> pr-1 MERGED" in stream.getvalue()
    _reset_assigner_logger_handlers()


def test_invalid_env_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("ASSIGNER_PORT", "not-a-number")
    assert server._read_positive_int_env("ASSIGNER_PORT", server.DEFAULT_PORT, 1) == 8080
    monkeypatch.setenv("ASSIGNER_PORT", "0")
    assert server._read_positive_int_env("ASSIGNER_PORT", server.DEFAULT_PORT, 1) == 8080
    monkeypatch.setenv("ASSIGNER_PORT", "9090")
    assert server._read_positive_int_env("ASSIGNER_PORT", server.DEFAULT_PORT, 1) == 9090


def test_log_settings_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ASSIGNER_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("ASSIGNER_LOG_MAX_BYTES", "10")
    monkeypatch.setenv("ASSIGNER_LOG_BACKUPS", "3")
    settings = server.LogSettings.from_env()
    assert settings.directory == tmp_path / "logs"
    # Below the 1024-byte floor, so the default stands.
    assert settings.max_bytes == 5 * 1024 * 1024
    assert settings.backups == 3


def test_operation_without_subject() -> None:
    assert server._split_operation("create_pull_request -> ") == ("create_pull_request", None)
    assert server._split_operation("Assigner ready") == (None, None)
