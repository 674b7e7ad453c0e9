"""FastMCP server entry point for the PR Assigner.

Environment:
    ASSIGNER_HOST / ASSIGNER_PORT      bind address (default 0.0.0.0:8080)
    ASSIGNER_UVICORN_LOG_LEVEL         uvicorn verbosity (default warning)
    ASSIGNER_LOG_DIR                   logfile directory (default <config dir>/logs)
    ASSIGNER_LOG_MAX_BYTES / _BACKUPS  logfile rotation
    ASSIGNER_DB_PATH / ASSIGNER_CONFIG_PATH   see pr_assigner.db
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP

from pr_assigner.db import _default_user_config_dir, assigner_lifespan

DEFAULT_PORT = 8080
LOGFILE_NAME = "assigner.jsonl"

mcp = FastMCP(
    "pr-assigner",
    instructions=(
        "Pull request reviewer assignment service. "
        "Manages teams, users, pull requests and their reviewers."
    ),
    lifespan=assigner_lifespan,
)

# Caller identity for log lines; "assigner" marks internal actions.
caller_tag: contextvars.ContextVar[str] = contextvars.ContextVar("caller_tag", default="assigner")

# Registers the tools on `mcp`, so it must follow its creation.
from pr_assigner import tools  # noqa: F401, E402


@dataclass(frozen=True)
class LogSettings:
    directory: Path
    max_bytes: int = 5 * 1024 * 1024
    backups: int = 5

    @classmethod
    def from_env(cls) -> LogSettings:
        override = os.environ.get("ASSIGNER_LOG_DIR")
        directory = Path(override).expanduser() if override else _default_user_config_dir() / "logs"
        return cls(
            directory=directory,
            max_bytes=_read_positive_int_env("ASSIGNER_LOG_MAX_BYTES", cls.max_bytes, 1024),
            backups=_read_positive_int_env("ASSIGNER_LOG_BACKUPS", cls.backups, 1),
        )


def _read_positive_int_env(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _split_operation(message: str) -> tuple[str | None, str | None]:
    """``"merge_pull_request -> pr-1 MERGED"`` gives ``("merge_pull_request", "pr-1")``."""
    operation, arrow, rest = message.partition(" -> ")
    if not arrow:
        return None, None
    subject = rest.split(maxsplit=1)[0] if rest.strip() else None
    return operation, subject


class _CallerFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.caller_tag = caller_tag.get()  # type: ignore[attr-defined]
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, with the operation and its subject pulled out of the message."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        created = datetime.fromtimestamp(record.created, UTC)
        payload: dict[str, object] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "caller_tag": getattr(record, "caller_tag", caller_tag.get()),
            "message": message,
        }
        operation, subject = _split_operation(message)
        if operation is not None:
            payload["operation"] = operation
        if subject is not None:
            payload["subject"] = subject
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(
        _CallerFormatter("%(asctime)s %(levelname).1s [%(caller_tag)s] %(message)s", "%H:%M:%S")
    )
    return handler


def _logfile_handler(settings: LogSettings) -> logging.Handler:
    settings.directory.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        settings.directory / LOGFILE_NAME,
        maxBytes=settings.max_bytes,
        backupCount=settings.backups,
        encoding="utf-8",
    )
    handler.setFormatter(_JsonFormatter())
    return handler


def _configure_logging() -> None:
    """Attach the console and logfile handlers once; later calls are no-ops."""
    logger = logging.getLogger("pr_assigner")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    roles = {getattr(handler, "_pr_assigner_role", None) for handler in logger.handlers}
    if "console" not in roles:
        handler = _console_handler()
        handler._pr_assigner_role = "console"  # type: ignore[attr-defined]
        logger.addHandler(handler)
    if "logfile" not in roles:
        handler = _logfile_handler(LogSettings.from_env())
        handler._pr_assigner_role = "logfile"  # type: ignore[attr-defined]
        logger.addHandler(handler)


# Configure on import so tool calls log even when main() is bypassed.
_configure_logging()


def main() -> None:
    """Run the assigner over streamable HTTP."""
    _configure_logging()
    mcp.run(
        transport="streamable-http",
        host=os.environ.get("ASSIGNER_HOST", "0.0.0.0"),
        port=_read_positive_int_env("ASSIGNER_PORT", DEFAULT_PORT, 1),
        log_level=os.environ.get("ASSIGNER_UVICORN_LOG_LEVEL", "warning"),
        stateless_http=True,
    )


if __name__ == "__main__":
    main()
