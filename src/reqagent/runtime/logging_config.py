"""Process-wide logging for reqagent.

Log lines carry the provider currently serving a call, the project whose
documents are being loaded, and the generation request id. Those three
values live in context vars so they follow a request across awaits and
tasks without being threaded through every signature.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reqagent.config import ReqAgentConfig

# Set by the fallback manager, the large-scale loader and the generator.
ctx_provider: ContextVar[str] = ContextVar("ctx_provider", default="")
ctx_project_id: ContextVar[str] = ContextVar("ctx_project_id", default="")
ctx_request_id: ContextVar[str] = ContextVar("ctx_request_id", default="")

LOG_FILE_NAME = "reqagent.log"
_ISO_DATEFMT = "%Y-%m-%dT%H:%M:%S"

# (record attribute, short tag for the terminal suffix, max chars shown)
_CONTEXT_FIELDS: tuple[tuple[str, str, int | None], ...] = (
    ("provider", "prov", None),
    ("project_id", "proj", 12),
    ("request_id", "req", 12),
)

# Vendor SDKs log every request at INFO; keep them to warnings.
_QUIET_LOGGERS = ("litellm", "LiteLLM", "litellm.utils", "httpx", "httpcore", "aiosqlite")


def _context_values(record: logging.LogRecord) -> list[tuple[str, str, int | None, str]]:
    found = []
    for attr, tag, width in _CONTEXT_FIELDS:
        value = getattr(record, attr, "")
        if value:
            found.append((attr, tag, width, value))
    return found


class CorrelationFilter(logging.Filter):
    """Copy provider, project and request ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.provider = ctx_provider.get("")  # type: ignore[attr-defined]
        record.project_id = ctx_project_id.get("")  # type: ignore[attr-defined]
        record.request_id = ctx_request_id.get("")  # type: ignore[attr-defined]
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for attr, _tag, _width, value in _context_values(record):
            entry[attr] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Terminal format: ``... msg [prov=ollama proj=demo req=3f2a...]``."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        tags = [
            f"{tag}={value[:width] if width else value}"
            for _attr, tag, width, value in _context_values(record)
        ]
        return f"{base} [{' '.join(tags)}]" if tags else base


def _attach(
    root: logging.Logger,
    handler: logging.Handler,
    formatter: logging.Formatter,
    corr_filter: CorrelationFilter,
) -> None:
    handler.setFormatter(formatter)
    handler.addFilter(corr_filter)
    root.addHandler(handler)


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = False,
    log_dir: str | Path | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    module_levels: dict[str, str] | None = None,
) -> None:
    """Replace the root handlers with a stderr handler and an optional log file.

    The file under ``log_dir`` is always JSON and rotates at ``max_bytes``.
    ``module_levels`` maps logger names to levels, e.g.
    ``{"reqagent.runtime.fallback": "DEBUG"}`` to trace provider switches.
    """
    root = logging.getLogger()
    root.handlers.clear()
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)
    corr_filter = CorrelationFilter()

    console_formatter: logging.Formatter
    if json_output:
        console_formatter = JSONFormatter(datefmt=_ISO_DATEFMT)
    else:
        console_formatter = HumanFormatter(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    _attach(root, logging.StreamHandler(sys.stderr), console_formatter, corr_filter)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        _attach(root, file_handler, JSONFormatter(datefmt=_ISO_DATEFMT), corr_filter)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    for name, name_level in (module_levels or {}).items():
        logging.getLogger(name).setLevel(getattr(logging, name_level.upper(), numeric_level))


def configure_from_config(config: ReqAgentConfig, *, verbose: bool = False) -> None:
    """Apply the ``[runtime]`` section; ``--verbose`` forces DEBUG."""
    runtime = config.runtime
    configure_logging(
        level="DEBUG" if verbose else runtime.log_level,
        json_output=runtime.log_json,
        log_dir=runtime.log_dir,
        module_levels=runtime.module_levels,
    )


def update_log_level(level: str) -> None:
    """Change the root level in place; unknown names are ignored."""
    numeric = getattr(logging, level.upper(), None)
    if numeric is not None:
        logging.getLogger().setLevel(numeric)
        logging.getLogger(__name__).info("logging.level_changed level=%s", level)
