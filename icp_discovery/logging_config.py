"""
Logging Configuration
=====================
Call setup_logging() once at application startup. Modules then use:
    logger = logging.getLogger(__name__)

Discovery and scoring runs log through a RunLogger created per run, which
stamps every record with the workspace and run ids so lines from runs for
different workspaces stay attributable.

Supports two formats:
- "text": Human-readable with timestamps and run context
- "json": JSON lines for log aggregation
"""

import json
import logging
import os
import sys
import uuid
from datetime import datetime
from typing import Any, MutableMapping, Optional, Tuple

from .config.settings import LOGGING_CONFIG

CONTEXT_FIELDS = ("workspace_id", "run_id", "run_type", "stage", "duration_ms")


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable log formatter"""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        run_id = getattr(record, "run_id", None)
        if run_id:
            line = f"{line} [workspace={getattr(record, 'workspace_id', '-')} run={run_id}]"
        return line


_initialized = False


def setup_logging(level: str = None, fmt: str = None, log_file: str = None):
    """
    Configure logging for the application. Safe to call multiple times.

    Args:
        level: Log level override (default: LOG_LEVEL env var or INFO)
        fmt: "text" or "json" (default: LOG_FORMAT env var)
        log_file: Optional log file path (default: LOG_FILE env var)
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = level or LOGGING_CONFIG["level"]
    fmt = fmt or LOGGING_CONFIG["format"]
    log_file = log_file or LOGGING_CONFIG["file"]

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if fmt == "json" else TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger("icp_discovery").info(
        "Logging configured: level=%s, format=%s%s",
        level, fmt, f", file={log_file}" if log_file else "",
    )


class RunLogger(logging.LoggerAdapter):
    """Logger adapter that carries run context into every record"""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    @property
    def workspace_id(self) -> str:
        return self.extra["workspace_id"]

    @property
    def run_id(self) -> str:
        return self.extra["run_id"]

    def for_stage(self, stage: str) -> "RunLogger":
        return RunLogger(self.logger, {**self.extra, "stage": stage})


def get_run_logger(
    workspace_id: str,
    run_type: str,
    run_id: Optional[str] = None,
    name: str = "icp_discovery.run",
) -> RunLogger:
    """
    Create a logger bound to one discovery or scoring run.

    Usage:
        log = get_run_logger("ws_1", "discovery")
        log.info("Feature matrix built", extra={"duration_ms": 12.5})
    """
    return RunLogger(
        logging.getLogger(name),
        {
            "workspace_id": workspace_id,
            "run_id": run_id or uuid.uuid4().hex[:12],
            "run_type": run_type,
        },
    )
