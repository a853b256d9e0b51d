"""Logging setup for the Ralph loop: console + durable log file, with secret redaction."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Sequence

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "ralph.log"


def redact_string(text: str, patterns: Sequence[str]) -> str:
    """Mask every secret matched by ``patterns``."""
    for pattern in patterns:
        try:
            text = re.sub(pattern, "[REDACTED]", text)
        except re.error:
            continue
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs API keys and tokens from log records."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._patterns = list(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._patterns:
            record.msg = redact_string(str(record.msg), self._patterns)
            if record.args:
                if isinstance(record.args, dict):
                    record.args = {
                        k: redact_string(v, self._patterns) if isinstance(v, str) else v
                        for k, v in record.args.items()
                    }
                else:
                    record.args = tuple(
                        redact_string(a, self._patterns) if isinstance(a, str) else a
                        for a in record.args
                    )
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for --json-log."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        })


def configure_logging(
    log_dir: str | Path,
    verbose: bool = False,
    json_log: bool = False,
    redact_patterns: Sequence[str] = (),
) -> Path:
    """Install console and file handlers on the root logger.

    The file handler appends to ``<log_dir>/ralph.log`` so every status line
    survives the process. Returns the log file path.
    """
    level = logging.DEBUG if verbose else logging.INFO
    log_path = Path(log_dir) / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_ralph_handler", False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler()
    if json_log:
        console.setFormatter(JsonFormatter(datefmt=DATE_FORMAT))
    else:
        console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    for handler in (console, file_handler):
        handler.addFilter(RedactingFilter(redact_patterns))
        handler._ralph_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)
    return log_path
