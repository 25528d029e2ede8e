from __future__ import annotations

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class KeyValueFormatter(logging.Formatter):
    """Append the record's `extra` fields as key=value pairs.

    Log calls use a short event name as the message and carry their context
    in `extra`. None values are skipped.
    """

    def __init__(self, fmt: Optional[str] = LOG_FORMAT, datefmt: Optional[str] = None):
        super().__init__(fmt, datefmt)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{k}={_render(v)}"
            for k, v in record.__dict__.items()
            if k not in _RESERVED and not k.startswith("_") and v is not None
        ]
        if not pairs:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} {' '.join(pairs)}{sep}{tail}"


def _render(value: object) -> str:
    text = str(value)
    if not text or any(c.isspace() or c in '"=' for c in text):
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'
    return text


def configure_logging(level: str | int = logging.INFO) -> None:
    """Install one stderr handler with KeyValueFormatter on the root logger."""

    handler = logging.StreamHandler()
    handler.setFormatter(KeyValueFormatter())
    logging.basicConfig(level=level, handlers=[handler])
