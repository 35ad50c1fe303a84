import logging
import os
from typing import Optional


class _DefaultFields(logging.Filter):
    """Ensures optional context fields exist so the formatter never raises KeyError."""

    _fields = ("participant_id", "group_id", "event")

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in self._fields:
            if not hasattr(record, attr):
                setattr(record, attr, "")
        return True


def _make_formatter() -> logging.Formatter:
    """key=value formatter used for every handler installed here."""
    timefmt = os.getenv("LOG_TIMEFMT", "%Y-%m-%dT%H:%M:%S%z")
    return logging.Formatter(
        fmt=(
            "time=%(asctime)s level=%(levelname)s logger=%(name)s "
            "msg=%(message)s participant_id=%(participant_id)s "
            "group_id=%(group_id)s event=%(event)s"
        ),
        datefmt=timefmt,
    )


_LOGGERS = {}


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if name in _LOGGERS:
        return _LOGGERS[name]
    logger = logging.getLogger(name or "designation")
    if not logger.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
        handler = logging.StreamHandler()
        handler.addFilter(_DefaultFields())
        handler.setFormatter(_make_formatter())
        logger.addHandler(handler)
        logger.propagate = False
    _LOGGERS[name] = logger
    return logger


def configure_logging(level: str | None = None) -> logging.Logger:
    """Install the key=value handler on the ``src`` logger tree."""
    root = get_logger("src")
    if level:
        root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return root


def context_fields(
    participant_id: str | None = None, group_id: str | None = None, event: str | None = None
) -> dict[str, dict[str, str]]:
    """Build the ``extra`` mapping for a log call."""
    return {
        "extra": {
            "participant_id": participant_id or "",
            "group_id": group_id or "",
            "event": event or "",
        }
    }
