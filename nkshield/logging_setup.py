"""Logging configuration for log drains and SIEM ingestion."""

import json
import logging
import sys


class SecurityEventFormatter(logging.Formatter):
    """Formats security events as `[TAG] {json}` lines.

    Records logged with ``extra={"event": (tag, payload)}`` are rendered as a
    single tagged JSON line so log drains can route them.  Everything else
    gets a level prefix.
    """

    LEVEL_MAP = {
        logging.DEBUG: "[debug] ",
        logging.INFO: "",
        logging.WARNING: "[warn] ",
        logging.ERROR: "[error] ",
        logging.CRITICAL: "[critical] ",
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with an event tag or level prefix."""
        event = getattr(record, "event", None)
        if event is not None:
            tag, payload = event
            return f"[{tag}] {json.dumps(payload, sort_keys=True, default=str)}"
        prefix = self.LEVEL_MAP.get(record.levelno, "")
        message = super().format(record)
        if prefix:
            return f"{prefix}{message}"
        return message


def log_event(logger: logging.Logger, tag: str, payload: dict, level: int = logging.WARNING) -> None:
    """Emit a tagged security event (payload must only carry hashed IPs)."""
    logger.log(level, f"{tag}: {payload}", extra={"event": (tag, payload)})


def setup_logging(debug: bool = False) -> logging.Logger:
    """
    Set up logging for the service.

    Args:
        debug: Enable debug-level logging

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("nkshield")
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        SecurityEventFormatter(fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    )

    logger.addHandler(handler)
    return logger
