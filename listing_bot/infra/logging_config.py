# listing_bot/infra/logging_config.py
"""
Logging setup: JSON lines in production, coloured single lines in development.

Senders are WhatsApp phone numbers. They are masked wherever they reach a
log line: the ``sender_id`` extra, and any phone-like digit run inside the
message text itself.
"""
import json
import logging
import re
import sys
from datetime import datetime, timezone

_CONTEXT_FIELDS = ("sender_id", "listing_id", "request_id")
_CONSOLE_LABELS = {"sender_id": "sender", "listing_id": "listing", "request_id": "req"}

# E.164 without the plus is 10-15 digits; shorter runs are prices, years, counts.
_PHONE_RE = re.compile(r"(?<![\w*])\+?\d{10,15}(?!\w)")


def mask_sender(sender_id: str | None) -> str:
    """Mask a phone-number sender id for logs: ``2348012345678`` -> ``2348****78``."""
    if not sender_id or len(sender_id) <= 6:
        return "***"
    return sender_id[:4] + "****" + sender_id[-2:]


def scrub_phones(text: str) -> str:
    """Mask every phone-like number inside free text."""
    return _PHONE_RE.sub(lambda m: mask_sender(m.group(0)), text)


def _record_context(record: logging.LogRecord) -> dict:
    context = {}
    for name in _CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is None:
            continue
        context[name] = mask_sender(value) if name == "sender_id" else value
    return context


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": scrub_phones(record.getMessage()),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            **_record_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        context = " ".join(
            f"{_CONSOLE_LABELS[name]}={value}" for name, value in _record_context(record).items()
        )

        line = (
            f"{color}[{_timestamp(record):%Y-%m-%d %H:%M:%S}] {record.levelname:8}{self.RESET} "
            f"{record.name}{f' [{context}]' if context else ''} - {scrub_phones(record.getMessage())}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: JSON lines instead of the coloured console format
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root.addHandler(handler)

    # Client libraries log every request at INFO
    for noisy in ("uvicorn.access", "botocore", "boto3", "urllib3", "httpx", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps every record with the same context extras.

        log = LogContext(logger, sender_id=sender_id)
        log.info("Session opened")
    """

    def __init__(
            self,
            logger: logging.Logger,
            sender_id: str | None = None,
            listing_id: str | None = None,
            request_id: str | None = None,
    ):
        self.logger = logger
        self.context = {
            name: value
            for name, value in (
                ("sender_id", sender_id),
                ("listing_id", listing_id),
                ("request_id", request_id),
            )
            if value is not None
        }

    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        extra = {**kwargs.pop("extra", {}), **self.context}
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)
