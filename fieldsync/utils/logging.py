"""
Logging setup for the API, the background workers and the CLI scripts.

The correlation id lives in a contextvar. HTTP requests get one from the
middleware; webhook events carry the id of the request that received them,
and the processor re-binds it with correlation_scope() so a delivery and
its later processing share one id in the logs.

A handler filter stamps every record with the id, so both the JSON output
(API, workers) and the plain-text output (scripts) carry it. ServiceM8
credentials are masked before anything is written.
"""
import json
import logging
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes lifted into the JSON line when passed via extra={}
SYNC_FIELDS = (
    "event_id", "object_type", "object_uuid", "company_uuid",
    "run_id", "error_code", "attempt",
)

_SECRETS = (
    re.compile(r"(Bearer\s+)[\w.\-~+/=]+"),
    re.compile(r"""(x-api-key['"]?\s*[:=]\s*['"]?)[^'"\s,}]+""", re.IGNORECASE),
    re.compile(r"""((?:api_key|oauth_token|client_secret)['"]?\s*[:=]\s*['"]?)[^'"\s,}&]+""", re.IGNORECASE),
)

PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str]) -> Iterator[Optional[str]]:
    """
    Bind cid for the duration of the block and restore the previous id after.
    A None cid keeps whatever id is already bound.
    """
    if cid is None:
        yield get_correlation_id()
        return
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


def redact(text: str) -> str:
    for pattern in _SECRETS:
        text = pattern.sub(r"\1***", text)
    return text


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id() or "-"
        return True


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per line, timestamped from the record itself."""

    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None)
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%S.%fZ"
            ),
            "level": record.levelname,
            "correlation_id": None if cid in (None, "-") else cid,
            "module": record.name,
            "message": redact(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = redact(self.formatException(record.exc_info))
        entry.update({
            key: getattr(record, key) for key in SYNC_FIELDS
            if getattr(record, key, None) is not None
        })
        return json.dumps(entry, default=str)


class RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return redact(super().format(record))


def configure_structured_logging(log_level: str = "INFO", json_output: bool = True) -> logging.Handler:
    """
    Install a single stream handler on the root logger, replacing any others.
    json_output=False gives the plain-text format the CLI scripts use.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(StructuredJsonFormatter() if json_output else RedactingFormatter(PLAIN_FORMAT))
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
