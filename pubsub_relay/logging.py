"""
JSON log lines for the relay (stdlib logging, one object per line on stdout).

Besides service/env, each line carries the HTTP request id and the Pub/Sub
message id when they are bound, so a single delivery can be followed from the
push request through the Bigtable write and the republish.
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional


DEFAULT_SERVICE = "pubsub-bigtable-relay"

_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_MESSAGE_ID: ContextVar[Optional[str]] = ContextVar("message_id", default=None)

# Anything on a record outside these came in through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "event_type"}

# Cloud Logging severity names.
_SEVERITY = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARNING",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "CRITICAL",
}


def _one_line(v: Any, *, max_len: int) -> str:
    s = "" if v is None else str(v)
    s = s.replace("\r", " ").replace("\n", " ").strip()
    return s[:max_len]


@contextmanager
def _bound(var: ContextVar[Optional[str]], value: Optional[str]) -> Iterator[Optional[str]]:
    token = var.set(value)
    try:
        yield value
    finally:
        var.reset(token)


def bind_request_id(request_id: Optional[str] = None) -> Any:
    return _bound(_REQUEST_ID, _one_line(request_id, max_len=128) or uuid.uuid4().hex)


def bind_message_id(message_id: Optional[str]) -> Any:
    """Tag every line logged in this context with the Pub/Sub message id."""
    return _bound(_MESSAGE_ID, _one_line(message_id, max_len=128) or None)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str = DEFAULT_SERVICE, env: str = "unknown") -> None:
        super().__init__()
        self._service = service
        self._env = env

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "severity": _SEVERITY.get(record.levelno, "DEFAULT"),
            "service": self._service,
            "env": self._env,
            "logger": record.name,
            "event_type": getattr(record, "event_type", None) or "log",
            "message": record.getMessage()[:4000],
        }
        request_id = _REQUEST_ID.get()
        if request_id:
            entry["request_id"] = request_id
        message_id = _MESSAGE_ID.get()
        if message_id:
            entry["messageId"] = message_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)[-8000:]

        for k, v in record.__dict__.items():
            if k not in _RECORD_ATTRS and not k.startswith("_"):
                entry[k] = v

        # Payloads are arbitrary JSON trees; anything else falls back to str().
        return json.dumps(entry, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(*, service: str = DEFAULT_SERVICE, env: str = "unknown", level: str = "INFO") -> None:
    """
    Route the root logger (and uvicorn's) to stdout as JSON lines.

    Safe to call more than once; the last call wins.
    """
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(str(level).upper())

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    exc_info: Any = None,
    **fields: Any,
) -> None:
    """
    Log one semantic event; `event_type` is the stable key dashboards filter on.
    """
    lvl = getattr(logging, str(severity).upper(), logging.INFO)
    logger.log(lvl, message or event_type, exc_info=exc_info, extra={"event_type": event_type, **fields})


def install_fastapi_request_id_middleware(app: Any, *, service: str = DEFAULT_SERVICE) -> None:
    """
    Bind X-Request-ID (or a fresh id) for each request, echo it back and log
    one `http.request` line with status and duration.
    """
    http_logger = logging.getLogger("pubsub_relay.http.access")

    @app.middleware("http")
    async def _request_id_mw(request, call_next):  # type: ignore[no-untyped-def]
        incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
        start = time.perf_counter()
        status_code = 500
        with bind_request_id(incoming) as request_id:
            try:
                response = await call_next(request)
                status_code = response.status_code
            finally:
                log_event(
                    http_logger,
                    "http.request",
                    service=service,
                    method=request.method,
                    path=request.url.path,
                    status_code=status_code,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                )
        response.headers["X-Request-ID"] = request_id
        return response
