from __future__ import annotations

import contextvars
import json
import logging
import os
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, TypeVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

T = TypeVar("T")

# Mailbox credentials travel through the OAuth and ingestion paths; they never reach a log line.
_REDACTED_FIELDS = frozenset(
    {"access_token", "refresh_token", "client_secret", "password", "authorization"}
)
_REDACTED = "[redacted]"


@dataclass(frozen=True)
class LogContext:
    """Correlation ids stamped on every log line emitted while bound."""

    request_id: str | None = None
    task_id: str | None = None
    actor_id: str | None = None
    account_id: str | None = None


_context: contextvars.ContextVar[LogContext] = contextvars.ContextVar(
    "payment_recon_log_context", default=LogContext()
)
_configured = False


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None) or record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def configure_logging() -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelNamesMapping().get(level_name, logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("payment_recon")
    root.setLevel(level)
    root.handlers = [handler]
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def current_log_context() -> LogContext:
    return _context.get()


def bind_log_context(**changes: str | None) -> contextvars.Token[LogContext]:
    """Layer ``changes`` over the current context; undo with ``reset_log_context``."""
    return _context.set(replace(_context.get(), **changes))


def reset_log_context(token: contextvars.Token[LogContext]) -> None:
    _context.reset(token)


def set_actor_context(actor_id: str | None) -> None:
    # Cleared when the enclosing request or task resets its binding.
    _context.set(replace(_context.get(), actor_id=actor_id))


def propagate_context(fn: Callable[..., T]) -> Callable[..., T]:
    """Wrap ``fn`` so pool threads log with the caller's correlation ids."""
    ctx = contextvars.copy_context()

    def _run(*args: Any, **kwargs: Any) -> T:
        # A context can only be entered by one thread at a time.
        return ctx.copy().run(fn, *args, **kwargs)

    return _run


def _redact(key: str, value: Any) -> Any:
    return _REDACTED if key.lower() in _REDACTED_FIELDS else value


def _merge_fields(fields: dict[str, Any]) -> dict[str, Any]:
    merged = {**asdict(_context.get()), **fields}
    return {k: _redact(k, v) for k, v in merged.items() if v is not None}


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    logger.log(level, event, extra={"event": event, "fields": _merge_fields(fields)})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.exception(event, extra={"event": event, "fields": _merge_fields(fields)})


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request id (honouring ``x-request-id``) and logs one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        logger = get_logger(__name__)
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = bind_log_context(request_id=request_id, actor_id=None)
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            log_exception(
                logger,
                "http.request.error",
                method=request.method,
                path=request.url.path,
                duration_ms=monotonic_ms(start),
            )
            raise
        else:
            response.headers["x-request-id"] = request_id
            log_event(
                logger,
                "http.request.finish",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=monotonic_ms(start),
            )
            return response
        finally:
            reset_log_context(token)
