from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

job_id_ctx_var: ContextVar[str | None] = ContextVar("job_id", default=None)
queue_name_ctx_var: ContextVar[str | None] = ContextVar("queue_name", default=None)

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JobContextFilter(logging.Filter):
    """Attach the running job id and queue name to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        # explicit extra={...} values win over the ambient context
        if not getattr(record, "job_id", None):
            record.job_id = job_id_ctx_var.get() or "-"
        if not getattr(record, "queue_name", None):
            record.queue_name = queue_name_ctx_var.get() or "-"
        return True


@contextmanager
def job_log_context(*, job_id: str, queue_name: str) -> Iterator[None]:
    job_token = job_id_ctx_var.set(job_id)
    queue_token = queue_name_ctx_var.set(queue_name)
    try:
        yield
    finally:
        job_id_ctx_var.reset(job_token)
        queue_name_ctx_var.reset(queue_token)


def _truncate_text(value: str) -> str:
    return value[:5000] if len(value) > 5000 else value


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        return _truncate_text(value)
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in list(value.items())[:100]}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in list(value)[:200]]
    try:
        return _truncate_text(str(value))
    except Exception:  # pragma: no cover
        return "<unserializable>"


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "job_id": getattr(record, "job_id", "-"),
            "queue_name": getattr(record, "queue_name", "-"),
        }
        for key, value in (getattr(record, "__dict__", {}) or {}).items():
            if key in _RESERVED_RECORD_KEYS or key in payload or key.startswith("_"):
                continue
            payload[key] = _json_safe(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(json_logs: bool = False) -> None:
    """Configure root logger with a job-aware formatter."""
    handler = logging.StreamHandler()
    handler.addFilter(JobContextFilter())
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s [%(queue_name)s:%(job_id)s] %(message)s")
        )

    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)
