from __future__ import annotations

import contextlib
import hashlib
import json
import logging
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Mapping

try:
    from opentelemetry import trace as otel_trace  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    otel_trace = None


LOGGER = logging.getLogger(__name__)
LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | svc=%(service_name)s | pid=%(process)d "
    "| batch=%(batch_id)s | item=%(item_code)s | trace=%(otel_trace_id)s "
    "span=%(otel_span_id)s | %(name)s | %(message)s"
)
DEFAULT_SERVICE_NAME = "asin-importer"
THIRD_PARTY_LOGGERS = ("httpx", "httpcore", "websockets")
_LOG_CONTEXT: ContextVar[dict[str, str]] = ContextVar("asin_importer_log_context", default={})


class _ObservabilityContextFilter(logging.Filter):
    def __init__(self, *, service_name: str):
        super().__init__()
        self._service_name = service_name

    @staticmethod
    def _trace_attrs() -> tuple[str, str]:
        if otel_trace is None:
            return "-", "-"
        span = otel_trace.get_current_span()
        if span is None:
            return "-", "-"
        span_context = span.get_span_context()
        if span_context is None or not span_context.is_valid:
            return "-", "-"
        return f"{span_context.trace_id:032x}", f"{span_context.span_id:016x}"

    def filter(self, record: logging.LogRecord) -> bool:
        context = dict(_LOG_CONTEXT.get())
        bound = getattr(record, "log_context", None)
        if isinstance(bound, Mapping):
            context.update({key: str(value) for key, value in bound.items()})
        record.service_name = context.get("service_name", self._service_name)
        record.batch_id = context.get("batch_id", "-")
        record.item_code = context.get("item_code", "-")
        trace_id, span_id = self._trace_attrs()
        record.otel_trace_id = trace_id
        record.otel_span_id = span_id
        return True


def set_log_context(**values: Any) -> Token[dict[str, str]]:
    context = dict(_LOG_CONTEXT.get())
    for key, value in values.items():
        if value is None:
            context.pop(key, None)
        else:
            context[key] = str(value)
    return _LOG_CONTEXT.set(context)


def reset_log_context(token: Token[dict[str, str]]) -> None:
    _LOG_CONTEXT.reset(token)


def current_log_context() -> dict[str, str]:
    return dict(_LOG_CONTEXT.get())


def setup_logging(level: str, *, service_name: str = DEFAULT_SERVICE_NAME) -> int:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        force=True,
    )
    # Handler-level filter: propagated records skip logger-level filters on the root.
    for handler in logging.getLogger().handlers:
        for existing_filter in list(handler.filters):
            if isinstance(existing_filter, _ObservabilityContextFilter):
                handler.removeFilter(existing_filter)
        handler.addFilter(_ObservabilityContextFilter(service_name=service_name))
    third_party_level = max(logging.INFO, numeric_level)
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)
    return int(numeric_level)


class ContextLogger:
    """Logger decorator that stamps a fixed context on every record.

    The parent is either a ``logging.Logger`` or another ``ContextLogger``.
    Child context wins over parent context on key collisions. The merged
    map reaches the record as ``record.log_context``.
    """

    def __init__(self, parent: logging.Logger | "ContextLogger", **context: Any):
        self._parent = parent
        self._context = {key: value for key, value in context.items() if value is not None}

    @property
    def parent(self) -> logging.Logger | "ContextLogger":
        return self._parent

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def child(self, **context: Any) -> "ContextLogger":
        return ContextLogger(self, **context)

    def isEnabledFor(self, level: int) -> bool:
        return self._parent.isEnabledFor(level)

    def log(
        self,
        level: int,
        msg: str,
        *args: Any,
        context: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        merged = dict(self._context)
        if context:
            merged.update(context)
        if isinstance(self._parent, ContextLogger):
            self._parent.log(level, msg, *args, context=merged, **kwargs)
            return
        extra = dict(kwargs.pop("extra", None) or {})
        bound = dict(extra.get("log_context") or {})
        bound.update(merged)
        extra["log_context"] = bound
        self._parent.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("exc_info", True)
        self.log(logging.ERROR, msg, *args, **kwargs)


def span_context(name: str, *, attributes: dict[str, Any] | None = None) -> Any:
    if otel_trace is None:
        return contextlib.nullcontext()
    tracer = otel_trace.get_tracer(__name__)
    return tracer.start_as_current_span(name, attributes=attributes or {})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def content_hash(*parts: Any) -> str:
    """Stable sha256 of a logical key; dict ordering does not matter."""
    payload = json.dumps(parts, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
