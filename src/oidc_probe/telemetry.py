"""Tracing and structured logging for login flows.

Every flow logs through one structlog logger and opens OpenTelemetry spans
around its network steps. Secrets are scrubbed from log events before they
are rendered.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from . import __version__

if TYPE_CHECKING:
    from collections.abc import Generator, MutableMapping

    from .config import TelemetryConfig

TRACER_NAME = "oidc-probe"

_tracer: trace.Tracer | None = None
_logger: structlog.BoundLogger | None = None

_SECRET_KEYS = frozenset(
    {
        "client_secret",
        "access_token",
        "refresh_token",
        "id_token",
        "code_verifier",
        "password",
    }
)

_CODE_PREVIEW = 20


def get_tracer() -> trace.Tracer:
    """Get or create the probe tracer."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME, __version__)
    return _tracer


def get_logger() -> structlog.BoundLogger:
    """Get or create the probe logger."""
    global _logger
    if _logger is None:
        _logger = structlog.get_logger(TRACER_NAME)
    return _logger


def flow_logger(state: str, **context: Any) -> structlog.BoundLogger:
    """Logger bound to one flow, keyed by a prefix of its ``state``."""
    return get_logger().bind(state_prefix=state[:8], **context)


def redact(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` safe for logging.

    Secret values are replaced, authorization codes are truncated.
    """
    safe: dict[str, Any] = {}
    for key, value in data.items():
        if key in _SECRET_KEYS:
            safe[key] = "***hidden***" if value else value
        elif key == "code" and isinstance(value, str) and len(value) > _CODE_PREVIEW:
            safe[key] = value[:_CODE_PREVIEW] + "..."
        else:
            safe[key] = value
    return safe


def redact_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor applying :func:`redact` to every event."""
    return redact(dict(event_dict))


def configure_telemetry(config: TelemetryConfig) -> None:
    """Install the probe's logging pipeline and tracer.

    With telemetry disabled spans become no-ops; logging keeps structlog's
    defaults.
    """
    global _tracer, _logger

    if not config.enabled:
        _tracer = trace.NoOpTracer()
        return

    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_processor,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _tracer = trace.get_tracer(config.service_name, __version__)
    _logger = structlog.get_logger(config.service_name)


@contextmanager
def trace_operation(
    name: str,
    *,
    attributes: dict[str, Any] | None = None,
) -> Generator[trace.Span, None, None]:
    """Run a block inside a span.

    ``None`` attributes are skipped. Probe errors also tag the span with
    their kind so failed flows can be grouped by cause.
    """
    with get_tracer().start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            kind = getattr(e, "kind", None)
            if kind is not None:
                span.set_attribute("probe.error_kind", str(kind))
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise
