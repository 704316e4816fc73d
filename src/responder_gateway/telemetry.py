from __future__ import annotations

from contextlib import contextmanager
import json
import logging
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Generator[Span, None, None]:
    tracer = trace.get_tracer("responder_gateway")
    with tracer.start_as_current_span(name) as span:
        if attributes:
            span_set_attributes(span, attributes)
        yield span


def span_set_attributes(span: Span, attributes: dict[str, Any]) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            span.set_attribute(key, value)
            continue
        span.set_attribute(key, str(value))


def span_record_error(span: Span, error: Exception, failure_type: str) -> None:
    span.set_attribute("failure_type", failure_type)
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))


def telemetry_tags(
    *,
    tenant_id: str | None = None,
    sender: str | None = None,
    session_state: str | None = None,
    outcome: str | None = None,
    category: str | None = None,
    environment: str | None = None,
    latency_ms: int | None = None,
    failure_type: str | None = None,
) -> dict[str, str | int]:
    tags: dict[str, str | int | None] = {
        "tenant_id": tenant_id,
        "sender": sender,
        "session_state": session_state,
        "outcome": outcome,
        "category": category,
        "environment": environment,
        "latency_ms": latency_ms,
        "failure_type": failure_type,
    }
    return {key: value for key, value in tags.items() if value is not None}


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: object) -> None:
    payload = {"event": event, **fields}
    logger.log(level, "%s", json.dumps(payload, sort_keys=True, default=str))
