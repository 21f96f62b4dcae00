from __future__ import annotations

import contextvars
import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


# Prometheus custom registry and metrics
registry = CollectorRegistry()
req_counter = Counter(
    "unwrap_requests_total",
    "Total requests",
    ["path", "method", "status"],
    registry=registry,
)
latency_hist = Histogram(
    "unwrap_latency_seconds",
    "Latency by path",
    ["path"],
    registry=registry,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

decode_total = Counter(
    "unwrap_decode_total",
    "Decode attempts by encoding variant and outcome",
    ["variant", "outcome"],
    registry=registry,
)
redirect_latency_seconds = Histogram(
    "unwrap_redirect_latency_seconds",
    "Latency of a single redirect-follow request",
    registry=registry,
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10),
)
redirect_retries_total = Counter(
    "unwrap_redirect_retries_total", "Inner retries of the redirect-follow request", registry=registry
)
blocked_urls_total = Counter(
    "unwrap_blocked_urls_total",
    "Outbound URLs rejected by the SSRF guard",
    ["reason"],
    registry=registry,
)
retry_decisions_total = Counter(
    "unwrap_retry_decisions_total",
    "Scheduler decisions (complete, retry, give_up)",
    ["action"],
    registry=registry,
)

# Readiness gauge for health reporting
readiness_gauge = Gauge(
    "unwrap_readiness", "Readiness status (1=ready, 0=not ready)", registry=registry
)


def set_ready() -> None:
    readiness_gauge.set(1)


def set_unready() -> None:
    readiness_gauge.set(0)


# Correlation id context
correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "service": "unwrap-worker",
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": correlation_id.get(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.handlers.clear()
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter())
    root.addHandler(h)
    root.setLevel(level)
    # httpx logs every redirect hop at INFO; the decoder logs the outcome instead
    logging.getLogger("httpx").setLevel(max(logging.WARNING, root.level))


# Metrics router
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def metrics() -> Response:
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
