"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (append latency, subscriber counts, etc.)
- Health check utilities

Configuration:
- LABELER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- LABELER_LOG_FORMAT: json, text (default: json in production)
- LABELER_PRODUCTION: Enable production mode

Usage:
    from labeler.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Label created", seq=label_id, val="spam")
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_did_var: ContextVar[str] = ContextVar("actor_did", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("LABELER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("LABELER_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("LABELER_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "labeler.core.labeler",
        "message": "Label created",
        "request_id": "abc-123",
        "actor_did": "did:plc:...",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        actor_did = actor_did_var.get()
        if actor_did:
            log_data["actor_did"] = actor_did

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that moves keyword arguments into `extra`.

    Usage:
        logger = get_logger(__name__)
        logger.info("Subscriber registered", topic=topic, cursor=cursor)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    - Generates a request ID per request (or honours X-Request-ID)
    - Logs request/response with timing
    - Records request metrics

    BaseHTTPMiddleware only sees HTTP requests; the WebSocket stream
    logs its own lifecycle in the replay coordinator.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        logger = get_logger("labeler.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            query=str(request.query_params) if request.query_params else None,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING

            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            get_metrics().record_request(duration_ms, success=False)
            raise

        finally:
            request_id_var.set("")
            actor_did_var.set("")


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    labels_appended: int = 0
    signatures_backfilled: int = 0
    queries_total: int = 0
    subscriptions_opened: int = 0
    subscriptions_rejected: int = 0
    frames_sent: int = 0
    send_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Gauges
    active_subscribers: int = 0

    # Histograms (simplified as lists)
    append_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    def record_append(self, latency_ms: float) -> None:
        """Record a label append."""
        self.labels_appended += 1
        self.append_latencies_ms.append(latency_ms)
        # Keep only last 1000 samples
        if len(self.append_latencies_ms) > 1000:
            self.append_latencies_ms = self.append_latencies_ms[-1000:]

    def record_request(self, latency_ms: float, success: bool) -> None:
        """Record a request."""
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms.append(latency_ms)
        if len(self.request_latencies_ms) > 1000:
            self.request_latencies_ms = self.request_latencies_ms[-1000:]

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "labels_appended": self.labels_appended,
            "signatures_backfilled": self.signatures_backfilled,
            "queries_total": self.queries_total,
            "subscriptions_opened": self.subscriptions_opened,
            "subscriptions_rejected": self.subscriptions_rejected,
            "frames_sent": self.frames_sent,
            "send_failures": self.send_failures,
            "active_subscribers": self.active_subscribers,
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "append_latency_p50_ms": percentile(self.append_latencies_ms, 0.5),
            "append_latency_p95_ms": percentile(self.append_latencies_ms, 0.95),
            "append_latency_p99_ms": percentile(self.append_latencies_ms, 0.99),
            "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
            "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
        }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


async def check_health(store=None, hub=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: LabelStore instance
        hub: SubscriptionHub instance
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if store is not None:
        try:
            head = await store.max_id()
            checks["label_store"] = {
                "status": "healthy",
                "backend": type(store).__name__,
                "head": head,
            }
        except Exception as e:
            checks["label_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    if hub is not None:
        checks["subscriptions"] = {
            "status": "healthy",
            "subscribers": hub.subscriber_count(),
        }

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
