"""
Observability for CaseTrail: structured logs, request context, counters
and health checks.

Environment:
- CASETRAIL_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CASETRAIL_LOG_FORMAT: json or text (default: json when CASETRAIL_PRODUCTION is set)
- CASETRAIL_PRODUCTION: enables production defaults

Usage:
    from casetrail.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Case filed", case_number=case.case_number, submitter_id=str(actor.id))

Keyword fields become attributes of the LogRecord, so they must not reuse
LogRecord's own attribute names (``name``, ``filename``, ``module`` ...).
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import Counter, deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
wallet_var: ContextVar[str] = ContextVar("wallet", default="")

_TRUTHY = ("1", "true", "yes")

# Attributes every LogRecord carries; anything else on a record came from a caller
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


@dataclass(frozen=True)
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        production = os.environ.get("CASETRAIL_PRODUCTION", "").lower() in _TRUTHY
        level_name = os.environ.get("CASETRAIL_LOG_LEVEL", "INFO").upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level = logging.INFO

        fmt = os.environ.get("CASETRAIL_LOG_FORMAT", "").lower()
        json_output = fmt == "json" or (fmt != "text" and production)
        return cls(level=level, json_output=json_output)


def _caller_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: v for k, v in record.__dict__.items()
        if k not in _RECORD_ATTRS and not k.startswith("_")
    }


class CaseTrailFormatter(logging.Formatter):
    """
    Renders one line per record, either as a JSON object or as text.

    The JSON form carries the request id and session wallet of the
    request being served, plus whatever fields the caller passed:

        {"timestamp": "...", "level": "INFO", "logger": "casetrail.core.workflow",
         "message": "Caseworker assigned", "request_id": "abc12345",
         "wallet": "0xabc...", "case_number": "CASE-2026-000001"}
    """

    def __init__(self, json_output: bool = True):
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        request_id = request_id_var.get()

        if not self.json_output:
            tag = f"[{request_id[:8]}] " if request_id else ""
            line = f"{now:%Y-%m-%d %H:%M:%S} {record.levelname:8} {tag}{record.name}: {record.getMessage()}"
            if record.exc_info:
                line += "\n" + self.formatException(record.exc_info)
            return line

        entry: Dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request_id:
            entry["request_id"] = request_id
        if wallet_var.get():
            entry["wallet"] = wallet_var.get()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_caller_fields(record))
        return json.dumps(entry, default=str)


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that turns keyword arguments into structured fields.

    Fields bound with ``bind`` are added to every line it logs:

        log = get_logger(__name__).bind(case_id=str(case.id))
        log.info("Status updated", new_status="closed")
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = dict(self.extra)
        fields.update(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            fields[key] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs

    def bind(self, **fields: Any) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **fields})


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """Install a single stdout handler on the root logger. Safe to call again."""
    settings = settings or LogSettings.from_env()
    root = logging.getLogger()
    root.setLevel(settings.level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.level)
    handler.setFormatter(CaseTrailFormatter(json_output=settings.json_output))
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _session_wallet(request: Request) -> str:
    from casetrail.api.auth import SESSION_COOKIE, read_session_cookie

    cookie = request.cookies.get(SESSION_COOKIE)
    session = read_session_cookie(cookie) if cookie else None
    return session.wallet_address if session else ""


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id (client-supplied X-Request-ID or a fresh one) and
    the session wallet to every log line of a request, then logs the
    outcome with its duration and feeds the request counters.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_id_var.set(request_id)
        wallet_var.set(_session_wallet(request))

        log = get_logger("casetrail.request").bind(method=request.method, path=request.url.path)
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()
        log.debug(route, client_ip=request.client.host if request.client else None)

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            log.exception(f"{route} -> 500", status_code=500, duration_ms=round(elapsed, 2), error=str(e))
            get_metrics().record_request(elapsed, success=False)
            raise
        else:
            elapsed = (time.perf_counter() - started) * 1000
            level = logging.INFO if response.status_code < 400 else logging.WARNING
            log.log(level, f"{route} -> {response.status_code}",
                    status_code=response.status_code, duration_ms=round(elapsed, 2))
            get_metrics().record_request(elapsed, success=response.status_code < 500)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.set("")
            wallet_var.set("")


class LatencyWindow:
    """The most recent latency samples, in milliseconds."""

    def __init__(self, size: int = 1000):
        self._samples: deque = deque(maxlen=size)

    def add(self, value_ms: float) -> None:
        self._samples.append(value_ms)

    def percentile(self, p: float) -> Optional[float]:
        if not self._samples:
            return None
        ordered = sorted(self._samples)
        return round(ordered[min(int(len(ordered) * p), len(ordered) - 1)], 2)

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)


@dataclass
class MetricsCollector:
    """Process-local counters for requests, ledger calls and workflow outcomes."""

    requests_total: int = 0
    requests_failed: int = 0
    ledger_invocations: int = 0
    # "<operation>:<outcome>" -> count
    transitions: Counter = field(default_factory=Counter)
    # failure kind -> count
    ledger_failures: Counter = field(default_factory=Counter)
    ledger_latency: LatencyWindow = field(default_factory=LatencyWindow)
    request_latency: LatencyWindow = field(default_factory=LatencyWindow)

    def record_ledger_call(self, latency_ms: float, failure_kind: Optional[str] = None) -> None:
        self.ledger_invocations += 1
        if failure_kind:
            self.ledger_failures[failure_kind] += 1
        self.ledger_latency.add(latency_ms)

    def record_transition(self, operation: str, outcome: str) -> None:
        self.transitions[f"{operation}:{outcome}"] += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.requests_total += 1
        self.requests_failed += not success
        self.request_latency.add(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "ledger_invocations": self.ledger_invocations,
            "ledger_failures": dict(self.ledger_failures),
            "transitions": dict(self.transitions),
        }
        for name, window in (("ledger", self.ledger_latency), ("request", self.request_latency)):
            summary[f"{name}_latency_p50_ms"] = window.percentile(0.5)
            summary[f"{name}_latency_p95_ms"] = window.percentile(0.95)
        return summary

    def reset(self) -> None:
        self.requests_total = self.requests_failed = self.ledger_invocations = 0
        self.transitions.clear()
        self.ledger_failures.clear()
        self.ledger_latency.clear()
        self.request_latency.clear()


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


async def _store_check(store) -> Dict[str, Any]:
    try:
        await store.ping()
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", "backend": type(store).__name__}


def _ledger_check(ledger) -> Dict[str, Any]:
    # Only clients that keep a local transaction log can be verified
    result: Dict[str, Any] = {"status": "healthy", "backend": type(ledger).__name__}
    verify_chain = getattr(ledger, "verify_chain", None)
    if verify_chain is not None:
        valid = verify_chain()
        result.update(
            status="healthy" if valid else "unhealthy",
            chain_valid=valid,
            transaction_count=len(ledger.transactions),
        )
    return result


async def check_health(store=None, ledger=None) -> HealthStatus:
    """
    Probe the document store and the ledger client.

    The service is healthy only when every probed dependency is.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    if store is not None:
        checks["document_store"] = await _store_check(store)
    if ledger is not None:
        checks["ledger"] = _ledger_check(ledger)

    return HealthStatus(
        healthy=all(c["status"] == "healthy" for c in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
