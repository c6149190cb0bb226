"""
Admission policy and middleware for the relay's abuse protection.

Every request passes through ``AdmissionGate.evaluate`` which walks four
states in order:

1. Exempt: health, metrics, favicon and anything that looks like a static
   file (a ``.`` in the path) is admitted without further checks.
2. Blocked: a blocked client is rejected. Page paths get a plain HTML page
   with status 200; everything else gets a 429 JSON body.
3. Tracked: ``/api/`` paths are recorded in the rate tracker. The request
   that pushes the count over the ceiling blocks the client. On the two
   sending endpoints that request is rejected immediately; on other API
   endpoints it is still admitted and the block applies from the next one.
4. Untracked: admitted.
"""

import html
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from shared.logging import get_logger, set_client_context, clear_context
from shared.metrics import MetricsCollector
from .block_registry import BlockRegistry
from .rate_tracker import RateTracker, current_time_ms


class Verdict(str, Enum):
    """Outcome of an admission check."""

    ADMIT = "admit"
    BLOCKED_PAGE = "blocked_page"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class AdmissionDecision:
    verdict: Verdict
    client_id: str
    request_count: Optional[int] = None
    blocked_now: bool = False
    retry_after_seconds: Optional[int] = None

    @property
    def admitted(self) -> bool:
        return self.verdict is Verdict.ADMIT


class AdmissionGate:
    """Decides whether a request may reach its handler."""

    EXEMPT_PATHS = frozenset({"/health", "/favicon.ico", "/metrics"})
    API_PREFIX = "/api/"
    ADMIN_PREFIX = "/admin/"
    SENSITIVE_PATHS = frozenset({"/api/send-message", "/api/send-bulk"})

    def __init__(
        self,
        rate_tracker: RateTracker,
        block_registry: BlockRegistry,
        max_requests_per_minute: int = 100,
        block_duration_ms: int = 5 * 60 * 1000,
        clock: Callable[[], float] = current_time_ms,
    ):
        self.rate_tracker = rate_tracker
        self.block_registry = block_registry
        self.max_requests_per_minute = max_requests_per_minute
        self.block_duration_ms = block_duration_ms
        self.clock = clock
        self.logger = get_logger("relay.admission")

    def is_exempt(self, path: str) -> bool:
        return path in self.EXEMPT_PATHS or "." in path

    def is_tracked(self, path: str) -> bool:
        return path.startswith(self.API_PREFIX)

    def is_page(self, path: str) -> bool:
        return not (path.startswith(self.API_PREFIX) or path.startswith(self.ADMIN_PREFIX))

    def evaluate(self, client_id: str, path: str) -> AdmissionDecision:
        if self.is_exempt(path):
            return AdmissionDecision(Verdict.ADMIT, client_id)

        if self.block_registry.is_blocked(client_id):
            self.logger.info("Request from blocked client", client_id=client_id, path=path)
            verdict = Verdict.BLOCKED_PAGE if self.is_page(path) else Verdict.BLOCKED
            return AdmissionDecision(verdict, client_id)

        if not self.is_tracked(path):
            return AdmissionDecision(Verdict.ADMIT, client_id)

        count = self.rate_tracker.record(client_id, self.clock())
        if count <= self.max_requests_per_minute:
            return AdmissionDecision(Verdict.ADMIT, client_id, request_count=count)

        self.logger.warning(
            "Request ceiling exceeded",
            client_id=client_id,
            path=path,
            request_count=count,
            limit=self.max_requests_per_minute,
        )
        self.block_registry.block(client_id, self.block_duration_ms)

        if path in self.SENSITIVE_PATHS:
            return AdmissionDecision(
                Verdict.RATE_LIMITED,
                client_id,
                request_count=count,
                blocked_now=True,
                retry_after_seconds=self.block_duration_ms // 1000,
            )
        return AdmissionDecision(Verdict.ADMIT, client_id, request_count=count, blocked_now=True)


def render_blocked_page(client_id: str) -> str:
    """Human-readable page shown to blocked clients on page routes."""
    return f"""<!DOCTYPE html>
<html>
    <head><title>Access Blocked</title></head>
    <body style="font-family: Arial, sans-serif; text-align: center; padding: 50px;">
        <h1>Access Temporarily Blocked</h1>
        <p>Too many requests from your IP address. Please try again in a few minutes.</p>
        <p>IP: {html.escape(client_id)}</p>
    </body>
</html>
"""


def get_client_id(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Extract the caller address, optionally honouring proxy headers."""
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip
    if request.client:
        return request.client.host
    return "unknown"


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Runs the admission gate in front of every route."""

    def __init__(
        self,
        app,
        gate: AdmissionGate,
        metrics: Optional[MetricsCollector] = None,
        trust_forwarded_headers: bool = False,
    ):
        super().__init__(app)
        self.gate = gate
        self.metrics = metrics
        self.trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next) -> Response:
        client_id = get_client_id(request, self.trust_forwarded_headers)
        set_client_context(client_id)
        try:
            decision = self.gate.evaluate(client_id, request.url.path)

            if decision.blocked_now and self.metrics:
                self.metrics.increment_counter("clients_blocked_total")

            if decision.admitted:
                return await call_next(request)

            if self.metrics:
                self.metrics.increment_counter("admission_rejections_total", reason=decision.verdict.value)
            return self._reject(decision)
        finally:
            clear_context()

    def _reject(self, decision: AdmissionDecision) -> Response:
        if decision.verdict is Verdict.BLOCKED_PAGE:
            return HTMLResponse(render_blocked_page(decision.client_id), status_code=200)

        if decision.verdict is Verdict.RATE_LIMITED:
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too many requests. Your address is temporarily blocked.",
                    "blocked": True,
                    "retryAfter": decision.retry_after_seconds,
                },
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )

        return JSONResponse(
            status_code=429,
            content={
                "error": "Too many requests. Please try again later.",
                "blocked": True,
            },
        )
