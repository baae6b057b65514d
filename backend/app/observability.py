from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("campaign_minutes")

METRIC_PREFIX = "campaign_minutes"

DOMAIN_COUNTERS = {
    "refunds_issued": "Refund transactions written by settlement",
    "refund_minutes": "Minutes returned by settlement refunds",
    "owner_resolution_failures": "Provider events whose owner could not be resolved",
    "webhook_signature_failures": "Webhook deliveries rejected for their signature",
    "poll_timeouts": "Batch pollers that hit the iteration cap",
    "sweep_refunds": "Refund transactions written by the cleanup sweeper",
    "sweep_refund_minutes": "Minutes returned by the cleanup sweeper",
}


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    counters: dict[str, int]


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._counters: dict[str, int] = {name: 0 for name in DOMAIN_COUNTERS}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                counters=dict(self._counters),
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            f"# HELP {METRIC_PREFIX}_requests_total Total HTTP requests",
            f"# TYPE {METRIC_PREFIX}_requests_total counter",
            f"{METRIC_PREFIX}_requests_total {snap.requests_total}",
            f"# HELP {METRIC_PREFIX}_requests_5xx_total Total 5xx HTTP requests",
            f"# TYPE {METRIC_PREFIX}_requests_5xx_total counter",
            f"{METRIC_PREFIX}_requests_5xx_total {snap.requests_5xx}",
            f"# HELP {METRIC_PREFIX}_request_avg_latency_ms Average request latency ms",
            f"# TYPE {METRIC_PREFIX}_request_avg_latency_ms gauge",
            f"{METRIC_PREFIX}_request_avg_latency_ms {avg_latency:.2f}",
        ]
        for name, value in sorted(snap.counters.items()):
            metric = f"{METRIC_PREFIX}_{name}_total"
            lines.append(f"# HELP {metric} {DOMAIN_COUNTERS.get(name, name)}")
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {value}")
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    f'{METRIC_PREFIX}_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
