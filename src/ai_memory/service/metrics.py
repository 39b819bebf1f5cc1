"""Metrics for the memory service.

Two layers:

- MetricsCollector keeps in-process counters and latency samples and renders
  them in Prometheus text format for the /metrics endpoint.
- MetricsRecorder writes token and query metric records through the store and
  derives rolling statistics from them for dashboards.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..memory.models import QueryMetric, TokenMetric, utc_now, utc_now_iso
from ..memory.tokens import DEFAULT_CONTEXT_WINDOW, context_budget

if TYPE_CHECKING:
    from ..persistence.store import MemoryStore

logger = logging.getLogger(__name__)

TREND_TOLERANCE_PERCENT = 5.0


@dataclass
class MetricsCollector:
    """In-process Prometheus-style metrics.

    Lightweight, no prometheus_client dependency. One collector belongs to
    one service instance.
    """

    # Counters
    request_count: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    request_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    entries_appended: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    validation_failures: int = 0
    storage_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    indexing_failures: int = 0

    # Histograms (raw samples for percentiles)
    request_latency: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    selection_latency: list[float] = field(default_factory=list)
    embedding_latency: list[float] = field(default_factory=list)

    # Gauges
    active_requests: int = 0
    entries_total: int = 0
    vectors_total: int = 0

    max_samples: int = 1000

    def _append_sample(self, samples: list[float], value: float) -> None:
        if len(samples) >= self.max_samples:
            del samples[: len(samples) - self.max_samples // 2]
        samples.append(value)

    def record_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_seconds: float,
    ) -> None:
        key = f"{method}:{path}"
        self.request_count[key] += 1
        if status_code >= 400:
            self.request_errors[f"{key}:{status_code}"] += 1
        self._append_sample(self.request_latency[key], duration_seconds)

    def record_append(self, file_type: str) -> None:
        self.entries_appended[file_type] += 1
        self.entries_total += 1

    def record_selection(self, duration_seconds: float) -> None:
        self._append_sample(self.selection_latency, duration_seconds)

    def record_embedding(self, duration_seconds: float) -> None:
        self._append_sample(self.embedding_latency, duration_seconds)

    def record_storage_error(self, kind: str) -> None:
        self.storage_errors[kind] += 1

    @staticmethod
    def _percentile(values: list[float], p: float) -> float:
        if not values:
            return 0.0
        sorted_values = sorted(values)
        index = int(len(sorted_values) * p)
        return sorted_values[min(index, len(sorted_values) - 1)]

    def _summary(self, lines: list[str], name: str, help_text: str, values: list[float]) -> None:
        if not values:
            return
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} summary")
        for quantile in (0.5, 0.9, 0.99):
            lines.append(f'{name}{{quantile="{quantile}"}} {self._percentile(values, quantile):.6f}')

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = [
            "# HELP ai_memory_requests_total Total number of HTTP requests",
            "# TYPE ai_memory_requests_total counter",
        ]
        for key, count in self.request_count.items():
            method, path = key.split(":", 1)
            lines.append(f'ai_memory_requests_total{{method="{method}",path="{path}"}} {count}')

        lines.append("# HELP ai_memory_request_errors_total Total number of HTTP errors")
        lines.append("# TYPE ai_memory_request_errors_total counter")
        for key, count in self.request_errors.items():
            method, path, status = key.rsplit(":", 2)
            lines.append(
                f'ai_memory_request_errors_total{{method="{method}",path="{path}",'
                f'status="{status}"}} {count}'
            )

        lines.append("# HELP ai_memory_request_duration_seconds Request latency percentiles")
        lines.append("# TYPE ai_memory_request_duration_seconds summary")
        for key, values in self.request_latency.items():
            method, path = key.split(":", 1)
            for quantile in (0.5, 0.9, 0.99):
                lines.append(
                    f'ai_memory_request_duration_seconds{{method="{method}",path="{path}",'
                    f'quantile="{quantile}"}} {self._percentile(values, quantile):.6f}'
                )

        lines.append("# HELP ai_memory_entries_appended_total Entries appended by type")
        lines.append("# TYPE ai_memory_entries_appended_total counter")
        for file_type, count in self.entries_appended.items():
            lines.append(f'ai_memory_entries_appended_total{{file_type="{file_type}"}} {count}')

        lines.append("# HELP ai_memory_validation_failures_total Rejected entries")
        lines.append("# TYPE ai_memory_validation_failures_total counter")
        lines.append(f"ai_memory_validation_failures_total {self.validation_failures}")

        lines.append("# HELP ai_memory_storage_errors_total Storage errors by classification")
        lines.append("# TYPE ai_memory_storage_errors_total counter")
        for kind, count in self.storage_errors.items():
            lines.append(f'ai_memory_storage_errors_total{{kind="{kind}"}} {count}')

        lines.append("# HELP ai_memory_indexing_failures_total Background embedding jobs that failed")
        lines.append("# TYPE ai_memory_indexing_failures_total counter")
        lines.append(f"ai_memory_indexing_failures_total {self.indexing_failures}")

        self._summary(
            lines, "ai_memory_selection_seconds", "Context selection latency", self.selection_latency
        )
        self._summary(
            lines, "ai_memory_embedding_seconds", "Embedding generation latency", self.embedding_latency
        )

        lines.append("# HELP ai_memory_active_requests Current number of in-flight requests")
        lines.append("# TYPE ai_memory_active_requests gauge")
        lines.append(f"ai_memory_active_requests {self.active_requests}")

        lines.append("# HELP ai_memory_entries Number of stored entries")
        lines.append("# TYPE ai_memory_entries gauge")
        lines.append(f"ai_memory_entries {self.entries_total}")

        lines.append("# HELP ai_memory_vectors Number of stored entry vectors")
        lines.append("# TYPE ai_memory_vectors gauge")
        lines.append(f"ai_memory_vectors {self.vectors_total}")

        return "\n".join(lines) + "\n"


class TokenTrend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class MetricsRecorder:
    """Persists metric records and computes rolling statistics from them."""

    def __init__(
        self,
        store: "MemoryStore",
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.context_window = context_window
        self._clock = clock

    def record_tokens(self, model: str, input_tokens: int, output_tokens: int) -> TokenMetric:
        """Store one model call's usage, tagged with its context budget status."""
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must be non-negative")
        budget = context_budget(input_tokens, self.context_window)
        metric = TokenMetric(
            timestamp=utc_now_iso(self._clock()),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            context_status=budget.status,
        )
        self.store.record_token_metric(metric)
        return metric

    def record_query(self, operation: str, elapsed_ms: float, result_count: int) -> QueryMetric:
        metric = QueryMetric(
            timestamp=utc_now_iso(self._clock()),
            operation=operation,
            elapsed_ms=elapsed_ms,
            result_count=result_count,
        )
        self.store.record_query_metric(metric)
        return metric

    def _since(self, days: int) -> datetime:
        return self._clock() - timedelta(days=days)

    def token_metrics(self, days: int = 7) -> list[TokenMetric]:
        return self.store.query_token_metrics(since=self._since(days))

    def average_token_usage(self, days: int = 7) -> int:
        metrics = self.token_metrics(days)
        if not metrics:
            return 0
        return round(sum(m.total_tokens for m in metrics) / len(metrics))

    def token_trend(self, days: int = 7) -> TokenTrend:
        """Compare average usage in the older and newer halves of the window."""
        metrics = self.token_metrics(days)
        if len(metrics) < 2:
            return TokenTrend.STABLE
        mid = len(metrics) // 2
        first = sum(m.total_tokens for m in metrics[:mid]) / mid
        second = sum(m.total_tokens for m in metrics[mid:]) / (len(metrics) - mid)
        if first == 0:
            return TokenTrend.INCREASING if second > 0 else TokenTrend.STABLE
        change = (second - first) / first * 100
        if change > TREND_TOLERANCE_PERCENT:
            return TokenTrend.INCREASING
        if change < -TREND_TOLERANCE_PERCENT:
            return TokenTrend.DECREASING
        return TokenTrend.STABLE

    def average_query_time(self, operation: str | None = None, days: int = 7) -> float:
        metrics = self.store.query_query_metrics(operation=operation, since=self._since(days))
        if not metrics:
            return 0.0
        return round(sum(m.elapsed_ms for m in metrics) / len(metrics), 2)

    def summary(self, days: int = 7) -> dict[str, Any]:
        """Dashboard view of recent token usage."""
        metrics = self.token_metrics(days)
        latest = metrics[-1] if metrics else None
        budget = context_budget(latest.input_tokens if latest else 0, self.context_window)
        return {
            "total_tokens_used": sum(m.total_tokens for m in metrics),
            "average_tokens_per_call": self.average_token_usage(days),
            "call_count": len(metrics),
            "current_status": latest.context_status.value if latest else "no-data",
            "remaining_budget": budget.remaining,
            "percentage_used": round(budget.percent_used, 1),
            "token_trend": self.token_trend(days).value,
            "average_query_time_ms": self.average_query_time(days=days),
            "last_updated": latest.timestamp if latest else None,
        }


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics into the app's collector."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        metrics: MetricsCollector = request.app.state.metrics
        metrics.active_requests += 1
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            if request.url.path != "/metrics":
                metrics.record_request(
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_seconds=time.perf_counter() - start_time,
                )
            return response
        finally:
            metrics.active_requests -= 1


def add_metrics_endpoint(app: FastAPI) -> None:
    """Add /metrics endpoint to FastAPI app."""

    @app.get("/metrics", include_in_schema=False)
    def metrics_endpoint(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=request.app.state.metrics.export_prometheus(),
            media_type="text/plain; charset=utf-8",
        )


__all__ = [
    "MetricsCollector",
    "MetricsRecorder",
    "TokenTrend",
    "MetricsMiddleware",
    "add_metrics_endpoint",
]
