"""In-process request metrics rendered in the Prometheus text format.

Nothing is written to disk; ``GET /metrics`` renders the current counters.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class RequestMetrics:
    __slots__ = ("_lock", "_counter", "_histogram")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str, str], int] = defaultdict(int)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(
            _new_histogram_state
        )

    def record(self, *, route: str, status: int, mode: str, latency_ms: float) -> None:
        latency_seconds = max(float(latency_ms) / 1000.0, 0.0)
        with self._lock:
            self._counter[(route, str(status), mode)] += 1
            hist_state = self._histogram[(route, mode)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds

    def counter(self, *, route: str, status: int, mode: str) -> int:
        with self._lock:
            return self._counter.get((route, str(status), mode), 0)

    def render(self) -> bytes:
        with self._lock:
            lines: list[str] = [
                "# HELP relay_requests_total Total number of proxied requests",
                "# TYPE relay_requests_total counter",
            ]
            for (route, status, mode), value in sorted(self._counter.items()):
                lines.append(
                    f'relay_requests_total{{route="{route}",status="{status}",mode="{mode}"}} {value}'
                )
            lines.append(
                "# HELP relay_request_latency_seconds Time until the response body was fully produced"
            )
            lines.append("# TYPE relay_request_latency_seconds histogram")
            for (route, mode), state in sorted(self._histogram.items()):
                buckets = state["buckets"]
                for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                    le_value = format(bound, ".6g")
                    lines.append(
                        f'relay_request_latency_seconds_bucket{{route="{route}",mode="{mode}",le="{le_value}"}} {buckets[idx]}'
                    )
                lines.append(
                    f'relay_request_latency_seconds_bucket{{route="{route}",mode="{mode}",le="+Inf"}} {buckets[-1]}'
                )
                lines.append(
                    f'relay_request_latency_seconds_count{{route="{route}",mode="{mode}"}} {state["count"]}'
                )
                lines.append(
                    f'relay_request_latency_seconds_sum{{route="{route}",mode="{mode}"}} {state["sum"]}'
                )
        return ("\n".join(lines) + "\n").encode("utf-8")
