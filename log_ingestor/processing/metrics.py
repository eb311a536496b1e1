"""
processing/metrics.py
=====================
In-process metrics exposed in the Prometheus text format.

  ingestor_jobs_total{status}             completed / failed / conflict
  ingestor_records_total{outcome}         written / skipped
  ingestor_decompression_retries_total
  ingestor_jobs_reclaimed_total
  ingestor_jobs_discovered_total
  ingestor_job_seconds                    summary, wall-clock per job
  ingestor_last_pass_jobs                 gauge, jobs handled by the last pass

The watch command serves them on http://0.0.0.0:${METRICS_PORT}/metrics when
METRICS_ENABLED=true. Updates come from the scheduler's worker thread and
reads from the HTTP thread, so every access goes through the registry lock.
"""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional

logger = logging.getLogger(__name__)

SUMMARY_WINDOW = 10_000
QUANTILES = (0.5, 0.95, 0.99)


def _series(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


def _family(series: str) -> str:
    return series.partition("{")[0]


def _quantile(ordered: list[float], q: float) -> float:
    if not ordered:
        return 0.0
    return ordered[min(int(len(ordered) * q), len(ordered) - 1)]


class Registry:
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._summaries: dict[str, deque] = {}

    def inc(self, name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
        series = _series(name, labels)
        with self._lock:
            self._counters[series] = self._counters.get(series, 0.0) + value

    def set(self, name: str, value: float, labels: Optional[dict] = None) -> None:
        with self._lock:
            self._gauges[_series(name, labels)] = float(value)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            window = self._summaries.get(name)
            if window is None:
                window = self._summaries[name] = deque(maxlen=SUMMARY_WINDOW)
            window.append(value)

    def counter_value(self, name: str, labels: Optional[dict] = None) -> float:
        with self._lock:
            return self._counters.get(_series(name, labels), 0.0)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._summaries.clear()

    def render(self) -> str:
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            summaries = {name: sorted(w) for name, w in self._summaries.items()}

        out = []
        seen_families = set()

        def header(family: str, kind: str) -> None:
            if family not in seen_families:
                seen_families.add(family)
                out.append(f"# TYPE {family} {kind}")

        for series, value in counters:
            header(_family(series), "counter")
            out.append(f"{series} {value:.2f}")
        for series, value in gauges:
            header(_family(series), "gauge")
            out.append(f"{series} {value:.4f}")
        for name in sorted(summaries):
            ordered = summaries[name]
            header(name, "summary")
            for q in QUANTILES:
                out.append(f'{name}{{quantile="{q}"}} {_quantile(ordered, q):.6f}')
            out.append(f"{name}_sum {sum(ordered):.6f}")
            out.append(f"{name}_count {len(ordered)}")
        return "\n".join(out) + "\n"


REGISTRY = Registry()


# ── Module-level shortcuts over the default registry ─────────────────────────

def inc_counter(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    REGISTRY.inc(name, value, labels)


def set_gauge(name: str, value: float, labels: Optional[dict] = None) -> None:
    REGISTRY.set(name, value, labels)


def observe_histogram(name: str, value: float) -> None:
    REGISTRY.observe(name, value)


def get_counter(name: str, labels: Optional[dict] = None) -> float:
    return REGISTRY.counter_value(name, labels)


def reset() -> None:
    REGISTRY.clear()


def render_metrics() -> str:
    return REGISTRY.render()


@contextmanager
def timed(summary_name: str):
    """Observe the duration of the with-block, including when it raises."""
    started = time.monotonic()
    try:
        yield
    finally:
        observe_histogram(summary_name, time.monotonic() - started)


# ── /metrics endpoint ────────────────────────────────────────────────────────

class MetricsHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path.split("?", 1)[0] != "/metrics":
            self.send_error(404)
            return
        payload = render_metrics().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        logger.debug("metrics request: " + format, *args)


def start_metrics_server(port: int) -> HTTPServer:
    """Serve /metrics from a daemon thread. Port 0 picks a free port."""
    server = HTTPServer(("0.0.0.0", port), MetricsHandler)
    threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True).start()
    logger.info("Metrics endpoint listening on port %d.", server.server_address[1])
    return server
