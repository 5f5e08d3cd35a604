import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, ProcessCollector, generate_latest,
)

from .config import Config
from .logs import configure_logging
from .network import ExternalIpResolver, FirewallChecker
from .store import SessionStore


class Metrics:
    """Prometheus metrics on a registry owned by one context.

    /metrics exports the registry as is; /api/stats reads the counters back
    through `snapshot()`.
    """

    # short name -> (metric name, help)
    COUNTERS = {
        "requests_total": ("pscreen_http_requests", "HTTP requests handled by the gallery"),
        "captures_total": ("pscreen_screenshots", "Screenshot sessions captured"),
        "captures_failed": ("pscreen_screenshot_failures", "URLs that failed after every attempt"),
        "errors_total": ("pscreen_errors", "Unhandled server errors"),
    }

    CONTENT_TYPE = CONTENT_TYPE_LATEST

    def __init__(self, clock=time.time, registry: Optional[CollectorRegistry] = None):
        self._clock = clock
        self.started_at = clock()
        self.registry = registry or CollectorRegistry()
        ProcessCollector(registry=self.registry)
        self._counters = {
            key: Counter(name, doc, registry=self.registry)
            for key, (name, doc) in self.COUNTERS.items()
        }
        self.request_duration = Histogram(
            "pscreen_http_request_duration_seconds", "Duration of HTTP requests in seconds",
            ["method", "endpoint", "status"], buckets=(0.1, 0.5, 1, 2, 5, 10, 30),
            registry=self.registry,
        )
        self.capture_duration = Histogram(
            "pscreen_screenshot_duration_seconds", "Duration of one capture in seconds",
            buckets=(1, 5, 10, 30, 60, 120), registry=self.registry,
        )
        self.result_files = Gauge("pscreen_result_files", "Files in the results directory",
                                  registry=self.registry)

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in self._counters:
            raise KeyError(name)
        self._counters[name].inc(amount)

    def get(self, name: str) -> int:
        metric_name = self.COUNTERS[name][0]
        return int(self.registry.get_sample_value(f"{metric_name}_total") or 0)

    def observe_request(self, method: str, endpoint: str, status: int, seconds: float) -> None:
        self.request_duration.labels(method, endpoint, str(status)).observe(seconds)

    def observe_capture(self, seconds: float) -> None:
        self.capture_duration.observe(seconds)

    def exposition(self) -> bytes:
        return generate_latest(self.registry)

    def snapshot(self) -> dict:
        data = {key: self.get(key) for key in self.COUNTERS}
        data["started_at"] = datetime.fromtimestamp(self.started_at, timezone.utc).isoformat()
        data["uptime_seconds"] = round(self._clock() - self.started_at, 3)
        return data


class AppContext:
    """Everything a command or the gallery server needs, built once and passed down."""

    def __init__(self, config: Optional[Config] = None, output_dir: Optional[str] = None,
                 ip_resolver: Optional[ExternalIpResolver] = None,
                 firewall: Optional[FirewallChecker] = None,
                 log_level: Optional[str] = None):
        self.config = config or Config()
        if output_dir:
            self.config.screenshot.output_dir = output_dir
        self.logger = configure_logging(self.config.logging, level_override=log_level)
        self.store = SessionStore(Path(self.config.screenshot.output_dir))
        ip = self.config.external_ip
        self.ip_resolver = ip_resolver or ExternalIpResolver(
            ip.services, cache_ttl=ip.cache_ttl, fallback_ip=ip.fallback_ip, timeout=ip.timeout,
        )
        srv = self.config.server
        self.firewall = firewall or FirewallChecker(f"{srv.port_range_start}:{srv.port_range_end}")
        self.metrics = Metrics()
