"""Prometheus metrics for the lifecycle service.

Each service owns its own registry; metric names are prefixed with the
normalized process name (``lifecycle-service`` becomes ``lifecycle_service_``).
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

DEFAULT_HISTOGRAM_BUCKETS = [0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10]

_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def normalize_service_name(service_name: str) -> str:
    normalized = re.sub(r"(?<!^)(?=[A-Z])", "_", service_name)
    normalized = normalized.lower()
    normalized = re.sub(r"[^a-z0-9_]", "_", normalized)
    normalized = re.sub(r"_+", "_", normalized)
    return normalized.strip("_")


def validate_metric_name(name: str) -> None:
    if not name:
        raise ValueError("Metric name cannot be empty")
    if not _METRIC_NAME.match(name):
        raise ValueError(
            f"Invalid metric name '{name}'. "
            "Metric names must match pattern: [a-zA-Z_:][a-zA-Z0-9_:]*"
        )


def validate_label_names(label_names: Sequence[str] | None) -> None:
    for label in label_names or ():
        if not _LABEL_NAME.match(label):
            raise ValueError(
                f"Invalid label name '{label}'. "
                "Label names must match pattern: [a-zA-Z_][a-zA-Z0-9_]*"
            )
        if label.startswith("__"):
            raise ValueError(
                f"Label name '{label}' is reserved. Label names cannot start with '__'"
            )


@dataclass
class MetricsConfig:
    env_context: Any
    enable_default_metrics: bool = True
    prefix: str | None = None


class MetricsContext(Protocol):
    content_type: str

    def get_registry(self) -> CollectorRegistry: ...

    def create_counter(
        self, name: str, help: str, label_names: Sequence[str] | None = None
    ) -> Counter: ...

    def create_gauge(
        self, name: str, help: str, label_names: Sequence[str] | None = None
    ) -> Gauge: ...

    def create_histogram(
        self,
        name: str,
        help: str,
        label_names: Sequence[str] | None = None,
        buckets: Sequence[float] | None = None,
    ) -> Histogram: ...

    def get_metrics_as_string(self) -> str: ...


class _MetricsContextImpl:
    content_type = CONTENT_TYPE_LATEST

    def __init__(self, config: MetricsConfig) -> None:
        self.config = config
        self.registry = CollectorRegistry()

        prefix = config.prefix or normalize_service_name(config.env_context.PROCESS_NAME)
        self.full_prefix = f"{prefix}_"

        if config.enable_default_metrics:
            from prometheus_client import GC_COLLECTOR, PlatformCollector, ProcessCollector

            PlatformCollector(registry=self.registry)
            ProcessCollector(registry=self.registry)
            self.registry.register(GC_COLLECTOR)

    def _full_name(self, name: str, label_names: Sequence[str] | None) -> str:
        validate_metric_name(name)
        validate_label_names(label_names)
        return f"{self.full_prefix}{name}"

    def get_registry(self) -> CollectorRegistry:
        return self.registry

    def create_counter(
        self, name: str, help: str, label_names: Sequence[str] | None = None
    ) -> Counter:
        return Counter(
            self._full_name(name, label_names),
            help,
            labelnames=list(label_names or []),
            registry=self.registry,
        )

    def create_gauge(self, name: str, help: str, label_names: Sequence[str] | None = None) -> Gauge:
        return Gauge(
            self._full_name(name, label_names),
            help,
            labelnames=list(label_names or []),
            registry=self.registry,
        )

    def create_histogram(
        self,
        name: str,
        help: str,
        label_names: Sequence[str] | None = None,
        buckets: Sequence[float] | None = None,
    ) -> Histogram:
        return Histogram(
            self._full_name(name, label_names),
            help,
            labelnames=list(label_names or []),
            buckets=list(buckets) if buckets else DEFAULT_HISTOGRAM_BUCKETS,
            registry=self.registry,
        )

    def get_metrics_as_string(self) -> str:
        return generate_latest(self.registry).decode("utf-8")


def create_metrics_context(config: MetricsConfig) -> MetricsContext:
    return _MetricsContextImpl(config)
