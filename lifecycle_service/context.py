"""Context for the lifecycle service process."""

from dataclasses import dataclass

from prometheus_client import Counter

from .diagnostics import DiagnosticContext, Logger
from .environment import ServiceEnv
from .metrics_context import MetricsContext
from .process_lifecycle import ProcessLifecycleContext
from .request_counter import RequestCounter


@dataclass
class ServiceMetrics:
    heartbeats_total: Counter
    worker_jobs_total: Counter

    @classmethod
    def create(cls, metrics_context: MetricsContext) -> "ServiceMetrics":
        return cls(
            heartbeats_total=metrics_context.create_counter(
                name="heartbeats_total", help="Heartbeats emitted by the service"
            ),
            worker_jobs_total=metrics_context.create_counter(
                name="worker_jobs_total",
                help="Background worker jobs by result",
                label_names=["result"],
            ),
        )


@dataclass
class LifecycleServiceContext:
    env: ServiceEnv
    diagnostic: DiagnosticContext
    process: ProcessLifecycleContext
    metrics_context: MetricsContext
    metrics: ServiceMetrics
    request_counter: RequestCounter

    @property
    def logger(self) -> Logger:
        return self.diagnostic.logger
