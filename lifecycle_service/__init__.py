"""Lifecycle service.

A minimal HTTP service built around graceful listener lifecycle management:
- Non-blocking listener start with bind failures reported on the handle
- One-shot termination signal fed by SIGINT/SIGTERM or callers
- Bounded graceful stop that reports forced closure
- Health endpoint tied to listener state
- Structured logging with request IDs
- Environment configuration parsing and validation
- Periodic background jobs cancelled on shutdown
- Prometheus metrics
"""

from .diagnostics import (
    CorrelationIdGenerator,
    DiagnosticConfig,
    DiagnosticContext,
    LogEntry,
    Logger,
    LogOutputFormat,
    LogSeverity,
    create_correlation_id_generator,
    create_diagnostic_context,
    create_logger,
)
from .environment import (
    DefaultEnv,
    EnvConfigurationError,
    EnvParser,
    EnvParserConfig,
    EnvValidationError,
    ParsedEnv,
    ServiceEnv,
    create_env_context,
    create_env_parser,
    parse_duration,
)
from .errors import (
    BindError,
    HandlerFailure,
    InvalidStateTransition,
    LifecycleError,
    ShutdownTimeout,
)
from .http_server import (
    HealthCheckFn,
    HealthCheckResult,
    HttpServer,
    HttpServerConfig,
    ServiceContext,
    create_http_server,
)
from .lifecycle_manager import (
    DEFAULT_SHUTDOWN_TIMEOUT,
    InFlightTracker,
    LifecycleManager,
    create_lifecycle_manager,
)
from .metrics_context import MetricsConfig, MetricsContext, create_metrics_context
from .process_lifecycle import (
    ProcessLifecycleConfig,
    ProcessLifecycleContext,
    ShutdownConfiguration,
    start_process_lifecycle,
)
from .request_counter import RequestCounter, RequestIdGenerator, create_request_id_generator
from .scheduler import PeriodicTask, create_periodic_task
from .server_handle import (
    HandleSnapshot,
    ServerHandle,
    ServerState,
    StopOutcome,
    StopResult,
    parse_bind_address,
)
from .termination import TerminationReason, TerminationSignal

__all__ = [
    # Lifecycle
    "LifecycleManager",
    "create_lifecycle_manager",
    "InFlightTracker",
    "DEFAULT_SHUTDOWN_TIMEOUT",
    "ServerHandle",
    "ServerState",
    "HandleSnapshot",
    "StopOutcome",
    "StopResult",
    "parse_bind_address",
    "TerminationSignal",
    "TerminationReason",
    # Errors
    "LifecycleError",
    "BindError",
    "ShutdownTimeout",
    "HandlerFailure",
    "InvalidStateTransition",
    # Process lifecycle
    "ProcessLifecycleContext",
    "start_process_lifecycle",
    "ProcessLifecycleConfig",
    "ShutdownConfiguration",
    # Environment
    "EnvParser",
    "EnvParserConfig",
    "EnvConfigurationError",
    "EnvValidationError",
    "ParsedEnv",
    "create_env_context",
    "create_env_parser",
    "parse_duration",
    "DefaultEnv",
    "ServiceEnv",
    # Diagnostics
    "Logger",
    "CorrelationIdGenerator",
    "LogEntry",
    "DiagnosticConfig",
    "DiagnosticContext",
    "LogSeverity",
    "LogOutputFormat",
    "create_logger",
    "create_correlation_id_generator",
    "create_diagnostic_context",
    # Requests & background jobs
    "RequestCounter",
    "RequestIdGenerator",
    "create_request_id_generator",
    "PeriodicTask",
    "create_periodic_task",
    # HTTP Server
    "HttpServer",
    "HttpServerConfig",
    "ServiceContext",
    "HealthCheckResult",
    "HealthCheckFn",
    "create_http_server",
    # Metrics
    "MetricsContext",
    "MetricsConfig",
    "create_metrics_context",
]

__version__ = "0.1.0"
