"""HTTP application served by the lifecycle manager.

Provides:
- Root route and a health route tied to the listener's handle state
- Request logging with request IDs
- Prometheus metrics endpoint
- Containment of failing route handlers
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from .diagnostics import DiagnosticContext
from .environment import ServiceEnv
from .errors import HandlerFailure
from .lifecycle_manager import LifecycleManager
from .metrics_context import MetricsContext
from .process_lifecycle import ProcessLifecycleContext
from .request_counter import RequestCounter, RequestIdGenerator
from .server_handle import ServerHandle, ServerState, StopResult

REQUEST_ID_HEADER = "x-request-id"
ROOT_GREETING = "hello from lifecycle service\n"


@dataclass
class HealthCheckResult:
    component: str
    is_healthy: bool


HealthCheckFn = Callable[[], Awaitable[HealthCheckResult]]


@dataclass
class HttpServerConfig:
    health_checks: list[HealthCheckFn] | None = None


class ServiceContext(Protocol):
    env: ServiceEnv
    diagnostic: DiagnosticContext
    process: ProcessLifecycleContext
    metrics_context: MetricsContext
    request_counter: RequestCounter


class HttpServer:
    def __init__(self, context: ServiceContext, config: HttpServerConfig | None = None) -> None:
        self.context = context
        self.config = config or HttpServerConfig()
        self.handle: ServerHandle | None = None
        self.stop_result: StopResult | None = None
        self.request_ids = RequestIdGenerator(context.request_counter)
        self.app = FastAPI(title=context.env.PROCESS_NAME, generate_unique_id_function=lambda _: "")

        self.http_requests_total = context.metrics_context.create_counter(
            name="http_requests_total",
            help="Total number of HTTP requests",
            label_names=["method", "route", "status_code"],
        )
        self.http_request_duration = context.metrics_context.create_histogram(
            name="http_request_duration_seconds",
            help="Duration of HTTP requests in seconds",
            label_names=["method", "route"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        )
        self.http_requests_in_flight = context.metrics_context.create_gauge(
            name="http_requests_in_flight",
            help="HTTP requests currently being handled",
        )

        self._setup_middleware()
        self._setup_routes()

    def attach_handle(self, handle: ServerHandle) -> None:
        self.handle = handle

    def is_serving(self) -> bool:
        return self.handle is not None and self.handle.state is ServerState.RUNNING

    def _setup_middleware(self) -> None:
        @self.app.middleware("http")
        async def add_request_id_and_logging(
            request: Request, call_next: Callable[[Request], Awaitable[Response]]
        ) -> Response:
            sequence = self.context.request_counter.increment()
            request_id = request.headers.get(REQUEST_ID_HEADER) or self.request_ids.generate(
                sequence
            )
            child_diagnostic = self.context.diagnostic.get_child_diagnostic_context(
                scope_id=request_id
            )
            request.state.request_id = request_id
            request.state.diagnostic = child_diagnostic

            fields = {"method": request.method, "path": request.url.path}
            child_diagnostic.logger.debug("Request started", fields)

            start_time = time.perf_counter()
            self.http_requests_in_flight.inc()
            try:
                response = await call_next(request)
            except Exception as exc:
                failure = HandlerFailure(request.method, request.url.path, exc)
                child_diagnostic.logger.error(exc, "Request handler failed", failure.to_error_plain_object())
                response = JSONResponse(
                    status_code=500,
                    content={"error": "internal server error", "request_id": request_id},
                )
            finally:
                self.http_requests_in_flight.dec()

            duration_seconds = time.perf_counter() - start_time
            child_diagnostic.logger.info(
                "Request completed",
                {
                    **fields,
                    "status": response.status_code,
                    "duration_ms": round(duration_seconds * 1000, 3),
                },
            )

            route = request.url.path
            self.http_requests_total.labels(
                method=request.method, route=route, status_code=str(response.status_code)
            ).inc()
            self.http_request_duration.labels(method=request.method, route=route).observe(
                duration_seconds
            )

            response.headers[REQUEST_ID_HEADER] = request_id
            return response

    def _setup_routes(self) -> None:
        @self.app.get("/")
        async def root() -> PlainTextResponse:
            return PlainTextResponse(ROOT_GREETING)

        @self.app.get("/health")
        async def health_check(request: Request) -> JSONResponse:
            state = self.handle.state.value if self.handle else "detached"
            health: dict[str, Any] = {
                "status": "healthy",
                "state": state,
                "timestamp": time.time(),
                "requests_served": self.context.request_counter.value,
                "components": [],
            }
            unhealthy = JSONResponse(status_code=503, content={**health, "status": "unhealthy"})

            if self.context.process.is_shutting_down() or not self.is_serving():
                return unhealthy

            if self.config.health_checks:
                try:
                    results = [await check() for check in self.config.health_checks]
                except Exception as error:
                    request.state.diagnostic.logger.error(error, "Health check error")
                    return unhealthy

                health["components"] = [
                    {"component": r.component, "isHealthy": r.is_healthy} for r in results
                ]
                if not all(r.is_healthy for r in results):
                    request.state.diagnostic.logger.warn(
                        "Health check failed",
                        {"unhealthy_components": [r.component for r in results if not r.is_healthy]},
                    )
                    return JSONResponse(status_code=503, content={**health, "status": "unhealthy"})

            return JSONResponse(content=health)

        @self.app.get("/metrics")
        async def metrics() -> PlainTextResponse:
            return PlainTextResponse(
                content=self.context.metrics_context.get_metrics_as_string(),
                media_type=self.context.metrics_context.content_type,
            )

    def start(self, manager: LifecycleManager, bind_address: str | None = None) -> ServerHandle:
        """Start serving through ``manager`` and stop on process shutdown."""
        handle = manager.start(bind_address or self.context.env.bind_address, self.app)
        self.attach_handle(handle)

        async def stop_listener() -> None:
            self.stop_result = await manager.stop(handle, self.context.env.SHUTDOWN_TIMEOUT)

        self.context.process.register_shutdown_callback(stop_listener)
        self.context.diagnostic.logger.info(
            "HTTP server starting",
            {"bind_address": handle.bind_address, "environment": self.context.env.NODE_ENV},
        )
        return handle


def create_http_server(
    context: ServiceContext, config: HttpServerConfig | None = None
) -> HttpServer:
    return HttpServer(context, config)
