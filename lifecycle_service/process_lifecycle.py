import asyncio
import inspect
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeAlias, TypeVar

from .diagnostics import DiagnosticContext, create_diagnostic_context, create_logger
from .environment import (
    DefaultEnv,
    EnvConfigurationError,
    EnvParserConfig,
    ServiceEnv,
    create_env_context,
)
from .errors import LifecycleError
from .termination import TerminationReason, TerminationSignal

T = TypeVar("T", bound=DefaultEnv)

ShutdownCallback: TypeAlias = Callable[[], None | Awaitable[None]]

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass
class ShutdownConfiguration:
    """Configuration for shutdown behavior."""

    callback_timeout: float = 15.0  # seconds
    total_timeout: float = 30.0  # seconds


@dataclass
class ProcessLifecycleConfig:
    """Configuration for process lifecycle."""

    shutdown_configuration: ShutdownConfiguration | None = None
    env_parser_config: EnvParserConfig | None = None
    termination: TerminationSignal | None = None
    install_signal_handlers: bool = True


@dataclass
class ProcessLifecycleContext:
    """Functional context object for process lifecycle."""

    id: int
    termination: TerminationSignal
    register_shutdown_callback: Callable[[ShutdownCallback], None]
    is_shutting_down: Callable[[], bool]
    shutdown: Callable[[], Awaitable[None]]


ProcessStartFn: TypeAlias = Callable[[ProcessLifecycleContext, Any], Awaitable[Any]]

DEFAULT_SHUTDOWN_CONFIGURATION = ShutdownConfiguration()

# slack between a listener's stop timeout and the callback wrapping it
STOP_CALLBACK_MARGIN = 5.0


def shutdown_configuration_for(env: Any) -> ShutdownConfiguration:
    """Size callback budgets so a listener stop is never cut short by its callback."""
    stop_timeout = getattr(env, "SHUTDOWN_TIMEOUT", None)
    if not stop_timeout:
        return DEFAULT_SHUTDOWN_CONFIGURATION
    callback_timeout = stop_timeout + STOP_CALLBACK_MARGIN
    return ShutdownConfiguration(
        callback_timeout=callback_timeout,
        total_timeout=max(DEFAULT_SHUTDOWN_CONFIGURATION.total_timeout, callback_timeout * 2),
    )


async def run_shutdown_callbacks(
    callbacks: list[ShutdownCallback],
    diagnostic_context: DiagnosticContext,
    shutdown_cfg: ShutdownConfiguration,
) -> None:
    """Run callbacks newest first; a failing or slow callback does not block the rest."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + shutdown_cfg.total_timeout

    for cb in reversed(callbacks):
        name = getattr(cb, "__qualname__", repr(cb))
        budget = min(shutdown_cfg.callback_timeout, deadline - loop.time())
        if budget <= 0:
            diagnostic_context.logger.warn("Shutdown time budget exhausted", {"skipped": name})
            continue
        try:
            result = cb()
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=budget)
        except asyncio.TimeoutError as e:
            diagnostic_context.logger.error(e, "Shutdown callback timed out", {"callback": name})
        except Exception as e:
            diagnostic_context.logger.error(e, "Shutdown callback failed", {"callback": name})


async def start_process_lifecycle(
    start_fn: ProcessStartFn,
    env_model_class: type[T] | None = None,
    config: ProcessLifecycleConfig | None = None,
) -> int:
    """
    Run a service process from start to exit and return its exit code.

    ``start_fn`` sets the service up (starting listeners, registering shutdown
    callbacks) and returns. The process then waits for the termination signal,
    runs the shutdown callbacks and exits 0. A ``LifecycleError`` escaping
    ``start_fn`` (a listener that could not bind) exits 1.

    Args:
        start_fn: Async function that initializes the process.
        env_model_class: Pydantic model class for environment configuration.
        config: Optional lifecycle configuration.
    """
    config = config or ProcessLifecycleConfig()

    try:
        env_context = create_env_context(env_model_class or ServiceEnv, config.env_parser_config)
    except EnvConfigurationError as e:
        create_logger("lifecycle-service", None).fatal(e, "Invalid environment configuration")
        return EXIT_FAILURE

    shutdown_cfg = config.shutdown_configuration or shutdown_configuration_for(env_context)

    diagnostic_context = create_diagnostic_context(env_context)
    termination = config.termination or TerminationSignal(diagnostic_context.logger)
    if config.install_signal_handlers:
        termination.install()

    shutting_down = False
    shutdown_callbacks: list[ShutdownCallback] = []

    async def shutdown() -> None:
        diagnostic_context.logger.info("Shutdown requested by process context")
        termination.trigger(TerminationReason.PROGRAMMATIC)

    def register_shutdown_callback(cb: ShutdownCallback) -> None:
        shutdown_callbacks.append(cb)

    def is_shutting_down() -> bool:
        return shutting_down or termination.is_triggered()

    ctx = ProcessLifecycleContext(
        id=os.getpid(),
        termination=termination,
        register_shutdown_callback=register_shutdown_callback,
        is_shutting_down=is_shutting_down,
        shutdown=shutdown,
    )

    exit_code = EXIT_OK
    diagnostic_context.logger.info("Starting process", {"pid": ctx.id})
    try:
        result = start_fn(ctx, env_context)
        if inspect.isawaitable(result):
            await result
        reason = await termination.wait()
        diagnostic_context.logger.info("Shutting down", {"reason": reason.value})
    except LifecycleError as e:
        diagnostic_context.logger.fatal(e, "Process failed to start")
        exit_code = EXIT_FAILURE
    except Exception as e:
        diagnostic_context.logger.fatal(e, "Unhandled error in process lifecycle")
        exit_code = EXIT_FAILURE
    finally:
        shutting_down = True
        await run_shutdown_callbacks(shutdown_callbacks, diagnostic_context, shutdown_cfg)
        if config.install_signal_handlers:
            termination.uninstall()

    diagnostic_context.logger.info("Process lifecycle stopped", {"exit_code": exit_code})
    return exit_code
