import asyncio
import sys
import time

from .context import LifecycleServiceContext, ServiceMetrics
from .diagnostics import create_diagnostic_context
from .environment import ServiceEnv
from .http_server import HttpServer, create_http_server
from .lifecycle_manager import create_lifecycle_manager
from .metrics_context import MetricsConfig, create_metrics_context
from .process_lifecycle import (
    ProcessLifecycleConfig,
    ProcessLifecycleContext,
    start_process_lifecycle,
)
from .request_counter import RequestCounter
from .scheduler import PeriodicTask, create_periodic_task


async def wait_startup_delay(context: LifecycleServiceContext) -> bool:
    """Sleep STARTUP_DELAY unless shutdown begins first; return False if it did."""
    delay = context.env.STARTUP_DELAY
    if delay <= 0:
        return True

    context.logger.info("Startup delay", {"delay": delay})
    try:
        await asyncio.wait_for(context.process.termination.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    context.logger.warn("Shutdown requested during startup delay")
    return False


def start_background_jobs(context: LifecycleServiceContext) -> list[PeriodicTask]:
    env = context.env
    termination = context.process.termination
    tasks: list[PeriodicTask] = []

    if env.HEARTBEAT_INTERVAL > 0:
        started = time.monotonic()

        def heartbeat() -> None:
            context.metrics.heartbeats_total.inc()
            context.logger.info(
                "heartbeat",
                {
                    "uptime_seconds": round(time.monotonic() - started, 3),
                    "requests_served": context.request_counter.value,
                },
            )

        tasks.append(
            create_periodic_task(
                "heartbeat", env.HEARTBEAT_INTERVAL, heartbeat, termination, context.logger
            )
        )

    if env.WORKER_INTERVAL > 0:
        jobs = RequestCounter()

        async def work() -> None:
            job = jobs.increment()
            context.logger.debug("worker job started", {"job": job})
            await asyncio.sleep(0)
            context.metrics.worker_jobs_total.labels(result="done").inc()
            context.logger.info("worker job done", {"job": job})

        tasks.append(
            create_periodic_task("worker", env.WORKER_INTERVAL, work, termination, context.logger)
        )

    for task in tasks:
        task.start()
        context.process.register_shutdown_callback(task.stop)
    return tasks


async def start(
    lifecycle_context: ProcessLifecycleContext, env_context: ServiceEnv
) -> LifecycleServiceContext:
    diagnostic_context = create_diagnostic_context(env_context)
    metrics_context = create_metrics_context(MetricsConfig(env_context=env_context))

    context = LifecycleServiceContext(
        env=env_context,
        diagnostic=diagnostic_context,
        process=lifecycle_context,
        metrics_context=metrics_context,
        metrics=ServiceMetrics.create(metrics_context),
        request_counter=RequestCounter(),
    )

    context.logger.info(
        "Lifecycle service starting",
        {
            "process_name": env_context.PROCESS_NAME,
            "environment": env_context.NODE_ENV,
            "bind_address": env_context.bind_address,
        },
    )

    if not await wait_startup_delay(context):
        return context

    manager = create_lifecycle_manager(context.logger, lifecycle_context.termination)
    http_server: HttpServer = create_http_server(context)
    handle = http_server.start(manager)
    await handle.wait_running()

    start_background_jobs(context)
    context.logger.info("Service started successfully", {"address": handle.bound_address})
    return context


async def main() -> int:
    return await start_process_lifecycle(start, ServiceEnv, ProcessLifecycleConfig())


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
