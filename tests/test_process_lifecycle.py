"""Tests for process lifecycle and the service entry point."""

import asyncio
import socket

import pytest

from lifecycle_service import (
    EnvParserConfig,
    ProcessLifecycleConfig,
    ServiceEnv,
    ShutdownConfiguration,
    TerminationReason,
    TerminationSignal,
    start_process_lifecycle,
)
from lifecycle_service.main import start
from lifecycle_service.process_lifecycle import EXIT_FAILURE, EXIT_OK, shutdown_configuration_for


def lifecycle_config(env: dict[str, str] | None = None, **kwargs) -> ProcessLifecycleConfig:
    source = {"PROCESS_NAME": "test-service", "LOG_LEVEL": "error", **(env or {})}
    return ProcessLifecycleConfig(
        env_parser_config=EnvParserConfig(source=source),
        install_signal_handlers=False,
        **kwargs,
    )


class TestShutdownCallbacks:
    @pytest.mark.asyncio
    async def test_callbacks_run_newest_first(self):
        order = []

        async def start_fn(ctx, env):
            ctx.register_shutdown_callback(lambda: order.append("first"))

            async def second():
                order.append("second")

            ctx.register_shutdown_callback(second)
            await ctx.shutdown()

        exit_code = await start_process_lifecycle(start_fn, ServiceEnv, lifecycle_config())

        assert exit_code == EXIT_OK
        assert order == ["second", "first"]

    @pytest.mark.asyncio
    async def test_slow_callback_does_not_block_others(self):
        order = []

        async def start_fn(ctx, env):
            ctx.register_shutdown_callback(lambda: order.append("fast"))

            async def slow():
                await asyncio.sleep(5)
                order.append("slow")

            ctx.register_shutdown_callback(slow)
            await ctx.shutdown()

        config = lifecycle_config(
            shutdown_configuration=ShutdownConfiguration(callback_timeout=0.05, total_timeout=1.0)
        )
        exit_code = await start_process_lifecycle(start_fn, ServiceEnv, config)

        assert exit_code == EXIT_OK
        assert order == ["fast"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self):
        order = []

        async def start_fn(ctx, env):
            ctx.register_shutdown_callback(lambda: order.append("survivor"))

            def broken():
                raise RuntimeError("callback failed")

            ctx.register_shutdown_callback(broken)
            await ctx.shutdown()

        assert await start_process_lifecycle(start_fn, ServiceEnv, lifecycle_config()) == EXIT_OK
        assert order == ["survivor"]

    def test_callback_budget_covers_stop_timeout(self):
        cfg = shutdown_configuration_for(ServiceEnv(SHUTDOWN_TIMEOUT="20s"))

        assert cfg.callback_timeout == 25.0
        assert cfg.total_timeout == 50.0


class TestProcessExit:
    @pytest.mark.asyncio
    async def test_waits_for_termination_signal(self):
        termination = TerminationSignal()
        started = asyncio.Event()

        async def start_fn(ctx, env):
            assert ctx.termination is termination
            started.set()

        run = asyncio.create_task(
            start_process_lifecycle(start_fn, ServiceEnv, lifecycle_config(termination=termination))
        )
        await asyncio.wait_for(started.wait(), timeout=1)
        await asyncio.sleep(0.01)
        assert not run.done()

        termination.trigger(TerminationReason.TERMINATE)

        assert await asyncio.wait_for(run, timeout=1) == EXIT_OK

    @pytest.mark.asyncio
    async def test_is_shutting_down_follows_trigger(self):
        seen = []

        async def start_fn(ctx, env):
            seen.append(ctx.is_shutting_down())
            await ctx.shutdown()
            seen.append(ctx.is_shutting_down())

        await start_process_lifecycle(start_fn, ServiceEnv, lifecycle_config())

        assert seen == [False, True]

    @pytest.mark.asyncio
    async def test_invalid_environment_exits_with_failure(self):
        async def start_fn(ctx, env):
            raise AssertionError("must not start")

        config = lifecycle_config({"SHUTDOWN_TIMEOUT": "soon"})

        assert await start_process_lifecycle(start_fn, ServiceEnv, config) == EXIT_FAILURE

    @pytest.mark.asyncio
    async def test_unhandled_error_exits_with_failure_after_cleanup(self):
        cleaned = []

        async def start_fn(ctx, env):
            ctx.register_shutdown_callback(lambda: cleaned.append(True))
            raise RuntimeError("boom")

        exit_code = await start_process_lifecycle(start_fn, ServiceEnv, lifecycle_config())

        assert exit_code == EXIT_FAILURE
        assert cleaned == [True]


class TestServiceEntryPoint:
    @pytest.mark.asyncio
    async def test_bind_failure_exits_with_failure(self):
        occupied = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        occupied.bind(("127.0.0.1", 0))
        occupied.listen()
        port = occupied.getsockname()[1]

        try:
            config = lifecycle_config({"HOST": "127.0.0.1", "PORT": str(port)})
            exit_code = await asyncio.wait_for(
                start_process_lifecycle(start, ServiceEnv, config), timeout=5
            )
        finally:
            occupied.close()

        assert exit_code == EXIT_FAILURE

    @pytest.mark.asyncio
    async def test_service_starts_and_stops_cleanly(self, capsys):
        async def start_then_shutdown(ctx, env):
            await start(ctx, env)
            await ctx.shutdown()

        config = lifecycle_config(
            {
                "HOST": "127.0.0.1",
                "PORT": "0",
                "LOG_LEVEL": "info",
                "SHUTDOWN_TIMEOUT": "2s",
                "HEARTBEAT_INTERVAL": "50ms",
            }
        )
        exit_code = await asyncio.wait_for(
            start_process_lifecycle(start_then_shutdown, ServiceEnv, config), timeout=10
        )

        assert exit_code == EXIT_OK
        out = capsys.readouterr().out
        assert "HTTP server listening" in out
        assert "HTTP server stopped" in out
        assert "HTTP server stopped forcibly" not in out

    @pytest.mark.asyncio
    async def test_shutdown_during_startup_delay_skips_listener(self, capsys):
        termination = TerminationSignal()
        termination.trigger()

        config = lifecycle_config(
            {"LOG_LEVEL": "info", "STARTUP_DELAY": "5s", "PORT": "0"}, termination=termination
        )
        exit_code = await asyncio.wait_for(
            start_process_lifecycle(start, ServiceEnv, config), timeout=2
        )

        assert exit_code == EXIT_OK
        out = capsys.readouterr().out
        assert "Shutdown requested during startup delay" in out
        assert "HTTP server listening" not in out
