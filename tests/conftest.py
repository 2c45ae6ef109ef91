"""
Test fixtures and configuration.
"""

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from httpx import AsyncClient

from lifecycle_service import (
    DiagnosticConfig,
    LifecycleManager,
    Logger,
    ServerHandle,
    create_lifecycle_manager,
    create_logger,
)


@pytest.fixture
def quiet_logger() -> Logger:
    return create_logger("test-service", None, DiagnosticConfig(minimum_severity="fatal"))


@pytest.fixture
def slow_app() -> FastAPI:
    """App whose /sleep route holds the request open for ``seconds``."""
    app = FastAPI()

    @app.get("/")
    async def root() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/sleep")
    async def sleep(seconds: float = 0.2) -> PlainTextResponse:
        await asyncio.sleep(seconds)
        return PlainTextResponse("slept")

    @app.get("/boom")
    async def boom() -> PlainTextResponse:
        raise RuntimeError("handler exploded")

    return app


@pytest_asyncio.fixture
async def manager(quiet_logger: Logger) -> AsyncGenerator[LifecycleManager, None]:
    yield create_lifecycle_manager(quiet_logger)


def client_for(handle: ServerHandle, timeout: float = 10.0) -> AsyncClient:
    return AsyncClient(base_url=f"http://{handle.bound_address}", timeout=timeout)


async def wait_for_in_flight(
    manager: LifecycleManager, handle: ServerHandle, count: int, timeout: float = 2.0
) -> None:
    """Poll until ``count`` requests are inside the application."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while manager.in_flight_requests(handle) < count:
        if loop.time() > deadline:
            raise AssertionError(
                f"expected {count} in-flight requests, saw {manager.in_flight_requests(handle)}"
            )
        await asyncio.sleep(0.01)
