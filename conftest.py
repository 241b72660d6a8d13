"""Pytest configuration: asyncio tests without external plugins, plus shared fakes."""

from __future__ import annotations

import asyncio
import inspect

import pytest

from backends.memory import InMemoryBackend
from feed_registry import FeedSpec
from models.rows import GeoMarker, LiveSale


@pytest.hookimpl(tryfirst=True)
def pytest_configure(config: pytest.Config) -> None:
    """Register the custom ``asyncio`` marker used throughout the test suite."""

    config.addinivalue_line(
        "markers",
        "asyncio: mark a test as running inside an asyncio event loop",
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute ``async def`` tests by driving them with a fresh event loop."""

    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        params = inspect.signature(test_function).parameters
        funcargs = {
            name: value for name, value in pyfuncitem.funcargs.items() if name in params
        }
        loop.run_until_complete(test_function(**funcargs))
        loop.run_until_complete(loop.shutdown_asyncgens())
    finally:
        asyncio.set_event_loop(None)
        loop.close()
    return True


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def sales_spec() -> FeedSpec:
    return FeedSpec(
        name="test_sales",
        table="sales",
        channel="test:sales",
        model=LiveSale,
        capacity=3,
        alert=lambda s: s.total_amount >= 1000,
    )


@pytest.fixture
def markers_spec() -> FeedSpec:
    return FeedSpec(
        name="test_markers",
        table="system_global_telemetry",
        channel="test:markers",
        source="view_admin_live_map_markers",
        model=GeoMarker,
        capacity=5,
    )
