"""Shared pytest configuration, virtual time and a scripted signal provider."""

from __future__ import annotations

import asyncio
import heapq
from collections.abc import Callable
from typing import Any

import pytest

from genwatch.monitoring.monitor import ResponseMonitor
from genwatch.schemas import InspectionScripts, MonitorConfig, NetworkEventName

SCRIPTS = InspectionScripts(
    response_text="text",
    stop_indicator="stop",
    quota_indicator="quota",
    activity="activity",
    response_text_reversed="text_reversed",
    click_stop="click_stop",
    diagnostics="diagnostics",
)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that need a real browser")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


class VirtualClock:
    """Monotonic clock plus sleep that only move when ``advance`` is awaited.

    Sleepers registered for the same instant wake in registration order.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._waiters: list[tuple[float, int, asyncio.Future[None]]] = []
        self._seq = 0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (self.now + max(seconds, 0.0), self._seq, future))
        self._seq += 1
        await future

    async def settle(self, rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await self.settle()
        while self._waiters and self._waiters[0][0] <= target + 1e-9:
            deadline, _, future = heapq.heappop(self._waiters)
            self.now = max(self.now, deadline)
            if not future.done():
                future.set_result(None)
            await self.settle()
        self.now = target
        await self.settle()


class FakeProvider:
    """Signal provider answering from a table keyed by expression."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.calls: list[str] = []
        self.contexts: list[Any] = []
        self.handlers: dict[NetworkEventName, list[Callable[[Any], None]]] = {}
        self.gates: dict[str, asyncio.Event] = {}

    def set(self, expression: str, value: Any) -> None:
        self.values[expression] = value

    def script(self, expression: str, *values: Any) -> None:
        """Answer with *values* in turn, then keep repeating the last one."""
        queue = list(values)

        def next_value() -> Any:
            return queue.pop(0) if len(queue) > 1 else queue[0]

        self.values[expression] = next_value

    async def evaluate(self, expression: str, context: Any = None) -> Any:
        self.calls.append(expression)
        self.contexts.append(context)
        gate = self.gates.get(expression)
        if gate is not None:
            await gate.wait()
        value = self.values.get(expression)
        if callable(value):
            value = value()
        if isinstance(value, Exception):
            raise value
        return value

    def subscribe(self, event_name: NetworkEventName, handler: Callable[[Any], None]) -> None:
        self.handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: NetworkEventName, handler: Callable[[Any], None]) -> None:
        handlers = self.handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self.handlers.pop(event_name, None)

    def emit(self, event_name: NetworkEventName, event: Any) -> None:
        for handler in list(self.handlers.get(event_name, [])):
            handler(event)


class Recorder:
    """Collects every callback the monitor makes."""

    def __init__(self) -> None:
        self.progress: list[str] = []
        self.complete: list[str] = []
        self.timeout: list[str] = []
        self.phases: list[tuple[str, str | None]] = []
        self.activity: list[list[str]] = []

    def callbacks(self) -> dict[str, Callable[..., None]]:
        return {
            "on_progress": self.progress.append,
            "on_complete": self.complete.append,
            "on_timeout": self.timeout.append,
            "on_phase_change": lambda phase, text: self.phases.append((phase.value, text)),
            "on_activity": self.activity.append,
        }


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def provider() -> FakeProvider:
    fake = FakeProvider()
    fake.set("stop", False)
    fake.set("quota", False)
    return fake


@pytest.fixture
def make_monitor(clock: VirtualClock, provider: FakeProvider):
    """Factory returning ``(monitor, recorder)`` wired to the virtual clock."""

    def build(
        scripts: InspectionScripts = SCRIPTS, **config: Any
    ) -> tuple[ResponseMonitor, Recorder]:
        recorder = Recorder()
        monitor = ResponseMonitor(
            provider,
            scripts,
            MonitorConfig(**config),
            clock=clock,
            sleep=clock.sleep,
            **recorder.callbacks(),
        )
        return monitor, recorder

    return build
