from __future__ import annotations

import asyncio

from herd_mcp.orchestrator.completion import (
    CompletionMethodRegistry,
    CompletionMetrics,
    CompletionResult,
    HybridMethod,
    SilenceTimeoutMethod,
    StateDetectionMethod,
    WaitForChannelMethod,
)
from herd_mcp.orchestrator.event_monitor import EventMonitor
from herd_mcp.tmux import FakeTmuxDriver


class StubMethod:
    def __init__(self, name: str, complete: bool) -> None:
        self.name = name
        self.description = name
        self.metrics = CompletionMetrics(name=name)
        self._complete = complete
        self.timeouts: list[int] = []

    async def detect(self, monitor: EventMonitor, timeout_ms: int = 120_000) -> CompletionResult:
        self.timeouts.append(timeout_ms)
        reason = "done" if self._complete else "gave up"
        return CompletionResult(self._complete, reason, 5, self.name)

    def record_result(self, latency_ms: float, correct: bool, false_positive: bool) -> None:
        self.metrics.record(latency_ms, correct, false_positive)


def _monitor(driver: FakeTmuxDriver | None = None) -> EventMonitor:
    return EventMonitor(driver or FakeTmuxDriver(), pane_id="%1")


def test_registry_resolves_presets_and_custom_silence() -> None:
    registry = CompletionMethodRegistry()

    assert "conservative-hybrid" in registry.names()
    assert registry.resolve("silence-3s").name == "silence-3000ms"
    assert registry.resolve("silence-2s").name == "silence-2000ms"
    assert registry.resolve("silence-750ms").name == "silence-750ms"
    assert registry.resolve("silence-750").name == "silence-750ms"
    assert isinstance(registry.resolve("state-detection"), StateDetectionMethod)


def test_registry_falls_back_to_hybrid() -> None:
    registry = CompletionMethodRegistry()

    for name in (None, "hybrid", "no-such-method", "wait-for-build"):
        method = registry.resolve(name)
        assert method.name == "hybrid(state-detection,silence-5000ms)"


def test_registry_builds_channel_method_with_driver() -> None:
    registry = CompletionMethodRegistry(FakeTmuxDriver())

    method = registry.resolve("wait-for-build")

    assert isinstance(method, WaitForChannelMethod)
    assert method.channel == "build"


def test_registry_accepts_custom_factories() -> None:
    registry = CompletionMethodRegistry()
    registry.register("never", lambda: StubMethod("never", False))

    assert registry.resolve("never").name == "never"


def test_wait_for_channel_completes_on_signal() -> None:
    driver = FakeTmuxDriver()
    driver.signal("build")
    method = WaitForChannelMethod("build", driver)

    result = asyncio.run(method.detect(_monitor(driver), timeout_ms=1000))

    assert result.complete is True
    assert result.reason == 'signal received on channel "build"'


def test_wait_for_channel_times_out() -> None:
    driver = FakeTmuxDriver()
    method = WaitForChannelMethod("build", driver)

    result = asyncio.run(method.detect(_monitor(driver), timeout_ms=20))

    assert result.complete is False
    assert result.reason == "timeout"


def test_silence_method_reports_timeout() -> None:
    method = SilenceTimeoutMethod(5000)

    result = asyncio.run(method.detect(_monitor(), timeout_ms=10))

    assert result.complete is False
    assert result.method == "silence-5000ms"


def test_hybrid_uses_primary_when_it_completes() -> None:
    primary = StubMethod("fast", True)
    fallback = StubMethod("slow", True)
    method = HybridMethod(primary, fallback, primary_timeout_ms=100, fallback_timeout_ms=200)

    result = asyncio.run(method.detect(_monitor(), timeout_ms=1000))

    assert result.complete is True
    assert result.reason == "primary(done)"
    assert primary.timeouts == [100]
    assert fallback.timeouts == []


def test_hybrid_falls_back_within_remaining_budget() -> None:
    primary = StubMethod("fast", False)
    fallback = StubMethod("slow", True)
    method = HybridMethod(primary, fallback, primary_timeout_ms=100, fallback_timeout_ms=200)

    result = asyncio.run(method.detect(_monitor(), timeout_ms=1000))

    assert result.complete is True
    assert result.reason == "fallback(done)"
    assert result.method == "hybrid(fast,slow)"
    assert 0 < fallback.timeouts[0] <= 200


def test_metrics_track_latency_and_misses() -> None:
    metrics = CompletionMetrics(name="silence-3000ms")

    metrics.record(100, correct=True, false_positive=False)
    metrics.record(300, correct=False, false_positive=True)
    metrics.record(200, correct=False, false_positive=False)

    assert metrics.total_runs == 3
    assert metrics.avg_latency_ms == 200
    assert metrics.min_latency_ms == 100
    assert metrics.max_latency_ms == 300
    assert metrics.false_positives == 1
    assert metrics.false_negatives == 1
    assert metrics.success_rate == 1 / 3
