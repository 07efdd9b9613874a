"""Pluggable strategies for deciding when an agent has finished its turn."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Protocol

from ..tmux.driver import TmuxDriverProtocol, TmuxError
from .event_monitor import EventMonitor, wait_for_completion, wait_for_silence
from .state_detector import AgentState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 120_000

_CUSTOM_SILENCE = re.compile(r"^silence-(\d+)(ms|s)?$")
_CHANNEL = re.compile(r"^wait-for-([\w.-]+)$")


@dataclass(slots=True)
class CompletionResult:
    complete: bool
    reason: str
    latency_ms: int
    method: str
    state: AgentState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "complete": self.complete,
            "reason": self.reason,
            "latency_ms": self.latency_ms,
            "method": self.method,
            "state": self.state.to_dict() if self.state is not None else None,
        }


@dataclass(slots=True)
class CompletionMetrics:
    """Running accuracy and latency figures for one method."""

    name: str
    total_runs: int = 0
    avg_latency_ms: float = 0.0
    min_latency_ms: float | None = None
    max_latency_ms: float = 0.0
    false_positives: int = 0
    false_negatives: int = 0
    success_rate: float = 1.0

    def record(self, latency_ms: float, correct: bool, false_positive: bool) -> None:
        self.total_runs += 1
        self.avg_latency_ms = (self.avg_latency_ms * (self.total_runs - 1) + latency_ms) / self.total_runs
        self.min_latency_ms = latency_ms if self.min_latency_ms is None else min(self.min_latency_ms, latency_ms)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if not correct:
            if false_positive:
                self.false_positives += 1
            else:
                self.false_negatives += 1
        misses = self.false_positives + self.false_negatives
        self.success_rate = (self.total_runs - misses) / self.total_runs

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CompletionMethod(Protocol):
    name: str
    description: str
    metrics: CompletionMetrics

    async def detect(self, monitor: EventMonitor, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CompletionResult:
        ...

    def record_result(self, latency_ms: float, correct: bool, false_positive: bool) -> None:
        ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class _MetricsMixin:
    name: str
    metrics: CompletionMetrics

    def record_result(self, latency_ms: float, correct: bool, false_positive: bool) -> None:
        self.metrics.record(latency_ms, correct, false_positive)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class SilenceTimeoutMethod(_MetricsMixin):
    """Complete once the pane has produced no output for ``silence_ms``."""

    def __init__(self, silence_ms: int) -> None:
        self.silence_ms = silence_ms
        self.name = f"silence-{silence_ms}ms"
        self.description = f"Detect completion when no output for {silence_ms}ms"
        self.metrics = CompletionMetrics(name=self.name)

    async def detect(self, monitor: EventMonitor, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CompletionResult:
        started = time.monotonic()
        try:
            await wait_for_silence(monitor, self.silence_ms, timeout_ms)
        except asyncio.TimeoutError:
            return CompletionResult(False, "timeout waiting for silence", _elapsed_ms(started), self.name)
        return CompletionResult(
            True,
            f"silence for {self.silence_ms}ms",
            _elapsed_ms(started),
            self.name,
            state=monitor.current_state,
        )


class StateDetectionMethod(_MetricsMixin):
    """Complete once the classifier reports an idle prompt (or an error)."""

    name = "state-detection"
    description = "Detect completion when idle state is detected"

    def __init__(self, silence_ms: int = 2000) -> None:
        self.silence_ms = silence_ms
        self.metrics = CompletionMetrics(name=self.name)

    async def detect(self, monitor: EventMonitor, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CompletionResult:
        started = time.monotonic()
        try:
            outcome = await wait_for_completion(
                monitor, silence_ms=self.silence_ms, timeout_ms=timeout_ms, require_idle=True
            )
        except asyncio.TimeoutError:
            return CompletionResult(False, "timeout waiting for completion", _elapsed_ms(started), self.name)
        return CompletionResult(True, outcome.reason, _elapsed_ms(started), self.name, state=outcome.state)


class WaitForChannelMethod(_MetricsMixin):
    """Complete when something signals the tmux ``wait-for`` channel."""

    def __init__(self, channel: str, driver: TmuxDriverProtocol) -> None:
        self.channel = channel
        self._driver = driver
        self.name = f"wait-for-{channel}"
        self.description = f'Wait for tmux wait-for signal on channel "{channel}"'
        self.metrics = CompletionMetrics(name=self.name)

    async def detect(self, monitor: EventMonitor, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CompletionResult:
        started = time.monotonic()
        try:
            await asyncio.wait_for(self._driver.wait_for(self.channel), timeout_ms / 1000)
        except asyncio.TimeoutError:
            return CompletionResult(False, "timeout", _elapsed_ms(started), self.name)
        except TmuxError as exc:
            return CompletionResult(False, str(exc), _elapsed_ms(started), self.name)
        return CompletionResult(
            True, f'signal received on channel "{self.channel}"', _elapsed_ms(started), self.name
        )


class HybridMethod(_MetricsMixin):
    """Try ``primary`` within its budget, then ``fallback`` for the remaining time."""

    def __init__(
        self,
        primary: CompletionMethod,
        fallback: CompletionMethod,
        *,
        primary_timeout_ms: int = 30_000,
        fallback_timeout_ms: int = 90_000,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.primary_timeout_ms = primary_timeout_ms
        self.fallback_timeout_ms = fallback_timeout_ms
        self.name = f"hybrid({primary.name},{fallback.name})"
        self.description = f"Try {primary.name} first, fall back to {fallback.name}"
        self.metrics = CompletionMetrics(name=self.name)

    async def detect(self, monitor: EventMonitor, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CompletionResult:
        started = time.monotonic()
        first = await self.primary.detect(monitor, min(self.primary_timeout_ms, timeout_ms))
        if first.complete:
            return CompletionResult(True, f"primary({first.reason})", first.latency_ms, self.name, first.state)

        remaining = timeout_ms - _elapsed_ms(started)
        if remaining <= 0:
            return CompletionResult(False, "timeout after primary method", _elapsed_ms(started), self.name)

        logger.debug(
            "Primary completion method gave up; using fallback",
            extra={"method": self.name, "pane_id": monitor.pane_id},
        )
        second = await self.fallback.detect(monitor, min(self.fallback_timeout_ms, remaining))
        return CompletionResult(
            second.complete, f"fallback({second.reason})", _elapsed_ms(started), self.name, second.state
        )


def default_method() -> HybridMethod:
    return HybridMethod(
        StateDetectionMethod(),
        SilenceTimeoutMethod(5000),
        primary_timeout_ms=30_000,
        fallback_timeout_ms=90_000,
    )


MethodFactory = Callable[[], CompletionMethod]


class CompletionMethodRegistry:
    """Resolve completion method names to fresh strategy instances.

    Besides the presets, ``silence-<N>ms``, ``silence-<N>s`` and ``silence-<N>``
    (milliseconds) build custom silence thresholds, and ``wait-for-<channel>``
    builds a tmux channel method when a driver is available. Anything else
    resolves to the default hybrid method.
    """

    DEFAULT = "hybrid"

    def __init__(self, driver: TmuxDriverProtocol | None = None) -> None:
        self._driver = driver
        self._factories: dict[str, MethodFactory] = {
            "silence-3s": lambda: SilenceTimeoutMethod(3000),
            "silence-5s": lambda: SilenceTimeoutMethod(5000),
            "silence-10s": lambda: SilenceTimeoutMethod(10_000),
            "state-detection": StateDetectionMethod,
            "hybrid": default_method,
            "aggressive-hybrid": lambda: HybridMethod(
                StateDetectionMethod(),
                SilenceTimeoutMethod(2000),
                primary_timeout_ms=10_000,
                fallback_timeout_ms=30_000,
            ),
            "conservative-hybrid": lambda: HybridMethod(
                StateDetectionMethod(),
                SilenceTimeoutMethod(10_000),
                primary_timeout_ms=60_000,
                fallback_timeout_ms=120_000,
            ),
        }

    def register(self, name: str, factory: MethodFactory) -> None:
        self._factories[name] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def resolve(self, name: str | None) -> CompletionMethod:
        key = (name or self.DEFAULT).strip()
        factory = self._factories.get(key)
        if factory is not None:
            return factory()

        silence = _CUSTOM_SILENCE.match(key)
        if silence:
            value = int(silence.group(1))
            return SilenceTimeoutMethod(value * 1000 if silence.group(2) == "s" else value)

        channel = _CHANNEL.match(key)
        if channel and self._driver is not None:
            return WaitForChannelMethod(channel.group(1), self._driver)

        logger.debug("Unknown completion method; using default", extra={"method": key})
        return self._factories[self.DEFAULT]()


__all__ = [
    "CompletionMethod",
    "CompletionMethodRegistry",
    "CompletionMetrics",
    "CompletionResult",
    "HybridMethod",
    "SilenceTimeoutMethod",
    "StateDetectionMethod",
    "WaitForChannelMethod",
    "default_method",
]
