"""Profiler: per-operation timing decomposition for enqueued device work."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field

from xcorr_runtime.backend import DeviceEvent


@dataclass
class OperationTiming:
    """Timing of one asynchronous operation, in milliseconds.

    queued_ms: host call -> returned from enqueue (submission overhead)
    queue_wait_ms: submitted -> device started
    execute_ms: device started -> device ended
    total_ms: queued -> device ended
    cpu_wait_ms: time the host spent blocked in wait()
    """
    queued_ms: float
    queue_wait_ms: float
    execute_ms: float
    total_ms: float
    cpu_wait_ms: float = 0.0


def measure(event: DeviceEvent) -> OperationTiming:
    """Block on `event` and decompose its timestamps."""
    t0 = time.perf_counter()
    event.wait()
    cpu_wait = time.perf_counter() - t0

    ts = event.timestamps()
    # Device clock is mapped onto the host clock; clamp small negative skew
    return OperationTiming(
        queued_ms=max(0.0, ts.submitted - ts.queued) * 1000,
        queue_wait_ms=max(0.0, ts.started - ts.submitted) * 1000,
        execute_ms=max(0.0, ts.ended - ts.started) * 1000,
        total_ms=max(0.0, ts.ended - ts.queued) * 1000,
        cpu_wait_ms=cpu_wait * 1000,
    )


@dataclass
class EventTimingCollector:
    """Timings grouped by pipeline step, then by operation label."""

    steps: dict[str, dict[str, OperationTiming]] = field(default_factory=dict)

    def collect(self, step: str, label: str, event: DeviceEvent) -> OperationTiming:
        timing = measure(event)
        self.steps.setdefault(step, {})[label] = timing
        return timing

    def clear(self, step: str | None = None) -> None:
        if step is None:
            self.steps.clear()
        else:
            self.steps.pop(step, None)

    def step_total_ms(self, step: str) -> float:
        """Sum of device execute time over the step's operations."""
        return sum(t.execute_ms for t in self.steps.get(step, {}).values())

    def to_dict(self) -> dict:
        return {
            step: {label: asdict(t) for label, t in ops.items()}
            for step, ops in self.steps.items()
        }

    def summary(self) -> str:
        lines = [f"{'step':<8} {'operation':<28} {'queued':>9} {'wait':>9} {'exec':>9} {'total':>9}"]
        for step, ops in self.steps.items():
            for label, t in ops.items():
                lines.append(
                    f"{step:<8} {label:<28} {t.queued_ms:9.3f} {t.queue_wait_ms:9.3f} "
                    f"{t.execute_ms:9.3f} {t.total_ms:9.3f}"
                )
        return "\n".join(lines)
