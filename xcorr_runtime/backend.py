"""Abstract backend interfaces for the correlator runtime.

A backend is one device plus one in-order command queue and a batched FFT
library with callback injection. All enqueue methods are asynchronous:
they take an explicit wait-list of events and return the event of the
enqueued operation. The host only blocks in DeviceEvent.wait() and
Backend.synchronize().
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from xcorr_compiler.program import PlanSpec


@dataclass(frozen=True)
class EventTimestamps:
    """Host-clock seconds (time.perf_counter base) for one operation."""
    queued: float
    submitted: float
    started: float
    ended: float


class DeviceBuffer(ABC):
    """Abstract device buffer of raw bytes."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def size_bytes(self) -> int:
        ...

    @property
    @abstractmethod
    def native_handle(self) -> Any:
        """Backend-native buffer object (e.g. cupy uint8 ndarray)."""
        ...


class DeviceEvent(ABC):
    """Completion handle for one enqueued operation."""

    @property
    @abstractmethod
    def label(self) -> str:
        ...

    @property
    @abstractmethod
    def done(self) -> bool:
        ...

    @abstractmethod
    def wait(self) -> None:
        """Block until the operation finished. Raises DeviceRuntimeError on failure."""
        ...

    @abstractmethod
    def timestamps(self) -> EventTimestamps:
        """Only valid after wait()."""
        ...


class TransformPlan(ABC):
    """Baked batched transform; immutable after creation."""

    @property
    @abstractmethod
    def spec(self) -> PlanSpec:
        ...

    @property
    def name(self) -> str:
        return self.spec.name


class Backend(ABC):
    """Abstract correlator execution backend."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def device_info(self) -> dict[str, str]:
        ...

    # -- memory --------------------------------------------------------------

    @abstractmethod
    def allocate(self, name: str, size_bytes: int) -> DeviceBuffer:
        ...

    @abstractmethod
    def release(self, buffer: DeviceBuffer) -> None:
        ...

    @abstractmethod
    def write(self, buffer: DeviceBuffer, data: bytes | np.ndarray, offset: int = 0) -> None:
        """Blocking host -> device write."""
        ...

    @abstractmethod
    def write_async(
        self,
        buffer: DeviceBuffer,
        data: np.ndarray,
        offset: int = 0,
        wait_for: Sequence[DeviceEvent] = (),
        label: str = "write",
    ) -> DeviceEvent:
        ...

    @abstractmethod
    def read_async(
        self,
        buffer: DeviceBuffer,
        offset: int,
        size_bytes: int,
        wait_for: Sequence[DeviceEvent] = (),
        label: str = "read",
    ) -> tuple[DeviceEvent, np.ndarray]:
        """Device -> host copy into a uint8 array, valid once the event completes."""
        ...

    @abstractmethod
    def copy_async(
        self,
        src: DeviceBuffer,
        dst: DeviceBuffer,
        size_bytes: int,
        src_offset: int = 0,
        dst_offset: int = 0,
        wait_for: Sequence[DeviceEvent] = (),
        label: str = "copy",
    ) -> DeviceEvent:
        ...

    @abstractmethod
    def fill_async(
        self,
        buffer: DeviceBuffer,
        value: int,
        offset: int,
        size_bytes: int,
        wait_for: Sequence[DeviceEvent] = (),
        label: str = "fill",
    ) -> DeviceEvent:
        ...

    # -- transforms ----------------------------------------------------------

    @abstractmethod
    def create_plan(self, spec: PlanSpec, buffers: Mapping[str, DeviceBuffer]) -> TransformPlan:
        """Bake a plan; userdata and I/O buffers are looked up by the names in spec."""
        ...

    @abstractmethod
    def destroy_plan(self, plan: TransformPlan) -> None:
        ...

    @abstractmethod
    def enqueue_transform(
        self,
        plan: TransformPlan,
        input_buffer: DeviceBuffer,
        output_buffer: DeviceBuffer,
        wait_for: Sequence[DeviceEvent] = (),
        label: str | None = None,
    ) -> DeviceEvent:
        ...

    # -- queue ---------------------------------------------------------------

    @abstractmethod
    def synchronize(self) -> None:
        """Full-queue barrier."""
        ...

    @abstractmethod
    def close(self) -> None:
        ...


def check_range(buffer: DeviceBuffer, offset: int, size_bytes: int) -> None:
    """Reject an access outside [0, buffer.size_bytes)."""
    if offset < 0 or size_bytes < 0 or offset + size_bytes > buffer.size_bytes:
        raise ValueError(
            f"access [{offset}, {offset + size_bytes}) out of range for buffer "
            f"'{buffer.name}' of {buffer.size_bytes} bytes"
        )
