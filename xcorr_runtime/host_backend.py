"""Host backend: numpy execution of the correlator's plans and callbacks.

Implements the Backend interface on the CPU so the pipeline, its state
machine and the callback arithmetic can run (and be tested) without a
GPU. Every enqueue executes immediately, so events are complete when
returned; timestamps are still recorded per operation.

Plans run as: load host model -> np.fft -> store host model, over the
same raw byte buffers and userdata headers the CUDA backend uses. The
inverse transform is unnormalized, matching cuFFT; the peak store model
applies the 1/N backward scale.
"""

from __future__ import annotations

import logging
import platform
import time
from collections.abc import Callable, Sequence

import numpy as np

from xcorr_compiler.callbacks import get_host_model
from xcorr_compiler.layout import COMPLEX_BYTES
from xcorr_compiler.program import FORWARD, PlanSpec
from xcorr_runtime.backend import (
    Backend,
    DeviceBuffer,
    DeviceEvent,
    EventTimestamps,
    TransformPlan,
    check_range,
)
from xcorr_runtime.errors import DeviceRuntimeError, ResourceAllocationError

logger = logging.getLogger(__name__)

_EMPTY = np.zeros(0, dtype=np.uint8)


class HostBuffer(DeviceBuffer):
    """Host memory buffer backed by a uint8 numpy array."""

    def __init__(self, name: str, size_bytes: int):
        self._name = name
        self._data: np.ndarray | None = np.zeros(size_bytes, dtype=np.uint8)

    @property
    def name(self) -> str:
        return self._name

    @property
    def size_bytes(self) -> int:
        return 0 if self._data is None else self._data.nbytes

    @property
    def native_handle(self) -> np.ndarray:
        if self._data is None:
            raise DeviceRuntimeError(f"buffer '{self._name}' was released")
        return self._data

    @property
    def released(self) -> bool:
        return self._data is None

    def free(self) -> None:
        self._data = None


class HostEvent(DeviceEvent):
    """Already-completed event."""

    def __init__(self, label: str, stamps: EventTimestamps):
        self._label = label
        self._stamps = stamps

    @property
    def label(self) -> str:
        return self._label

    @property
    def done(self) -> bool:
        return True

    def wait(self) -> None:
        return None

    def timestamps(self) -> EventTimestamps:
        return self._stamps


class HostPlan(TransformPlan):
    def __init__(self, spec: PlanSpec, load_userdata: HostBuffer | None, store_userdata: HostBuffer | None):
        self._spec = spec
        self.load_userdata = load_userdata
        self.store_userdata = store_userdata
        self.load_model = get_host_model(spec.load_callback.name) if spec.load_callback else None
        self.store_model = get_host_model(spec.store_callback.name) if spec.store_callback else None
        self.destroyed = False

    @property
    def spec(self) -> PlanSpec:
        return self._spec


class HostBackend(Backend):
    """numpy implementation of the correlator backend."""

    def __init__(self):
        self._closed = False

    @property
    def name(self) -> str:
        return "host"

    def device_info(self) -> dict[str, str]:
        return {
            "backend": self.name,
            "device": platform.processor() or platform.machine() or "cpu",
            "driver": platform.python_implementation() + " " + platform.python_version(),
            "fft_library": f"numpy {np.__version__}",
        }

    # -- memory --------------------------------------------------------------

    def allocate(self, name: str, size_bytes: int) -> HostBuffer:
        if size_bytes <= 0:
            raise ResourceAllocationError(f"cannot allocate {size_bytes} bytes", operation=f"allocate:{name}")
        try:
            return HostBuffer(name, size_bytes)
        except MemoryError as exc:
            raise ResourceAllocationError(
                f"out of host memory for {size_bytes} bytes", operation=f"allocate:{name}"
            ) from exc

    def release(self, buffer: HostBuffer) -> None:
        buffer.free()

    def write(self, buffer: HostBuffer, data, offset: int = 0) -> None:
        raw = np.frombuffer(bytes(data), dtype=np.uint8) if isinstance(data, (bytes, bytearray)) \
            else np.ascontiguousarray(data).view(np.uint8).ravel()
        check_range(buffer, offset, raw.nbytes)
        buffer.native_handle[offset:offset + raw.nbytes] = raw

    def write_async(self, buffer, data, offset=0, wait_for=(), label="write") -> HostEvent:
        return self._execute(label, lambda: self.write(buffer, data, offset), wait_for)

    def read_async(self, buffer, offset, size_bytes, wait_for=(), label="read"):
        check_range(buffer, offset, size_bytes)
        out = np.empty(size_bytes, dtype=np.uint8)

        def _read():
            out[:] = buffer.native_handle[offset:offset + size_bytes]

        return self._execute(label, _read, wait_for), out

    def copy_async(self, src, dst, size_bytes, src_offset=0, dst_offset=0, wait_for=(), label="copy"):
        check_range(src, src_offset, size_bytes)
        check_range(dst, dst_offset, size_bytes)

        def _copy():
            dst.native_handle[dst_offset:dst_offset + size_bytes] = \
                src.native_handle[src_offset:src_offset + size_bytes]

        return self._execute(label, _copy, wait_for)

    def fill_async(self, buffer, value, offset, size_bytes, wait_for=(), label="fill"):
        check_range(buffer, offset, size_bytes)

        def _fill():
            buffer.native_handle[offset:offset + size_bytes] = value

        return self._execute(label, _fill, wait_for)

    # -- transforms ----------------------------------------------------------

    def create_plan(self, spec, buffers) -> HostPlan:
        try:
            load_userdata = buffers[spec.load_userdata] if spec.load_userdata else None
            store_userdata = buffers[spec.store_userdata] if spec.store_userdata else None
            return HostPlan(spec, load_userdata, store_userdata)
        except KeyError as exc:
            raise ResourceAllocationError(str(exc), operation=f"create_plan:{spec.name}") from exc

    def destroy_plan(self, plan: HostPlan) -> None:
        plan.destroyed = True

    def enqueue_transform(self, plan: HostPlan, input_buffer, output_buffer, wait_for=(), label=None):
        spec = plan.spec
        label = label or f"transform:{spec.name}"
        if plan.destroyed:
            raise DeviceRuntimeError(f"plan '{spec.name}' was destroyed", operation=label)

        def _transform():
            offsets = np.arange(spec.num_elements, dtype=np.int64)
            if plan.load_model is not None:
                x = plan.load_model(
                    input_buffer.native_handle, offsets,
                    _userdata(plan.load_userdata), spec.load_callback.constants,
                )
            else:
                x = input_buffer.native_handle[:spec.num_elements * COMPLEX_BYTES].view(np.complex64)
            x = x.reshape(spec.batch, spec.fft_size)
            if spec.direction == FORWARD:
                y = np.fft.fft(x, axis=-1)
            else:
                y = np.fft.ifft(x, axis=-1, norm="forward")
            y = y.astype(np.complex64).ravel()
            if plan.store_model is not None:
                plan.store_model(
                    output_buffer.native_handle, offsets, y,
                    _userdata(plan.store_userdata), spec.store_callback.constants,
                )
            else:
                output_buffer.native_handle[:y.nbytes].view(np.complex64)[:] = y

        return self._execute(label, _transform, wait_for)

    # -- queue ---------------------------------------------------------------

    def synchronize(self) -> None:
        return None

    def close(self) -> None:
        self._closed = True

    def _execute(self, label: str, fn: Callable[[], None], wait_for: Sequence[DeviceEvent]) -> HostEvent:
        if self._closed:
            raise DeviceRuntimeError("backend is closed", operation=label)
        for event in wait_for:
            event.wait()
        queued = time.perf_counter()
        logger.debug("host enqueue %s", label)
        submitted = time.perf_counter()
        try:
            fn()
        except (ValueError, IndexError, TypeError) as exc:
            raise DeviceRuntimeError(str(exc), operation=label) from exc
        ended = time.perf_counter()
        return HostEvent(label, EventTimestamps(queued, submitted, submitted, ended))


def _userdata(buffer: HostBuffer | None) -> np.ndarray:
    return _EMPTY if buffer is None else buffer.native_handle
