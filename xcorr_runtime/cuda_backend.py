"""CUDA backend: CuPy + cuFFT callback implementation of the Backend ABC.

Architecture:
    - One non-blocking cupy.cuda.Stream is the in-order command queue
    - Every enqueue waits on its wait-list via stream.wait_event() and is
      bracketed by a pair of cupy.cuda.Event for device timestamps
    - Host transfers are staged through pinned memory (cupyx.empty_pinned)
      so copies stay asynchronous; the staging array lives on the event
    - Plans are baked with cupy.fft.config.set_cufft_callbacks() +
      cupyx.scipy.fft.get_fft_plan(); the callback source and userdata
      (aux) arrays are fixed at bake time
    - Device timestamps map onto time.perf_counter() through an epoch
      event recorded when the backend is created

Design trade-offs:
    - Legacy cuFFT callbacks need nvcc at bake time; CuPy caches the
      compiled callback module on disk, so only the first bake is slow
    - Device-side failures surface at the next wait() on an event, which
      is where the pipeline collects timing
"""

from __future__ import annotations

import ctypes
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np

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

try:
    import cupy as cp
    import cupyx
    import cupyx.scipy.fft as cpx_fft
    from cupy.cuda import cufft

    HAS_CUPY = True
    _DEVICE_ERRORS: tuple[type[BaseException], ...] = (
        cp.cuda.runtime.CUDARuntimeError,
        cp.cuda.driver.CUDADriverError,
        cufft.CuFFTError,
    )
except ImportError:
    cp = None
    cupyx = None
    cpx_fft = None
    cufft = None
    HAS_CUPY = False
    _DEVICE_ERRORS = ()

logger = logging.getLogger(__name__)


class CUDABuffer(DeviceBuffer):
    """Raw device allocation plus a uint8 cupy.ndarray view over it."""

    def __init__(self, name: str, memptr: cp.cuda.MemoryPointer, size_bytes: int):
        self._name = name
        self._memptr = memptr
        self._size_bytes = size_bytes
        self._array = cp.ndarray((size_bytes,), dtype=cp.uint8, memptr=memptr)

    @property
    def name(self) -> str:
        return self._name

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    @property
    def memptr(self) -> cp.cuda.MemoryPointer:
        if self._memptr is None:
            raise DeviceRuntimeError(f"buffer '{self._name}' was released")
        return self._memptr

    @property
    def native_handle(self) -> Any:
        """Return the uint8 cupy.ndarray view."""
        if self._array is None:
            raise DeviceRuntimeError(f"buffer '{self._name}' was released")
        return self._array

    def view(self, dtype, shape: tuple[int, ...]) -> cp.ndarray:
        return cp.ndarray(shape, dtype=dtype, memptr=self.memptr)

    def free(self) -> None:
        # Memory goes back to CuPy's pool once the last reference drops
        self._array = None
        self._memptr = None


class CUDAEvent(DeviceEvent):
    """Start/end cupy.cuda.Event pair around one enqueued operation."""

    def __init__(
        self,
        label: str,
        start: cp.cuda.Event,
        end: cp.cuda.Event,
        queued: float,
        submitted: float,
        backend: CUDABackend,
        keepalive: Any = None,
    ):
        self._label = label
        self._start = start
        self._end = end
        self._queued = queued
        self._submitted = submitted
        self._backend = backend
        self._keepalive = keepalive

    @property
    def label(self) -> str:
        return self._label

    @property
    def end_event(self) -> cp.cuda.Event:
        return self._end

    @property
    def done(self) -> bool:
        return self._end.done

    def wait(self) -> None:
        try:
            self._end.synchronize()
        except _DEVICE_ERRORS as exc:
            raise DeviceRuntimeError(str(exc), operation=self._label) from exc

    def timestamps(self) -> EventTimestamps:
        return EventTimestamps(
            queued=self._queued,
            submitted=self._submitted,
            started=self._backend.device_to_host_time(self._start),
            ended=self._backend.device_to_host_time(self._end),
        )


class CUDAPlan(TransformPlan):
    def __init__(self, spec: PlanSpec, handle: Any, aux_arrays: tuple):
        self._spec = spec
        self.handle = handle
        # cuFFT keeps raw pointers to these; hold them for the plan's lifetime
        self._aux_arrays = aux_arrays
        self.direction = cufft.CUFFT_FORWARD if spec.direction == FORWARD else cufft.CUFFT_INVERSE

    @property
    def spec(self) -> PlanSpec:
        return self._spec

    def release(self) -> None:
        self.handle = None
        self._aux_arrays = ()


class CUDABackend(Backend):
    """CuPy-based correlator backend on one CUDA device."""

    def __init__(self, device_id: int = 0):
        if not HAS_CUPY:
            raise RuntimeError("CuPy is not installed")

        self._device_id = device_id
        try:
            self._device = cp.cuda.Device(device_id)
            self._device.use()
            self._stream = cp.cuda.Stream(non_blocking=True)
            # Epoch event: device time zero for timestamp mapping
            self._epoch = cp.cuda.Event()
            self._epoch.record(self._stream)
            self._epoch.synchronize()
            self._epoch_host = time.perf_counter()
        except _DEVICE_ERRORS as exc:
            raise ResourceAllocationError(str(exc), operation=f"open_device:{device_id}") from exc
        self._closed = False
        logger.info("CUDA backend on device %d (%s)", device_id, self.device_info()["device"])

    @property
    def name(self) -> str:
        return "cuda"

    @property
    def stream(self) -> cp.cuda.Stream:
        return self._stream

    def device_info(self) -> dict[str, str]:
        props = cp.cuda.runtime.getDeviceProperties(self._device_id)
        device_name = props["name"]
        if isinstance(device_name, bytes):
            device_name = device_name.decode()
        return {
            "backend": self.name,
            "device": device_name,
            "driver": str(cp.cuda.runtime.driverGetVersion()),
            "runtime": str(cp.cuda.runtime.runtimeGetVersion()),
            "fft_library": f"cuFFT {cufft.getVersion()}",
        }

    def device_to_host_time(self, event: cp.cuda.Event) -> float:
        return self._epoch_host + cp.cuda.get_elapsed_time(self._epoch, event) / 1000.0

    # -- memory --------------------------------------------------------------

    def allocate(self, name: str, size_bytes: int) -> CUDABuffer:
        if size_bytes <= 0:
            raise ResourceAllocationError(f"cannot allocate {size_bytes} bytes", operation=f"allocate:{name}")
        try:
            memptr = cp.cuda.alloc(size_bytes)
        except (cp.cuda.memory.OutOfMemoryError, *_DEVICE_ERRORS) as exc:
            raise ResourceAllocationError(str(exc), operation=f"allocate:{name}") from exc
        logger.debug("allocated %s: %d bytes", name, size_bytes)
        return CUDABuffer(name, memptr, size_bytes)

    def release(self, buffer: CUDABuffer) -> None:
        buffer.free()

    def write(self, buffer: CUDABuffer, data, offset: int = 0) -> None:
        if isinstance(data, (bytes, bytearray)):
            data = np.frombuffer(bytes(data), dtype=np.uint8)
        self.write_async(buffer, data, offset, label=f"write:{buffer.name}").wait()

    def write_async(self, buffer, data, offset=0, wait_for=(), label="write") -> CUDAEvent:
        src = np.ascontiguousarray(data).view(np.uint8).ravel()
        check_range(buffer, offset, src.nbytes)
        staging = cupyx.empty_pinned((src.nbytes,), dtype=np.uint8)
        staging[...] = src
        dst = buffer.memptr + offset

        def _copy():
            dst.copy_from_host_async(ctypes.c_void_p(staging.ctypes.data), src.nbytes, self._stream)

        return self._enqueue(label, wait_for, _copy, keepalive=staging)

    def read_async(self, buffer, offset, size_bytes, wait_for=(), label="read"):
        check_range(buffer, offset, size_bytes)
        out = cupyx.empty_pinned((size_bytes,), dtype=np.uint8)
        src = buffer.memptr + offset

        def _copy():
            src.copy_to_host_async(ctypes.c_void_p(out.ctypes.data), size_bytes, self._stream)

        return self._enqueue(label, wait_for, _copy, keepalive=out), out

    def copy_async(self, src, dst, size_bytes, src_offset=0, dst_offset=0, wait_for=(), label="copy"):
        check_range(src, src_offset, size_bytes)
        check_range(dst, dst_offset, size_bytes)
        src_ptr = src.memptr + src_offset
        dst_ptr = dst.memptr + dst_offset

        def _copy():
            dst_ptr.copy_from_device_async(src_ptr, size_bytes, self._stream)

        return self._enqueue(label, wait_for, _copy)

    def fill_async(self, buffer, value, offset, size_bytes, wait_for=(), label="fill"):
        check_range(buffer, offset, size_bytes)
        ptr = buffer.memptr + offset
        return self._enqueue(label, wait_for, lambda: ptr.memset_async(value, size_bytes, self._stream))

    # -- transforms ----------------------------------------------------------

    def create_plan(self, spec: PlanSpec, buffers: Mapping[str, CUDABuffer]) -> CUDAPlan:
        """Bake a batched C2C plan with its callback fragments compiled in."""
        # Shape/dtype template only; get_fft_plan never reads the memory
        template = buffers[spec.output_buffer].view(cp.complex64, (spec.batch, spec.fft_size))
        load_aux = buffers[spec.load_userdata].native_handle if spec.load_userdata else None
        store_aux = buffers[spec.store_userdata].native_handle if spec.store_userdata else None
        try:
            with self._device, cp.fft.config.set_cufft_callbacks(
                cb_load=spec.load_callback.source if spec.load_callback else "",
                cb_store=spec.store_callback.source if spec.store_callback else "",
                cb_load_aux_arr=load_aux,
                cb_store_aux_arr=store_aux,
            ):
                handle = cpx_fft.get_fft_plan(template, axes=(-1,), value_type="C2C")
        except _DEVICE_ERRORS as exc:
            raise ResourceAllocationError(str(exc), operation=f"create_plan:{spec.name}") from exc
        logger.debug("baked plan %s: %d x %d (%s)", spec.name, spec.batch, spec.fft_size, spec.direction)
        return CUDAPlan(spec, handle, (load_aux, store_aux))

    def destroy_plan(self, plan: CUDAPlan) -> None:
        plan.release()

    def enqueue_transform(self, plan: CUDAPlan, input_buffer, output_buffer, wait_for=(), label=None):
        spec = plan.spec
        label = label or f"transform:{spec.name}"
        if plan.handle is None:
            raise DeviceRuntimeError(f"plan '{spec.name}' was destroyed", operation=label)
        # cuFFT only uses .data.ptr of these; the load callback interprets dataIn
        src = input_buffer.native_handle
        dst = output_buffer.native_handle

        def _exec():
            with self._stream:
                plan.handle.fft(src, dst, plan.direction)

        return self._enqueue(label, wait_for, _exec)

    # -- queue ---------------------------------------------------------------

    def synchronize(self) -> None:
        try:
            self._stream.synchronize()
        except _DEVICE_ERRORS as exc:
            raise DeviceRuntimeError(str(exc), operation="synchronize") from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stream.synchronize()
        self._stream = None
        cp.get_default_memory_pool().free_all_blocks()
        cp.get_default_pinned_memory_pool().free_all_blocks()
        logger.info("CUDA backend on device %d closed", self._device_id)

    def _enqueue(self, label: str, wait_for: Sequence[DeviceEvent], fn, keepalive=None) -> CUDAEvent:
        if self._closed:
            raise DeviceRuntimeError("backend is closed", operation=label)
        queued = time.perf_counter()
        start = cp.cuda.Event()
        end = cp.cuda.Event()
        try:
            for event in wait_for:
                self._stream.wait_event(event.end_event)
            start.record(self._stream)
            fn()
            end.record(self._stream)
        except _DEVICE_ERRORS as exc:
            raise DeviceRuntimeError(str(exc), operation=label) from exc
        submitted = time.perf_counter()
        logger.debug("enqueued %s", label)
        return CUDAEvent(label, start, end, queued, submitted, self, keepalive)
