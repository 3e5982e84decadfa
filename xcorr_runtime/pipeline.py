"""Correlation pipeline: three-step state machine over the baked plans.

Architecture:
    - initialize(): compile the program, allocate every buffer once, write
      userdata headers, bake the reference / input / correlation plans
    - run_step1(reference): upload -> forward reference plan
      (shift bank + conjugate fused into the plan's callbacks)
    - run_step2(inputs): upload -> forward input plan
    - run_step3(): D2D ref spectrum -> D2D input spectrum -> inverse
      correlation plan (multiply + peak callbacks) -> read peak payload
    - Every enqueue names its prerequisites in an explicit wait-list; the
      last event of a step gates the first operation of the next one
    - The host blocks only when collecting a step's timings

States: UNINITIALIZED -> INITIALIZED -> STEP1_DONE -> STEP2_DONE -> STEP3_DONE.
A step whose target state is already reached is a no-op; a step whose
prerequisite is missing raises SequencingError. A device failure aborts
the step and leaves the state at the last completed step.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import IntEnum

import numpy as np

from xcorr_compiler import compile_correlator
from xcorr_compiler.config import ConfigError, CorrelatorConfig, PeakMode
from xcorr_compiler.layout import layout_for_config
from xcorr_compiler.program import CorrelationProgram
from xcorr_runtime.backend import DeviceBuffer, DeviceEvent
from xcorr_runtime.context import DeviceContext, open_context
from xcorr_runtime.errors import CorrelatorError, ResourceAllocationError, SequencingError
from xcorr_runtime.plan_factory import PlanFactory, PlanSet
from xcorr_runtime.profiler import EventTimingCollector

logger = logging.getLogger(__name__)


class PipelineState(IntEnum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    STEP1_DONE = 2
    STEP2_DONE = 3
    STEP3_DONE = 4


class CorrelationPipeline:
    """Batched FFT cross-correlator on one device context.

    Args:
        context: Device context supplied by the caller. It is closed by
            cleanup() only when the pipeline owns it (see open()).
        config: Validated configuration; the layout is planned here so
            invalid or overflowing shapes fail construction.
    """

    def __init__(self, context: DeviceContext, config: CorrelatorConfig, owns_context: bool = False):
        if not isinstance(config, CorrelatorConfig):
            raise ConfigError(f"expected CorrelatorConfig, got {type(config).__name__}")
        self._context = context
        self._config = config
        self._layout = layout_for_config(config)
        self._owns_context = owns_context

        self._state = PipelineState.UNINITIALIZED
        self._cleaned_up = False
        self._program: CorrelationProgram | None = None
        self._buffers: dict[str, DeviceBuffer] = {}
        self._plans: PlanSet | None = None
        self._last_event: DeviceEvent | None = None
        self._peaks: np.ndarray | None = None
        self.timings = EventTimingCollector()

    @classmethod
    def open(cls, config: CorrelatorConfig, backend: str = "cuda", device_id: int = 0) -> CorrelationPipeline:
        """Create a pipeline that owns its device context."""
        return cls(open_context(backend, device_id), config, owns_context=True)

    # -----------------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up

    @property
    def config(self) -> CorrelatorConfig:
        return self._config

    @property
    def layout(self):
        return self._layout

    @property
    def program(self) -> CorrelationProgram | None:
        return self._program

    @property
    def buffers(self) -> dict[str, DeviceBuffer]:
        return dict(self._buffers)

    @property
    def peaks(self) -> np.ndarray | None:
        """float32 [num_signals][num_shifts][n_kg] from the last step 3."""
        return None if self._peaks is None else self._peaks.copy()

    def device_info(self) -> dict[str, str]:
        return self._context.device_info()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def initialize(self) -> None:
        if self._cleaned_up:
            raise SequencingError("pipeline was cleaned up", step="initialize")
        if self._state >= PipelineState.INITIALIZED:
            return

        program = compile_correlator(self._config)
        try:
            for alloc in program.buffers:
                buffer = self._context.allocate(alloc.name, alloc.size_bytes)
                self._buffers[alloc.name] = buffer
                if buffer.size_bytes != alloc.size_bytes:
                    raise ResourceAllocationError(
                        f"allocated {buffer.size_bytes} bytes, layout needs {alloc.size_bytes}",
                        operation=f"allocate:{alloc.name}",
                    )
            self._plans = PlanFactory(self._context).build(program, self._buffers)
        except CorrelatorError as exc:
            if exc.step is None:
                exc.step = "initialize"
            logger.error("initialize failed: %s", exc)
            self._release_buffers()
            raise

        self._program = program
        self._state = PipelineState.INITIALIZED
        logger.info(
            "correlator initialized on %s: N=%d shifts=%d signals=%d n_kg=%d (%.1f MiB)",
            self._context.backend.name, self._layout.fft_size, self._layout.num_shifts,
            self._layout.num_signals, self._layout.n_kg, self._layout.total_bytes / 2**20,
        )

    def reset(self) -> None:
        """Return to INITIALIZED so a new run can reuse the buffers and plans."""
        self._require("reset", PipelineState.INITIALIZED)
        self._state = PipelineState.INITIALIZED
        self._peaks = None
        self.timings.clear()

    def cleanup(self) -> None:
        """Destroy plans, then buffers, then (if owned) the context. Idempotent."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        if self._context.closed:
            # Context teardown already released everything it allocated
            self._plans = None
            self._buffers.clear()
            return
        try:
            if self._state >= PipelineState.INITIALIZED:
                self._context.backend.synchronize()
        finally:
            if self._plans is not None:
                PlanFactory(self._context).destroy(self._plans)
                self._plans = None
            self._release_buffers()
            self._last_event = None
            if self._owns_context:
                self._context.close()
            logger.info("correlator cleaned up")

    def __enter__(self) -> CorrelationPipeline:
        self.initialize()
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    def run_step1(self, reference) -> None:
        """Upload the reference and build the conjugated shift-bank spectrum."""
        if self._done("step1", PipelineState.STEP1_DONE):
            return
        self._require("step1", PipelineState.INITIALIZED)
        samples = self._as_samples(reference, (self._layout.fft_size,), "reference")
        backend = self._context.backend
        buf = self._buffers

        with self._step_scope("step1"):
            upload = backend.write_async(
                buf["reference_signal"], samples, 0, wait_for=self._gate(), label="upload_reference",
            )
            fft = backend.enqueue_transform(
                self._plans.reference, buf["reference_signal"], buf["reference_spectrum"],
                wait_for=[upload], label="fft_reference",
            )
            self._finish_step("step1", [upload, fft])
        self._state = PipelineState.STEP1_DONE

    def run_step2(self, inputs) -> None:
        """Upload the input batch and transform it."""
        if self._done("step2", PipelineState.STEP2_DONE):
            return
        self._require("step2", PipelineState.STEP1_DONE)
        lo = self._layout
        samples = self._as_samples(inputs, (lo.num_signals, lo.fft_size), "inputs")
        backend = self._context.backend
        buf = self._buffers

        with self._step_scope("step2"):
            upload = backend.write_async(
                buf["input_signals"], samples, 0, wait_for=self._gate(), label="upload_inputs",
            )
            fft = backend.enqueue_transform(
                self._plans.input, buf["input_signals"], buf["input_spectrum"],
                wait_for=[upload], label="fft_inputs",
            )
            self._finish_step("step2", [upload, fft])
        self._state = PipelineState.STEP2_DONE

    def run_step3(self) -> np.ndarray:
        """Correlate every (signal, shift) pair and read back the peaks."""
        if self._done("step3", PipelineState.STEP3_DONE):
            return self.peaks
        self._require("step3", PipelineState.STEP2_DONE)
        lo = self._layout
        backend = self._context.backend
        buf = self._buffers

        with self._step_scope("step3"):
            events: list[DeviceEvent] = []
            gate = self._gate()
            if self._config.peak_mode is PeakMode.RUNNING_MAX:
                clear = backend.fill_async(
                    buf["peak_userdata"], 0, lo.peak_payload_offset, lo.peak_payload_bytes,
                    wait_for=gate, label="clear_peaks",
                )
                events.append(clear)
                gate = [clear]
            copy_ref = backend.copy_async(
                buf["reference_spectrum"], buf["multiply_userdata"], lo.reference_spectrum_bytes,
                src_offset=0, dst_offset=lo.multiply_reference_offset,
                wait_for=gate, label="copy_reference_spectrum",
            )
            copy_inp = backend.copy_async(
                buf["input_spectrum"], buf["multiply_userdata"], lo.input_spectrum_bytes,
                src_offset=0, dst_offset=lo.multiply_input_offset,
                wait_for=[copy_ref], label="copy_input_spectrum",
            )
            ifft = backend.enqueue_transform(
                self._plans.correlation, buf["multiply_userdata"], buf["correlation_output"],
                wait_for=[copy_inp], label="ifft_correlation",
            )
            read, host = backend.read_async(
                buf["peak_userdata"], lo.peak_payload_offset, lo.peak_payload_bytes,
                wait_for=[ifft], label="read_peaks",
            )
            events += [copy_ref, copy_inp, ifft, read]
            self._finish_step("step3", events)

        self._peaks = np.array(host, copy=True).view(np.float32).reshape(lo.peaks_shape)
        self._state = PipelineState.STEP3_DONE
        return self.peaks

    def run(self, reference, inputs) -> np.ndarray:
        """initialize (once) + all three steps; returns the peaks."""
        self.initialize()
        if self._state > PipelineState.INITIALIZED:
            self.reset()
        self.run_step1(reference)
        self.run_step2(inputs)
        return self.run_step3()

    # -----------------------------------------------------------------------
    # Snapshots (for validation / export)
    # -----------------------------------------------------------------------

    def read_reference_spectrum(self) -> np.ndarray:
        """complex64 [num_shifts][N], already conjugated."""
        self._require("read_reference_spectrum", PipelineState.STEP1_DONE)
        lo = self._layout
        return self._snapshot("reference_spectrum", np.complex64, (lo.num_shifts, lo.fft_size))

    def read_input_spectrum(self) -> np.ndarray:
        """complex64 [num_signals][N]."""
        self._require("read_input_spectrum", PipelineState.STEP2_DONE)
        lo = self._layout
        return self._snapshot("input_spectrum", np.complex64, (lo.num_signals, lo.fft_size))

    def read_correlation_output(self) -> np.ndarray:
        """complex64 [num_signals * num_shifts][N], unnormalized correlation."""
        self._require("read_correlation_output", PipelineState.STEP3_DONE)
        lo = self._layout
        return self._snapshot("correlation_output", np.complex64, (lo.num_correlations, lo.fft_size))

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _done(self, step: str, target: PipelineState) -> bool:
        if not self._cleaned_up and self._state >= target:
            logger.debug("%s already done, skipping", step)
            return True
        return False

    def _require(self, step: str, needed: PipelineState) -> None:
        if self._cleaned_up:
            raise SequencingError("pipeline was cleaned up", step=step)
        if self._state < needed:
            raise SequencingError(
                f"requires state {needed.name}, pipeline is {self._state.name}", step=step,
            )

    def _gate(self) -> list[DeviceEvent]:
        return [self._last_event] if self._last_event is not None else []

    @contextmanager
    def _step_scope(self, step: str) -> Iterator[None]:
        try:
            yield
        except CorrelatorError as exc:
            if exc.step is None:
                exc.step = step
            logger.error("%s failed, state stays %s: %s", step, self._state.name, exc)
            raise

    def _finish_step(self, step: str, events: list[DeviceEvent]) -> None:
        self.timings.clear(step)
        for event in events:
            self.timings.collect(step, event.label, event)
        self._last_event = events[-1]
        logger.info("%s done: %.3f ms device time", step, self.timings.step_total_ms(step))

    def _snapshot(self, name: str, dtype, shape: tuple[int, ...]) -> np.ndarray:
        buffer = self._buffers[name]
        with self._step_scope(f"snapshot:{name}"):
            event, host = self._context.backend.read_async(
                buffer, 0, buffer.size_bytes, wait_for=self._gate(), label=f"read_{name}",
            )
            event.wait()
        return np.array(host, copy=True).view(dtype).reshape(shape)

    def _release_buffers(self) -> None:
        for buffer in self._buffers.values():
            self._context.release(buffer)
        self._buffers.clear()

    @staticmethod
    def _as_samples(data, shape: tuple[int, ...], what: str) -> np.ndarray:
        arr = np.asarray(data)
        if arr.shape != shape:
            raise ConfigError(f"{what} must have shape {shape}, got {arr.shape}")
        if not np.issubdtype(arr.dtype, np.integer):
            raise ConfigError(f"{what} must hold integer samples, got {arr.dtype}")
        if not np.can_cast(arr.dtype, np.int32):
            # Wider dtypes are accepted only when every value fits in int32
            limits = np.iinfo(np.int32)
            lo, hi = int(arr.min()), int(arr.max())
            if lo < limits.min or hi > limits.max:
                raise ConfigError(
                    f"{what} samples span [{lo}, {hi}], outside the int32 range "
                    f"[{limits.min}, {limits.max}]"
                )
        return np.ascontiguousarray(arr, dtype=np.int32)
