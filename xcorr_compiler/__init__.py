"""Correlator compiler: turns a CorrelatorConfig into a CorrelationProgram.

Entry point: compile_correlator(config) -> CorrelationProgram

Everything here is pure host-side arithmetic and source generation; no
device is touched. The runtime (xcorr_runtime) allocates the program's
buffers, writes its userdata headers and bakes its plans.
"""

from __future__ import annotations

from xcorr_compiler.callbacks import (
    render_conjugate_store,
    render_input_load,
    render_multiply_load,
    render_peak_store,
    render_reference_load,
)
from xcorr_compiler.config import DEFAULT_CONFIG, ConfigError, CorrelatorConfig, PeakMode
from xcorr_compiler.layout import (
    INPUT_HEADER,
    MULTIPLY_HEADER,
    PEAK_HEADER,
    PEAK_MODE_CODES,
    REFERENCE_HEADER,
    CorrelationLayout,
    LayoutError,
    layout_for_config,
)
from xcorr_compiler.program import FORWARD, INVERSE, BufferAllocation, CorrelationProgram, PlanSpec

__all__ = [
    "DEFAULT_CONFIG",
    "ConfigError",
    "CorrelationProgram",
    "CorrelatorConfig",
    "LayoutError",
    "PeakMode",
    "compile_correlator",
]

# name -> (dtype, shape builder)
_BUFFER_SHAPES = {
    "reference_signal": ("int32", lambda lo: [lo.fft_size]),
    "input_signals": ("int32", lambda lo: [lo.num_signals, lo.fft_size]),
    "reference_spectrum": ("complex64", lambda lo: [lo.num_shifts, lo.fft_size]),
    "input_spectrum": ("complex64", lambda lo: [lo.num_signals, lo.fft_size]),
    "correlation_output": ("complex64", lambda lo: [lo.num_correlations, lo.fft_size]),
}


def plan_buffers(layout: CorrelationLayout) -> list[BufferAllocation]:
    """One allocation per layout buffer; userdata buffers are raw bytes."""
    allocations: list[BufferAllocation] = []
    for name, size_bytes in layout.buffer_sizes().items():
        dtype, shape_fn = _BUFFER_SHAPES.get(name, ("uint8", lambda lo, n=size_bytes: [n]))
        allocations.append(BufferAllocation(
            name=name,
            size_bytes=size_bytes,
            dtype=dtype,
            shape=shape_fn(layout),
        ))
    return allocations


def build_userdata_headers(config: CorrelatorConfig, layout: CorrelationLayout) -> dict[str, bytes]:
    """Header bytes for each userdata buffer, written once at initialization."""
    return {
        "reference_userdata": REFERENCE_HEADER.pack(
            scale_factor=config.scale_factor,
            fft_size=layout.fft_size,
            num_shifts=layout.num_shifts,
            apply_window=int(config.apply_window),
        ),
        "input_userdata": INPUT_HEADER.pack(
            scale_factor=config.scale_factor,
            fft_size=layout.fft_size,
            num_signals=layout.num_signals,
        ),
        "multiply_userdata": MULTIPLY_HEADER.pack(
            fft_size=layout.fft_size,
            num_shifts=layout.num_shifts,
            num_signals=layout.num_signals,
        ),
        "peak_userdata": PEAK_HEADER.pack(
            fft_size=layout.fft_size,
            num_shifts=layout.num_shifts,
            num_signals=layout.num_signals,
            n_kg=layout.n_kg,
            search_range=config.effective_search_range,
            peak_mode=PEAK_MODE_CODES[config.peak_mode.value],
        ),
    }


def compile_correlator(config: CorrelatorConfig = DEFAULT_CONFIG) -> CorrelationProgram:
    """Compile a correlator configuration.

    Pipeline:
    1. Plan buffer sizes and userdata offsets
    2. Render callback fragments against the layout
    3. Describe the reference / input / correlation plans
    4. Pack userdata headers
    """
    # 1. Layout
    layout = layout_for_config(config)

    # 2-3. Plans with their fragments
    n = layout.fft_size
    plans = {
        "reference": PlanSpec(
            name="reference",
            fft_size=n,
            batch=layout.num_shifts,
            direction=FORWARD,
            input_buffer="reference_signal",
            output_buffer="reference_spectrum",
            load_callback=render_reference_load(),
            store_callback=render_conjugate_store(),
            load_userdata="reference_userdata",
        ),
        "input": PlanSpec(
            name="input",
            fft_size=n,
            batch=layout.num_signals,
            direction=FORWARD,
            input_buffer="input_signals",
            output_buffer="input_spectrum",
            load_callback=render_input_load(),
            load_userdata="input_userdata",
        ),
        "correlation": PlanSpec(
            name="correlation",
            fft_size=n,
            batch=layout.num_correlations,
            direction=INVERSE,
            # dataIn is unused by multiply_load, which reads the fused userdata
            input_buffer="multiply_userdata",
            output_buffer="correlation_output",
            load_callback=render_multiply_load(layout),
            store_callback=render_peak_store(layout),
            load_userdata="multiply_userdata",
            store_userdata="peak_userdata",
        ),
    }

    # 4. Buffers and headers
    return CorrelationProgram(
        config=config,
        layout=layout,
        buffers=plan_buffers(layout),
        plans=plans,
        userdata_headers=build_userdata_headers(config, layout),
    )
