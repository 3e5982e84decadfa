"""cuFFT callback fragments fused into the correlator's transform plans.

Each fragment is CUDA C source for one load (pre-transform) or store
(post-transform) callback, plus a vectorized numpy model of the same
per-element function. The CUDA text is compiled into a plan at bake time
(cupy.fft.config.set_cufft_callbacks); the numpy model is what the host
backend runs in its place.

Fragments never compute offsets themselves. Header structs come from the
layout module's HeaderSpecs and payload offsets are emitted as #defines
from a CorrelationLayout, so the host header writer and device reader
share one source of truth.

cuFFT callback ABI (single precision):
    load:  cufftComplex f(void *dataIn, size_t offset, void *callerInfo, void *sharedPtr)
    store: void f(void *dataOut, size_t offset, cufftComplex element,
                  void *callerInfo, void *sharedPtr)
`offset` is the flat element index e over the whole batch; `callerInfo`
is the plan's userdata buffer.

Batch ordering of the correlation plan: window = signal * num_shifts + shift.
Conjugation happens once, in conjugate_store on the reference plan; the
multiply fragment forms the plain product. The inverse transform is
unnormalized; peak_store applies the 1/N backward scale to every element
it stores, so correlation_output and the peaks match ifft(..., norm="backward").
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np

from xcorr_compiler.layout import (
    COMPLEX_BYTES,
    INPUT_HEADER,
    MULTIPLY_HEADER,
    PEAK_HEADER,
    PEAK_MODE_CODES,
    REFERENCE_HEADER,
    CorrelationLayout,
    HeaderSpec,
)

FRAGMENT_VERSION = 1

LOAD = "load"
STORE = "store"

_LOAD_EXPORT = "__device__ cufftCallbackLoadC d_loadCallbackPtr = {symbol};"
_STORE_EXPORT = "__device__ cufftCallbackStoreC d_storeCallbackPtr = {symbol};"


@dataclass
class CallbackSource:
    """One rendered callback fragment."""

    name: str
    stage: str  # LOAD or STORE
    symbol: str
    source: str
    constants: dict[str, int] = field(default_factory=dict)
    header: HeaderSpec | None = None
    version: int = FRAGMENT_VERSION


# ---------------------------------------------------------------------------
# CUDA bodies
# ---------------------------------------------------------------------------

REFERENCE_LOAD_BODY = r"""
__device__ cufftComplex xc_reference_load(void *dataIn, size_t offset, void *callerInfo, void *sharedPtr)
{
    const ReferenceParams *params = (const ReferenceParams *)callerInfo;
    const int *samples = (const int *)dataIn;
    size_t n = params->fft_size;
    size_t shift = offset / n;
    size_t pos = offset - shift * n;
    // Cyclic shift by index remapping: row `shift` is the reference advanced by `shift` samples
    float real = (float)samples[(pos + shift) % n] * params->scale_factor;
    if (params->apply_window) {
        real *= 0.54f - 0.46f * cospif(2.0f * (float)pos / (float)(n - 1));
    }
    return make_cuComplex(real, 0.0f);
}
"""

CONJUGATE_STORE_BODY = r"""
__device__ void xc_conjugate_store(void *dataOut, size_t offset, cufftComplex element, void *callerInfo, void *sharedPtr)
{
    ((cufftComplex *)dataOut)[offset] = make_cuComplex(element.x, -element.y);
}
"""

INPUT_LOAD_BODY = r"""
__device__ cufftComplex xc_input_load(void *dataIn, size_t offset, void *callerInfo, void *sharedPtr)
{
    const InputParams *params = (const InputParams *)callerInfo;
    const int *samples = (const int *)dataIn;
    return make_cuComplex((float)samples[offset] * params->scale_factor, 0.0f);
}
"""

MULTIPLY_LOAD_BODY = r"""
__device__ cufftComplex xc_multiply_load(void *dataIn, size_t offset, void *callerInfo, void *sharedPtr)
{
    const MultiplyParams *params = (const MultiplyParams *)callerInfo;
    const char *base = (const char *)callerInfo;
    const cufftComplex *reference = (const cufftComplex *)(base + XC_MULTIPLY_REFERENCE_OFFSET);
    const cufftComplex *input = (const cufftComplex *)(base + XC_MULTIPLY_INPUT_OFFSET);
    size_t n = params->fft_size;
    size_t window = offset / n;
    size_t freq = offset - window * n;
    size_t signal = window / params->num_shifts;
    size_t shift = window - signal * params->num_shifts;
    // Reference spectrum is already conjugated
    cufftComplex a = reference[shift * n + freq];
    cufftComplex b = input[signal * n + freq];
    return make_cuComplex(a.x * b.x - a.y * b.y, a.x * b.y + a.y * b.x);
}
"""

PEAK_STORE_BODY = r"""
__device__ void xc_peak_store(void *dataOut, size_t offset, cufftComplex element, void *callerInfo, void *sharedPtr)
{
    const PeakParams *params = (const PeakParams *)callerInfo;
    float *peaks = (float *)((char *)callerInfo + XC_PEAK_PAYLOAD_OFFSET);
    size_t n = params->fft_size;
    // cuFFT inverse is unnormalized; apply the 1/N backward scale here
    float inv_n = 1.0f / (float)n;
    element.x *= inv_n;
    element.y *= inv_n;
    ((cufftComplex *)dataOut)[offset] = element;
    size_t window = offset / n;
    size_t pos = offset - window * n;
    if (pos >= params->search_range) return;
    size_t signal = window / params->num_shifts;
    size_t shift = window - signal * params->num_shifts;
    size_t slot = (signal * params->num_shifts + shift) * params->n_kg;
    float magnitude = sqrtf(element.x * element.x + element.y * element.y);
    if (params->peak_mode == XC_PEAK_MODE_RUNNING_MAX) {
        // Non-negative floats order the same as their int bit patterns; payload is zeroed before launch
        atomicMax((int *)&peaks[slot], __float_as_int(magnitude));
    } else {
        peaks[slot + pos] = magnitude;
    }
}
"""


def _render(
    name: str,
    stage: str,
    symbol: str,
    body: str,
    header: HeaderSpec | None,
    constants: dict[str, int],
) -> CallbackSource:
    lines = [f"// xcorr fragment {name} v{FRAGMENT_VERSION}"]
    for key, value in constants.items():
        lines.append(f"#define {key} {value}ULL")
    if header is not None:
        lines.append(header.c_struct())
    lines.append(body.strip("\n"))
    export = _LOAD_EXPORT if stage == LOAD else _STORE_EXPORT
    lines.append(export.format(symbol=symbol))
    return CallbackSource(
        name=name,
        stage=stage,
        symbol=symbol,
        source="\n".join(lines) + "\n",
        constants=dict(constants),
        header=header,
    )


def render_reference_load() -> CallbackSource:
    return _render("reference_load", LOAD, "xc_reference_load",
                   REFERENCE_LOAD_BODY, REFERENCE_HEADER, {})


def render_conjugate_store() -> CallbackSource:
    return _render("conjugate_store", STORE, "xc_conjugate_store",
                   CONJUGATE_STORE_BODY, None, {})


def render_input_load() -> CallbackSource:
    return _render("input_load", LOAD, "xc_input_load", INPUT_LOAD_BODY, INPUT_HEADER, {})


def render_multiply_load(layout: CorrelationLayout) -> CallbackSource:
    """Complex multiply reading both spectra from the fused userdata buffer."""
    return _render("multiply_load", LOAD, "xc_multiply_load", MULTIPLY_LOAD_BODY,
                   MULTIPLY_HEADER, {
                       "XC_MULTIPLY_REFERENCE_OFFSET": layout.multiply_reference_offset,
                       "XC_MULTIPLY_INPUT_OFFSET": layout.multiply_input_offset,
                   })


def render_peak_store(layout: CorrelationLayout) -> CallbackSource:
    return _render("peak_store", STORE, "xc_peak_store", PEAK_STORE_BODY, PEAK_HEADER, {
        "XC_PEAK_PAYLOAD_OFFSET": layout.peak_payload_offset,
        "XC_PEAK_MODE_RUNNING_MAX": PEAK_MODE_CODES["running_max"],
    })


# ---------------------------------------------------------------------------
# Host models
# ---------------------------------------------------------------------------
# Same per-element functions over a vector of flat indices. Buffers are raw
# uint8 views; parameters come from HeaderSpec.unpack and the fragment's
# constants, never from the Python-side config.

LoadModel = Callable[[np.ndarray, np.ndarray, np.ndarray, dict], np.ndarray]
StoreModel = Callable[[np.ndarray, np.ndarray, np.ndarray, np.ndarray, dict], None]


def hamming(pos: np.ndarray, n: int) -> np.ndarray:
    """0.54 - 0.46 cos(2 pi pos / (n - 1)) in float32."""
    pos = np.asarray(pos, dtype=np.float64)
    return (0.54 - 0.46 * np.cos(2.0 * np.pi * pos / (n - 1))).astype(np.float32)


def _reference_load_model(data_in, offsets, userdata, constants):
    params = REFERENCE_HEADER.unpack(userdata)
    n = params["fft_size"]
    samples = data_in.view(np.int32)
    shift, pos = np.divmod(offsets, n)
    real = samples[(pos + shift) % n].astype(np.float32) * np.float32(params["scale_factor"])
    if params["apply_window"]:
        real *= hamming(pos, n)
    return real.astype(np.complex64)


def _conjugate_store_model(data_out, offsets, elements, userdata, constants):
    data_out.view(np.complex64)[offsets] = np.conj(elements)


def _input_load_model(data_in, offsets, userdata, constants):
    params = INPUT_HEADER.unpack(userdata)
    samples = data_in.view(np.int32)
    real = samples[offsets].astype(np.float32) * np.float32(params["scale_factor"])
    return real.astype(np.complex64)


def _multiply_load_model(data_in, offsets, userdata, constants):
    params = MULTIPLY_HEADER.unpack(userdata)
    n = params["fft_size"]
    num_shifts = params["num_shifts"]
    ref_start = constants["XC_MULTIPLY_REFERENCE_OFFSET"]
    input_start = constants["XC_MULTIPLY_INPUT_OFFSET"]
    reference = userdata[ref_start:ref_start + num_shifts * n * COMPLEX_BYTES].view(np.complex64)
    inputs = userdata[input_start:input_start + params["num_signals"] * n * COMPLEX_BYTES].view(np.complex64)

    window, freq = np.divmod(offsets, n)
    signal, shift = np.divmod(window, num_shifts)
    return (reference[shift * n + freq] * inputs[signal * n + freq]).astype(np.complex64)


def _peak_store_model(data_out, offsets, elements, userdata, constants):
    params = PEAK_HEADER.unpack(userdata)
    n = params["fft_size"]
    elements = (elements * np.float32(1.0 / n)).astype(np.complex64)
    data_out.view(np.complex64)[offsets] = elements
    num_shifts = params["num_shifts"]
    n_kg = params["n_kg"]
    start = constants["XC_PEAK_PAYLOAD_OFFSET"]
    peaks = userdata[start:].view(np.float32)

    window, pos = np.divmod(offsets, n)
    hit = pos < params["search_range"]
    window, pos = window[hit], pos[hit]
    magnitude = np.abs(elements[hit]).astype(np.float32)
    signal, shift = np.divmod(window, num_shifts)
    slot = (signal * num_shifts + shift) * n_kg
    if params["peak_mode"] == constants["XC_PEAK_MODE_RUNNING_MAX"]:
        np.maximum.at(peaks, slot, magnitude)
    else:
        peaks[slot + pos] = magnitude


HOST_MODELS: dict[str, LoadModel | StoreModel] = {
    "reference_load": _reference_load_model,
    "conjugate_store": _conjugate_store_model,
    "input_load": _input_load_model,
    "multiply_load": _multiply_load_model,
    "peak_store": _peak_store_model,
}


def get_host_model(name: str):
    """Look up the numpy model of a fragment by name."""
    try:
        return HOST_MODELS[name]
    except KeyError:
        raise KeyError(f"No host model for callback fragment '{name}'") from None
