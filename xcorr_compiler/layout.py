"""Buffer and userdata layout planner.

Every byte size and offset the correlator uses is computed here, once,
from (N, num_shifts, num_signals, n_kg) and the element sizes. Three
consumers read the result:

    - host header writer (HeaderSpec.pack, called by the plan factory)
    - device callback reader (HeaderSpec.c_struct + offset #defines in
      callbacks.py)
    - host callback models (HeaderSpec.unpack in callbacks.py)

Userdata buffers are a little-endian packed header followed by payload
regions aligned to USERDATA_ALIGNMENT bytes. A HeaderSpec is the only
description of a header; the C struct text is rendered from it, so host
and device cannot disagree on field order or width.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from xcorr_compiler.config import ConfigError, is_power_of_two

SAMPLE_BYTES = 4  # int32 raw sample
COMPLEX_BYTES = 8  # complex64 / cufftComplex
PEAK_BYTES = 4  # float32 magnitude

USERDATA_ALIGNMENT = 16

# cufftPlanMany takes C int sizes
MAX_TRANSFORM_ELEMENTS = 2**31 - 1
_U32_MAX = 2**32 - 1


class LayoutError(ConfigError):
    """Configuration that cannot be laid out in device memory."""


def align_up(value: int, alignment: int = USERDATA_ALIGNMENT) -> int:
    return ((value + alignment - 1) // alignment) * alignment


# ---------------------------------------------------------------------------
# Userdata headers
# ---------------------------------------------------------------------------

_C_TYPES = {"I": "unsigned int", "f": "float"}


@dataclass(frozen=True)
class HeaderSpec:
    """Packed little-endian header at offset 0 of a userdata buffer."""

    struct_name: str
    fields: tuple[tuple[str, str], ...]  # (field name, struct code)

    @property
    def format(self) -> str:
        return "<" + "".join(code for _, code in self.fields)

    @property
    def size_bytes(self) -> int:
        return struct.calcsize(self.format)

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.fields)

    def field_offset(self, name: str) -> int:
        offset = 0
        for field_name, code in self.fields:
            if field_name == name:
                return offset
            offset += struct.calcsize("<" + code)
        raise KeyError(name)

    def pack(self, **values) -> bytes:
        """Serialize header values; fields not given are written as zero."""
        extra = set(values) - set(self.field_names)
        if extra:
            raise KeyError(f"{self.struct_name} has no fields {sorted(extra)}")
        ordered = []
        for name, code in self.fields:
            value = values.get(name, 0)
            if code == "I":
                value = int(value)
                if not 0 <= value <= _U32_MAX:
                    raise LayoutError(f"{self.struct_name}.{name}={value} does not fit in u32")
            else:
                value = float(value)
            ordered.append(value)
        return struct.pack(self.format, *ordered)

    def unpack(self, data) -> dict:
        raw = bytes(data[: self.size_bytes])
        return dict(zip(self.field_names, struct.unpack(self.format, raw)))

    def c_struct(self) -> str:
        """C typedef matching pack() byte for byte (all fields are 4-byte)."""
        lines = ["typedef struct {"]
        for name, code in self.fields:
            lines.append(f"    {_C_TYPES[code]} {name};")
        lines.append(f"}} {self.struct_name};")
        return "\n".join(lines)


REFERENCE_HEADER = HeaderSpec("ReferenceParams", (
    ("scale_factor", "f"),
    ("fft_size", "I"),
    ("num_shifts", "I"),
    ("apply_window", "I"),
))

INPUT_HEADER = HeaderSpec("InputParams", (
    ("scale_factor", "f"),
    ("fft_size", "I"),
    ("num_signals", "I"),
    ("reserved", "I"),
))

MULTIPLY_HEADER = HeaderSpec("MultiplyParams", (
    ("fft_size", "I"),
    ("num_shifts", "I"),
    ("num_signals", "I"),
    ("reserved", "I"),
))

PEAK_HEADER = HeaderSpec("PeakParams", (
    ("fft_size", "I"),
    ("num_shifts", "I"),
    ("num_signals", "I"),
    ("n_kg", "I"),
    ("search_range", "I"),
    ("peak_mode", "I"),
    ("reserved0", "I"),
    ("reserved1", "I"),
))

# Integer code written into PeakParams.peak_mode
PEAK_MODE_CODES = {"first_points": 0, "running_max": 1}


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CorrelationLayout:
    """Byte sizes and offsets for one (N, num_shifts, num_signals, n_kg)."""

    fft_size: int
    num_shifts: int
    num_signals: int
    n_kg: int
    sample_bytes: int
    complex_bytes: int
    peak_bytes: int

    # Device buffers
    reference_signal_bytes: int
    input_signals_bytes: int
    reference_spectrum_bytes: int
    input_spectrum_bytes: int
    correlation_output_bytes: int
    reference_userdata_bytes: int
    input_userdata_bytes: int
    multiply_userdata_bytes: int
    peak_userdata_bytes: int

    # Sub-regions of the fused userdata buffers
    multiply_reference_offset: int
    multiply_input_offset: int
    peak_payload_offset: int
    peak_payload_bytes: int

    @property
    def num_correlations(self) -> int:
        return self.num_signals * self.num_shifts

    @property
    def peaks_shape(self) -> tuple[int, int, int]:
        return (self.num_signals, self.num_shifts, self.n_kg)

    def peak_slot(self, signal: int, shift: int) -> int:
        """Element index of peaks[signal][shift][0] in the peak payload."""
        return (signal * self.num_shifts + shift) * self.n_kg

    def buffer_sizes(self) -> dict[str, int]:
        """Device buffer name -> bytes. Allocations must match exactly."""
        return {
            "reference_signal": self.reference_signal_bytes,
            "input_signals": self.input_signals_bytes,
            "reference_spectrum": self.reference_spectrum_bytes,
            "input_spectrum": self.input_spectrum_bytes,
            "correlation_output": self.correlation_output_bytes,
            "reference_userdata": self.reference_userdata_bytes,
            "input_userdata": self.input_userdata_bytes,
            "multiply_userdata": self.multiply_userdata_bytes,
            "peak_userdata": self.peak_userdata_bytes,
        }

    @property
    def total_bytes(self) -> int:
        return sum(self.buffer_sizes().values())


def _check_positive(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise LayoutError(f"{name} must be an integer, got {value!r}")
    if value < 1:
        raise LayoutError(f"{name} must be positive, got {value}")


def plan_layout(
    fft_size: int,
    num_shifts: int,
    num_signals: int,
    n_kg: int,
    sample_bytes: int = SAMPLE_BYTES,
    complex_bytes: int = COMPLEX_BYTES,
    peak_bytes: int = PEAK_BYTES,
) -> CorrelationLayout:
    """Compute every buffer size and userdata offset.

    Raises:
        LayoutError: non-positive sizes, N not a power of two, n_kg > N,
            or a transform/header value that overflows its device type.
    """
    for name, value in (
        ("fft_size", fft_size), ("num_shifts", num_shifts),
        ("num_signals", num_signals), ("n_kg", n_kg),
        ("sample_bytes", sample_bytes), ("complex_bytes", complex_bytes),
        ("peak_bytes", peak_bytes),
    ):
        _check_positive(name, value)
    if not is_power_of_two(fft_size):
        raise LayoutError(f"fft_size must be a power of two, got {fft_size}")
    if n_kg > fft_size:
        raise LayoutError(f"n_kg ({n_kg}) exceeds fft_size ({fft_size})")
    for name, value in (("fft_size", fft_size), ("num_shifts", num_shifts),
                        ("num_signals", num_signals)):
        if value > _U32_MAX:
            raise LayoutError(f"{name}={value} does not fit the u32 header field")

    # Largest transform is the correlation plan: num_signals * num_shifts windows
    num_correlations = num_signals * num_shifts
    for label, batch in (("reference", num_shifts), ("input", num_signals),
                         ("correlation", num_correlations)):
        if batch * fft_size > MAX_TRANSFORM_ELEMENTS:
            raise LayoutError(
                f"{label} transform has {batch} x {fft_size} elements, "
                f"limit is {MAX_TRANSFORM_ELEMENTS}"
            )

    reference_spectrum_bytes = num_shifts * fft_size * complex_bytes
    input_spectrum_bytes = num_signals * fft_size * complex_bytes

    multiply_reference_offset = align_up(MULTIPLY_HEADER.size_bytes)
    multiply_input_offset = align_up(multiply_reference_offset + reference_spectrum_bytes)
    multiply_userdata_bytes = multiply_input_offset + input_spectrum_bytes

    peak_payload_offset = align_up(PEAK_HEADER.size_bytes)
    peak_payload_bytes = num_correlations * n_kg * peak_bytes

    return CorrelationLayout(
        fft_size=fft_size,
        num_shifts=num_shifts,
        num_signals=num_signals,
        n_kg=n_kg,
        sample_bytes=sample_bytes,
        complex_bytes=complex_bytes,
        peak_bytes=peak_bytes,
        reference_signal_bytes=fft_size * sample_bytes,
        input_signals_bytes=num_signals * fft_size * sample_bytes,
        reference_spectrum_bytes=reference_spectrum_bytes,
        input_spectrum_bytes=input_spectrum_bytes,
        correlation_output_bytes=num_correlations * fft_size * complex_bytes,
        reference_userdata_bytes=REFERENCE_HEADER.size_bytes,
        input_userdata_bytes=INPUT_HEADER.size_bytes,
        multiply_userdata_bytes=multiply_userdata_bytes,
        peak_userdata_bytes=peak_payload_offset + peak_payload_bytes,
        multiply_reference_offset=multiply_reference_offset,
        multiply_input_offset=multiply_input_offset,
        peak_payload_offset=peak_payload_offset,
        peak_payload_bytes=peak_payload_bytes,
    )


def layout_for_config(config) -> CorrelationLayout:
    """plan_layout() for a CorrelatorConfig."""
    return plan_layout(config.fft_size, config.num_shifts, config.num_signals, config.n_kg)
