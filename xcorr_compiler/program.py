"""Correlation program data model: buffers, plans and userdata headers.

A CorrelationProgram is everything the runtime needs to set up a
correlator on a device: which buffers to allocate, which three batched
transform plans to bake (with their callback fragments and userdata
bindings), and the header bytes to write into each userdata buffer.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from xcorr_compiler.callbacks import CallbackSource
from xcorr_compiler.config import CorrelatorConfig
from xcorr_compiler.layout import CorrelationLayout

FORWARD = "forward"
INVERSE = "inverse"


@dataclass
class BufferAllocation:
    """Device buffer to allocate once at initialization."""

    name: str
    size_bytes: int
    dtype: str = "uint8"
    shape: list[int] = field(default_factory=list)


@dataclass
class PlanSpec:
    """A batched 1-D C2C transform with optional load/store callbacks."""

    name: str
    fft_size: int
    batch: int
    direction: str  # FORWARD or INVERSE
    input_buffer: str
    output_buffer: str
    load_callback: CallbackSource | None = None
    store_callback: CallbackSource | None = None
    load_userdata: str | None = None
    store_userdata: str | None = None

    @property
    def num_elements(self) -> int:
        return self.fft_size * self.batch


@dataclass
class CorrelationProgram:
    """Compiled correlator (analogous to a compiled kernel program)."""

    config: CorrelatorConfig
    layout: CorrelationLayout
    buffers: list[BufferAllocation]
    plans: dict[str, PlanSpec]
    userdata_headers: dict[str, bytes] = field(default_factory=dict)

    def buffer(self, name: str) -> BufferAllocation:
        for alloc in self.buffers:
            if alloc.name == name:
                return alloc
        raise KeyError(name)

    @property
    def callback_sources(self) -> list[CallbackSource]:
        sources: list[CallbackSource] = []
        for spec in self.plans.values():
            for cb in (spec.load_callback, spec.store_callback):
                if cb is not None:
                    sources.append(cb)
        return sources
