"""Correlator runtime: backends, device context, plans and the pipeline."""

from xcorr_runtime.context import DeviceContext, create_backend, open_context
from xcorr_runtime.errors import (
    CorrelatorError,
    DeviceRuntimeError,
    ResourceAllocationError,
    SequencingError,
)
from xcorr_runtime.pipeline import CorrelationPipeline, PipelineState
from xcorr_runtime.profiler import EventTimingCollector, OperationTiming

__all__ = [
    "CorrelationPipeline",
    "CorrelatorError",
    "DeviceContext",
    "DeviceRuntimeError",
    "EventTimingCollector",
    "OperationTiming",
    "PipelineState",
    "ResourceAllocationError",
    "SequencingError",
    "create_backend",
    "open_context",
]
