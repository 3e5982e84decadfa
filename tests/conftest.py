"""Shared fixtures and helpers for correlator tests."""

import numpy as np
import pytest

from xcorr_compiler import CorrelatorConfig
from xcorr_runtime.context import DeviceContext
from xcorr_runtime.host_backend import HostBackend
from xcorr_runtime.pipeline import CorrelationPipeline


@pytest.fixture
def host_context():
    """Host (numpy) device context, closed after the test."""
    ctx = DeviceContext(HostBackend())
    yield ctx
    ctx.close()


@pytest.fixture
def small_config():
    return CorrelatorConfig(
        fft_size=256, num_shifts=4, num_signals=3, n_kg=3, scale_factor=1.0 / 256,
    )


@pytest.fixture
def small_pipeline(host_context, small_config):
    """Initialized host pipeline for small_config."""
    pipeline = CorrelationPipeline(host_context, small_config)
    pipeline.initialize()
    yield pipeline
    pipeline.cleanup()


def numpy_correlation(config: CorrelatorConfig, reference, inputs, window=None) -> np.ndarray:
    """float64 oracle: complex correlation [signal][shift][lag], backward-normalized inverse."""
    ref = np.asarray(reference, dtype=np.float64) * config.scale_factor
    sig = np.asarray(inputs, dtype=np.float64) * config.scale_factor
    bank = np.stack([np.roll(ref, -s) for s in range(config.num_shifts)])
    if window is not None:
        bank = bank * window[None, :]
    ref_spec = np.conj(np.fft.fft(bank, axis=-1))
    sig_spec = np.fft.fft(sig, axis=-1)
    return np.fft.ifft(ref_spec[None, :, :] * sig_spec[:, None, :], axis=-1)


def write_header(buf: np.ndarray, header: bytes) -> None:
    buf[:len(header)] = np.frombuffer(header, dtype=np.uint8)
