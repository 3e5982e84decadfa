"""CUDA backend tests. Skipped when CuPy or a CUDA device is unavailable.

The host backend is the reference: every buffer the CUDA pipeline
produces must agree with the numpy execution of the same program.
"""

import numpy as np
import numpy.testing as npt
import pytest

from xcorr_compiler import CorrelatorConfig, PeakMode
from xcorr_runtime.context import open_context
from xcorr_runtime.cuda_backend import HAS_CUPY, cp
from xcorr_runtime.errors import DeviceRuntimeError
from xcorr_runtime.pipeline import CorrelationPipeline, PipelineState
from xcorr_runtime.signals import m_sequence, shifted_batch
from tests.conftest import numpy_correlation


def _has_device() -> bool:
    if not HAS_CUPY:
        return False
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except cp.cuda.runtime.CUDARuntimeError:
        return False


pytestmark = pytest.mark.skipif(not _has_device(), reason="CuPy/CUDA not available")


@pytest.fixture
def cuda_context():
    ctx = open_context("cuda")
    yield ctx
    ctx.close()


def _run_both(config, reference, inputs):
    results = {}
    for kind in ("host", "cuda"):
        with CorrelationPipeline(open_context(kind), config, owns_context=True) as pipeline:
            peaks = pipeline.run(reference, inputs)
            results[kind] = (
                peaks,
                pipeline.read_reference_spectrum(),
                pipeline.read_input_spectrum(),
                pipeline.read_correlation_output(),
            )
    return results


# ---------------------------------------------------------------------------
# 1. Primitives
# ---------------------------------------------------------------------------

class TestPrimitives:
    def test_device_info(self, cuda_context):
        info = cuda_context.device_info()
        assert info["backend"] == "cuda"
        assert info["fft_library"].startswith("cuFFT")

    def test_write_read_round_trip(self, cuda_context):
        backend = cuda_context.backend
        buf = cuda_context.allocate("buf", 64)
        data = np.arange(16, dtype=np.int32)
        write = backend.write_async(buf, data, 0)
        event, host = backend.read_async(buf, 0, 64, wait_for=[write])
        event.wait()
        npt.assert_array_equal(host.view(np.int32), data)

    def test_copy_and_fill(self, cuda_context):
        backend = cuda_context.backend
        src = cuda_context.allocate("src", 16)
        dst = cuda_context.allocate("dst", 32)
        backend.write(src, bytes(range(16)))
        backend.write(dst, bytes([9] * 32))
        fill = backend.fill_async(dst, 0, 0, 8)
        copy = backend.copy_async(src, dst, 8, src_offset=4, dst_offset=16, wait_for=[fill])
        event, host = backend.read_async(dst, 0, 32, wait_for=[copy])
        event.wait()
        assert host[:8].tolist() == [0] * 8
        assert host[8:16].tolist() == [9] * 8
        assert host[16:24].tolist() == list(range(4, 12))

    def test_event_timestamps_ordered(self, cuda_context):
        backend = cuda_context.backend
        buf = cuda_context.allocate("buf", 1 << 20)
        event = backend.fill_async(buf, 1, 0, 1 << 20, label="fill")
        event.wait()
        ts = event.timestamps()
        assert event.done
        assert ts.started <= ts.ended
        assert ts.queued <= ts.submitted

    def test_closed_backend(self):
        ctx = open_context("cuda")
        backend = ctx.backend
        buf = ctx.allocate("buf", 8)
        backend.close()
        with pytest.raises(DeviceRuntimeError, match="closed"):
            backend.fill_async(buf, 0, 0, 8)
        ctx.close()


# ---------------------------------------------------------------------------
# 2. Pipeline agreement with the host backend
# ---------------------------------------------------------------------------

class TestPipelineAgreement:
    @pytest.mark.parametrize("window", [False, True])
    def test_first_points(self, window):
        cfg = CorrelatorConfig(fft_size=1024, num_shifts=6, num_signals=3, n_kg=4,
                               scale_factor=1.0 / 1024, apply_window=window)
        reference = m_sequence(1024)
        inputs = shifted_batch(reference, [0, 2, 5])
        results = _run_both(cfg, reference, inputs)
        for host, dev in zip(results["host"], results["cuda"]):
            npt.assert_allclose(dev, host, atol=1e-6)

    def test_running_max(self):
        cfg = CorrelatorConfig(fft_size=512, num_shifts=4, num_signals=2, n_kg=2,
                               scale_factor=1.0 / 512, peak_mode=PeakMode.RUNNING_MAX,
                               search_range=100)
        reference = m_sequence(512)
        inputs = shifted_batch(reference, [3, 1])
        results = _run_both(cfg, reference, inputs)
        npt.assert_allclose(results["cuda"][0], results["host"][0], atol=1e-6)
        corr = numpy_correlation(cfg, reference, inputs)
        npt.assert_allclose(results["cuda"][0][:, :, 0], np.abs(corr[:, :, :100]).max(axis=-1), atol=1e-6)


# ---------------------------------------------------------------------------
# 3. Concrete scenario and lifecycle on the device
# ---------------------------------------------------------------------------

class TestDevicePipeline:
    def test_concrete_scenario(self, cuda_context):
        cfg = CorrelatorConfig(fft_size=32768, num_shifts=8, num_signals=4, n_kg=5,
                               scale_factor=1.0 / 32768)
        reference = m_sequence(32768)
        inputs = shifted_batch(reference, [0, 4, 8, 12])
        with CorrelationPipeline(cuda_context, cfg) as pipeline:
            peaks = pipeline.run(reference, inputs)
            steps = pipeline.timings.steps
        for i in (0, 1):
            assert int(np.argmax(peaks[i, :, 0])) == 4 * i
            assert peaks[i, 4 * i, 0] == pytest.approx(1.0 / 32768, rel=1e-3)
        assert peaks[2:, :, 0].max() < 0.1 / 32768
        assert set(steps) == {"step1", "step2", "step3"}

    def test_repeated_runs_reuse_buffers(self, cuda_context):
        cfg = CorrelatorConfig(fft_size=256, num_shifts=4, num_signals=2, n_kg=2, scale_factor=1.0 / 256)
        reference = m_sequence(256)
        with CorrelationPipeline(cuda_context, cfg) as pipeline:
            buffers = pipeline.buffers
            for shifts in ([0, 1], [2, 3]):
                peaks = pipeline.run(reference, shifted_batch(reference, shifts))
                npt.assert_array_equal(np.argmax(peaks[:, :, 0], axis=1), shifts)
            assert pipeline.buffers == buffers
            assert pipeline.state is PipelineState.STEP3_DONE
        assert cuda_context.live_buffers == []

    def test_cleanup_after_context_close(self):
        ctx = open_context("cuda")
        pipeline = CorrelationPipeline(ctx, CorrelatorConfig(fft_size=64, num_shifts=2, num_signals=1, n_kg=1))
        pipeline.initialize()
        ctx.close()
        pipeline.cleanup()
        pipeline.cleanup()
        assert pipeline.cleaned_up
        assert ctx.live_buffers == []
