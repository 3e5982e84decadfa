"""Tests for the runtime building blocks: context, host backend, plan factory."""

import numpy as np
import numpy.testing as npt
import pytest

from xcorr_compiler import CorrelatorConfig, compile_correlator
from xcorr_compiler.layout import REFERENCE_HEADER
from xcorr_runtime.context import DeviceContext, create_backend, open_context
from xcorr_runtime.errors import (
    CorrelatorError,
    DeviceRuntimeError,
    ResourceAllocationError,
    SequencingError,
)
from xcorr_runtime.host_backend import HostBackend
from xcorr_runtime.plan_factory import PlanFactory


# ---------------------------------------------------------------------------
# 1. Errors
# ---------------------------------------------------------------------------

class TestErrors:
    def test_context_in_message(self):
        err = DeviceRuntimeError("boom", step="step3", operation="ifft_correlation")
        assert str(err) == "[step3/ifft_correlation] boom"

    def test_message_without_context(self):
        assert str(SequencingError("too early")) == "too early"

    def test_step_set_later(self):
        err = ResourceAllocationError("oom", operation="allocate:x")
        err.step = "initialize"
        assert str(err) == "[initialize/allocate:x] oom"

    def test_hierarchy(self):
        for cls in (ResourceAllocationError, SequencingError, DeviceRuntimeError):
            assert issubclass(cls, CorrelatorError)
            assert issubclass(cls, RuntimeError)


# ---------------------------------------------------------------------------
# 2. Context
# ---------------------------------------------------------------------------

class TestContext:
    def test_create_backend(self):
        backend = create_backend("host")
        assert backend.name == "host"
        backend.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            create_backend("opencl")

    def test_tracks_buffers(self, host_context):
        a = host_context.allocate("a", 64)
        b = host_context.allocate("b", 32)
        assert host_context.live_buffers == [a, b]
        host_context.release(a)
        host_context.release(a)
        assert host_context.live_buffers == [b]

    def test_close_releases_everything_once(self):
        ctx = open_context("host")
        buf = ctx.allocate("a", 16)
        ctx.close()
        ctx.close()
        assert buf.released
        assert ctx.closed
        with pytest.raises(SequencingError):
            ctx.allocate("b", 16)

    def test_context_manager(self):
        with DeviceContext(HostBackend()) as ctx:
            ctx.allocate("a", 8)
        assert ctx.closed
        assert ctx.live_buffers == []


# ---------------------------------------------------------------------------
# 3. Host backend primitives
# ---------------------------------------------------------------------------

class TestHostBackend:
    @pytest.fixture
    def backend(self):
        backend = HostBackend()
        yield backend
        backend.close()

    def test_write_read(self, backend):
        buf = backend.allocate("buf", 16)
        data = np.arange(4, dtype=np.int32)
        backend.write_async(buf, data, 0)
        event, host = backend.read_async(buf, 0, 16)
        event.wait()
        npt.assert_array_equal(host.view(np.int32), data)

    def test_copy_with_offsets(self, backend):
        src = backend.allocate("src", 8)
        dst = backend.allocate("dst", 16)
        backend.write(src, bytes(range(8)))
        backend.copy_async(src, dst, 4, src_offset=2, dst_offset=10)
        _, host = backend.read_async(dst, 0, 16)
        assert host[10:14].tolist() == [2, 3, 4, 5]
        assert host[:10].tolist() == [0] * 10

    def test_fill(self, backend):
        buf = backend.allocate("buf", 8)
        backend.write(buf, bytes([7] * 8))
        backend.fill_async(buf, 0, 2, 4)
        _, host = backend.read_async(buf, 0, 8)
        assert host.tolist() == [7, 7, 0, 0, 0, 0, 7, 7]

    def test_out_of_range(self, backend):
        buf = backend.allocate("buf", 8)
        with pytest.raises(ValueError):
            backend.read_async(buf, 4, 8)
        with pytest.raises(ValueError):
            backend.write(buf, bytes(9))

    def test_zero_allocation_rejected(self, backend):
        with pytest.raises(ResourceAllocationError):
            backend.allocate("empty", 0)

    def test_released_buffer_unusable(self, backend):
        buf = backend.allocate("buf", 8)
        backend.release(buf)
        assert buf.size_bytes == 0
        with pytest.raises(DeviceRuntimeError):
            buf.native_handle

    def test_events_carry_labels_and_order(self, backend):
        buf = backend.allocate("buf", 8)
        event = backend.fill_async(buf, 1, 0, 8, label="clear")
        assert event.label == "clear"
        assert event.done
        ts = event.timestamps()
        assert ts.queued <= ts.submitted <= ts.started <= ts.ended

    def test_closed_backend(self, backend):
        buf = backend.allocate("buf", 8)
        backend.close()
        with pytest.raises(DeviceRuntimeError, match="closed"):
            backend.fill_async(buf, 0, 0, 8)


# ---------------------------------------------------------------------------
# 4. Plan factory
# ---------------------------------------------------------------------------

class TestPlanFactory:
    @pytest.fixture
    def program(self):
        return compile_correlator(CorrelatorConfig(fft_size=64, num_shifts=2, num_signals=2, n_kg=2))

    def _allocate(self, ctx, program, skip=()):
        return {
            b.name: ctx.allocate(b.name, b.size_bytes)
            for b in program.buffers if b.name not in skip
        }

    def test_build_writes_headers_and_bakes_in_order(self, host_context, program):
        buffers = self._allocate(host_context, program)
        plans = PlanFactory(host_context).build(program, buffers)
        assert [p.name for p in plans] == ["reference", "input", "correlation"]
        raw = buffers["reference_userdata"].native_handle[:REFERENCE_HEADER.size_bytes].tobytes()
        assert REFERENCE_HEADER.unpack(raw)["fft_size"] == 64

    def test_missing_buffer(self, host_context, program):
        buffers = self._allocate(host_context, program, skip=("correlation_output",))
        with pytest.raises(ResourceAllocationError, match="correlation_output") as info:
            PlanFactory(host_context).build(program, buffers)
        assert info.value.operation == "create_plan:correlation"

    def test_destroy_reverse_order(self, program):
        destroyed = []

        class Recording(HostBackend):
            def destroy_plan(self, plan):
                destroyed.append(plan.name)
                super().destroy_plan(plan)

        with DeviceContext(Recording()) as ctx:
            factory = PlanFactory(ctx)
            plans = factory.build(program, self._allocate(ctx, program))
            factory.destroy(plans)
        assert destroyed == ["correlation", "input", "reference"]

    def test_failed_build_destroys_baked_plans(self, program):
        destroyed = []

        class Recording(HostBackend):
            def destroy_plan(self, plan):
                destroyed.append(plan.name)
                super().destroy_plan(plan)

        with DeviceContext(Recording()) as ctx:
            buffers = self._allocate(ctx, program, skip=("correlation_output",))
            with pytest.raises(ResourceAllocationError):
                PlanFactory(ctx).build(program, buffers)
        assert destroyed == ["input", "reference"]

    def test_destroyed_plan_cannot_run(self, host_context, program):
        buffers = self._allocate(host_context, program)
        factory = PlanFactory(host_context)
        plans = factory.build(program, buffers)
        factory.destroy(plans)
        with pytest.raises(DeviceRuntimeError, match="destroyed"):
            host_context.backend.enqueue_transform(
                plans.input, buffers["input_signals"], buffers["input_spectrum"])
