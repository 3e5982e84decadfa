"""Tests for compile_correlator(): plan specs, buffer allocations, headers."""

import pytest

from xcorr_compiler import CorrelatorConfig, PeakMode, compile_correlator
from xcorr_compiler.layout import (
    INPUT_HEADER,
    MULTIPLY_HEADER,
    PEAK_HEADER,
    PEAK_MODE_CODES,
    REFERENCE_HEADER,
)
from xcorr_compiler.program import FORWARD, INVERSE


@pytest.fixture
def program():
    return compile_correlator(CorrelatorConfig(
        fft_size=1024, num_shifts=8, num_signals=4, n_kg=5, scale_factor=1.0 / 1024,
    ))


class TestPlans:
    def test_three_plans(self, program):
        assert set(program.plans) == {"reference", "input", "correlation"}

    def test_reference_plan(self, program):
        spec = program.plans["reference"]
        assert (spec.fft_size, spec.batch, spec.direction) == (1024, 8, FORWARD)
        assert spec.load_callback.name == "reference_load"
        assert spec.store_callback.name == "conjugate_store"
        assert spec.load_userdata == "reference_userdata"
        assert (spec.input_buffer, spec.output_buffer) == ("reference_signal", "reference_spectrum")

    def test_input_plan_has_no_conjugate(self, program):
        spec = program.plans["input"]
        assert (spec.batch, spec.direction) == (4, FORWARD)
        assert spec.load_callback.name == "input_load"
        assert spec.store_callback is None

    def test_correlation_plan(self, program):
        spec = program.plans["correlation"]
        assert (spec.batch, spec.direction) == (32, INVERSE)
        assert spec.num_elements == 32 * 1024
        assert spec.load_callback.name == "multiply_load"
        assert spec.store_callback.name == "peak_store"
        assert (spec.load_userdata, spec.store_userdata) == ("multiply_userdata", "peak_userdata")

    def test_callback_sources(self, program):
        names = [cb.name for cb in program.callback_sources]
        assert names == ["reference_load", "conjugate_store", "input_load", "multiply_load", "peak_store"]


class TestBuffers:
    def test_allocations_match_layout(self, program):
        sizes = {b.name: b.size_bytes for b in program.buffers}
        assert sizes == program.layout.buffer_sizes()

    def test_typed_shapes(self, program):
        assert program.buffer("reference_signal").dtype == "int32"
        assert program.buffer("input_signals").shape == [4, 1024]
        assert program.buffer("correlation_output").shape == [32, 1024]
        assert program.buffer("peak_userdata").dtype == "uint8"
        with pytest.raises(KeyError):
            program.buffer("missing")

    def test_every_plan_buffer_is_allocated(self, program):
        names = {b.name for b in program.buffers}
        for spec in program.plans.values():
            for name in (spec.input_buffer, spec.output_buffer, spec.load_userdata, spec.store_userdata):
                assert name is None or name in names


class TestHeaders:
    def test_reference_header(self, program):
        values = REFERENCE_HEADER.unpack(program.userdata_headers["reference_userdata"])
        assert values["fft_size"] == 1024
        assert values["num_shifts"] == 8
        assert values["apply_window"] == 0
        assert values["scale_factor"] == pytest.approx(1.0 / 1024)

    def test_input_and_multiply_headers(self, program):
        assert INPUT_HEADER.unpack(program.userdata_headers["input_userdata"])["num_signals"] == 4
        mult = MULTIPLY_HEADER.unpack(program.userdata_headers["multiply_userdata"])
        assert (mult["fft_size"], mult["num_shifts"], mult["num_signals"]) == (1024, 8, 4)

    def test_peak_header_first_points(self, program):
        values = PEAK_HEADER.unpack(program.userdata_headers["peak_userdata"])
        assert values["n_kg"] == 5
        assert values["search_range"] == 5
        assert values["peak_mode"] == PEAK_MODE_CODES["first_points"]

    def test_peak_header_running_max(self):
        prog = compile_correlator(CorrelatorConfig(
            fft_size=256, num_shifts=2, num_signals=2, n_kg=2, peak_mode=PeakMode.RUNNING_MAX,
        ))
        values = PEAK_HEADER.unpack(prog.userdata_headers["peak_userdata"])
        assert values["search_range"] == 128
        assert values["peak_mode"] == PEAK_MODE_CODES["running_max"]

    def test_window_flag(self):
        prog = compile_correlator(CorrelatorConfig(fft_size=256, apply_window=True, n_kg=2))
        assert REFERENCE_HEADER.unpack(prog.userdata_headers["reference_userdata"])["apply_window"] == 1
