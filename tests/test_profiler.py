"""Tests for the event timing decomposition."""

import json

import pytest

from xcorr_runtime.backend import DeviceEvent, EventTimestamps
from xcorr_runtime.profiler import EventTimingCollector, OperationTiming, measure


class FakeEvent(DeviceEvent):
    def __init__(self, label, queued, submitted, started, ended):
        self._label = label
        self._stamps = EventTimestamps(queued, submitted, started, ended)
        self.waited = 0

    @property
    def label(self):
        return self._label

    @property
    def done(self):
        return self.waited > 0

    def wait(self):
        self.waited += 1

    def timestamps(self):
        return self._stamps


class TestMeasure:
    def test_decomposition(self):
        t = measure(FakeEvent("op", 1.000, 1.001, 1.004, 1.010))
        assert t.queued_ms == pytest.approx(1.0)
        assert t.queue_wait_ms == pytest.approx(3.0)
        assert t.execute_ms == pytest.approx(6.0)
        assert t.total_ms == pytest.approx(10.0)
        assert t.cpu_wait_ms >= 0

    def test_waits_before_reading(self):
        event = FakeEvent("op", 0, 0, 0, 0)
        measure(event)
        assert event.waited == 1

    def test_clock_skew_clamped(self):
        # Device start mapped slightly before submission
        t = measure(FakeEvent("op", 2.0, 2.001, 2.0005, 2.003))
        assert t.queue_wait_ms == 0.0
        assert t.execute_ms == pytest.approx(2.5)


class TestCollector:
    def _collector(self):
        c = EventTimingCollector()
        c.collect("step1", "upload", FakeEvent("upload", 0.0, 0.0, 0.0, 0.002))
        c.collect("step1", "fft", FakeEvent("fft", 0.0, 0.0, 0.002, 0.005))
        c.collect("step2", "fft", FakeEvent("fft", 0.0, 0.0, 0.0, 0.001))
        return c

    def test_grouped_by_step(self):
        c = self._collector()
        assert list(c.steps) == ["step1", "step2"]
        assert list(c.steps["step1"]) == ["upload", "fft"]
        assert isinstance(c.steps["step2"]["fft"], OperationTiming)

    def test_step_total(self):
        c = self._collector()
        assert c.step_total_ms("step1") == pytest.approx(5.0)
        assert c.step_total_ms("missing") == 0

    def test_clear(self):
        c = self._collector()
        c.clear("step1")
        assert list(c.steps) == ["step2"]
        c.clear()
        assert c.steps == {}

    def test_to_dict_is_json(self):
        d = self._collector().to_dict()
        assert d["step1"]["fft"]["execute_ms"] == pytest.approx(3.0)
        json.dumps(d)

    def test_summary_lists_every_operation(self):
        lines = self._collector().summary().splitlines()
        assert lines[0].split()[:2] == ["step", "operation"]
        assert len(lines) == 4
        assert lines[2].split()[:2] == ["step1", "fft"]
