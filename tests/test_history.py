"""Tests for HistoryBuffer and StreamSet."""

import pytest

from puls.history import HistoryBuffer, StreamSet
from puls.models import NA


class TestHistoryBuffer:
    """Tests for the fixed-capacity ring buffer."""

    def test_keeps_last_n_in_order(self):
        """After N+k pushes the buffer holds the last N values, oldest first."""
        buffer = HistoryBuffer(5)
        for value in range(12):
            buffer.push(float(value))

        assert len(buffer.values()) == 5
        assert buffer.values() == (7.0, 8.0, 9.0, 10.0, 11.0)

    def test_partial_fill(self):
        buffer = HistoryBuffer(10)
        buffer.push(1.0)
        buffer.push(2.0)
        assert buffer.values() == (1.0, 2.0)

    def test_resize_discards_history(self):
        buffer = HistoryBuffer(3)
        for value in (1.0, 2.0, 3.0):
            buffer.push(value)
        buffer.resize(8)

        assert buffer.capacity == 8
        assert buffer.values() == ()

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            HistoryBuffer(0)
        with pytest.raises(ValueError):
            HistoryBuffer(3).resize(-1)

    def test_values_is_a_copy(self):
        buffer = HistoryBuffer(3)
        buffer.push(1.0)
        view = buffer.values()
        buffer.push(2.0)
        assert view == (1.0,)


class TestStreamSet:
    """Tests for the named stream collection."""

    def test_freeze_reports_latest_and_samples(self):
        streams = StreamSet(["cpu", "gpu"], capacity=3)
        for value in (10.0, 20.0, 30.0, 40.0):
            streams.append("cpu", value)

        frozen = streams.freeze()
        assert frozen["cpu"].value == 40.0
        assert frozen["cpu"].samples == (20.0, 30.0, 40.0)
        assert frozen["gpu"].value is NA
        assert frozen["gpu"].samples == ()

    def test_missing_tick_keeps_history(self):
        streams = StreamSet(["gpu"], capacity=4)
        streams.append("gpu", 55.0)
        streams.mark_missing("gpu")

        frozen = streams.freeze()
        assert frozen["gpu"].value is NA
        assert frozen["gpu"].samples == (55.0,)

    def test_frozen_view_is_independent(self):
        streams = StreamSet(["cpu"], capacity=4)
        streams.append("cpu", 1.0)
        before = streams.freeze()
        streams.append("cpu", 2.0)
        assert before["cpu"].samples == (1.0,)

    def test_resize_reinitializes_every_stream(self):
        streams = StreamSet(["cpu", "memory"], capacity=4)
        streams.append("cpu", 1.0)
        streams.append("memory", 2.0)
        streams.resize(10)

        assert streams.capacity == 10
        frozen = streams.freeze()
        assert all(s.samples == () and s.value is NA for s in frozen.values())
