import pytest

from sweepwatch.sweep.buffer import SampleBuffer
from sweepwatch.sweep.types import SpectrumSample


def _sample(i: int) -> SpectrumSample:
    return SpectrumSample(
        timestamp_ms=i,
        start_hz=100e6 + i,
        stop_hz=105e6 + i,
        bin_width_hz=1e6,
        sample_count=20,
        power_db=[-60.0, -50.0],
    )


def test_buffer_returns_last_n_of_fifty_in_order() -> None:
    buf = SampleBuffer(capacity=100)
    for i in range(50):
        buf.append(_sample(i))
    recent = buf.recent(10)
    assert [s.timestamp_ms for s in recent] == list(range(40, 50))


def test_buffer_evicts_oldest_on_overflow() -> None:
    buf = SampleBuffer(capacity=5)
    for i in range(12):
        buf.append(_sample(i))
    assert len(buf) == 5
    assert [s.timestamp_ms for s in buf.recent()] == [7, 8, 9, 10, 11]
    assert buf.total_appended == 12
    assert buf.latest().timestamp_ms == 11


def test_buffer_limits() -> None:
    buf = SampleBuffer(capacity=3)
    assert buf.recent(5) == []
    assert buf.latest() is None
    buf.append(_sample(1))
    assert buf.recent(0) == []
    assert len(buf.recent(10)) == 1
    buf.clear()
    assert len(buf) == 0
    with pytest.raises(ValueError):
        SampleBuffer(capacity=0)
