from __future__ import annotations

import pytest

from bleflow.meter.window import RawSample, SampleWindow

from builders import at


def _sample(i: int) -> RawSample:
    return RawSample(timestamp=at(i), values=(i,))


def test_window_is_bounded_and_evicts_oldest() -> None:
    window = SampleWindow(queue_size=3)
    for i in range(4):
        window.push(_sample(i))
        assert len(window) <= 3
    contents = list(window.drain())
    assert [s.values[0] for s in contents] == [1, 2, 3]
    assert _sample(0) not in contents


def test_default_queue_size() -> None:
    window = SampleWindow()
    for i in range(25):
        window.push(_sample(i))
    assert window.queue_size == 20
    assert len(window) == 20
    assert next(window.drain()).values == (5,)


def test_drain_does_not_remove() -> None:
    window = SampleWindow(queue_size=5)
    window.push(_sample(1))
    window.push(_sample(2))
    assert len(list(window.drain())) == 2
    assert len(window) == 2
    assert window.latest == _sample(2)


def test_shrink_applies_on_next_push() -> None:
    window = SampleWindow(queue_size=5)
    for i in range(5):
        window.push(_sample(i))
    window.queue_size = 2
    assert len(window) == 5
    window.push(_sample(5))
    assert [s.values[0] for s in window.drain()] == [4, 5]


def test_invalid_queue_size() -> None:
    with pytest.raises(ValueError):
        SampleWindow(queue_size=0)
    window = SampleWindow(queue_size=2)
    with pytest.raises(ValueError):
        window.queue_size = -1
    assert window.queue_size == 2


def test_clear() -> None:
    window = SampleWindow(queue_size=2)
    window.push(_sample(1))
    window.clear()
    assert len(window) == 0
    assert window.latest is None
