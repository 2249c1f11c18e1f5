import pytest

from conftest import FakeClock

from linefollower.line_memory import LineMemory


def test_empty_memory():
    memory = LineMemory(clock=FakeClock())
    assert memory.age() is None
    assert memory.recall() == (None, None)


def test_recall_within_timeout():
    clock = FakeClock()
    memory = LineMemory(timeout=3.0, clock=clock)
    memory.remember(140)
    clock.advance(2.9)
    position, age = memory.recall()
    assert position == 140
    assert age == pytest.approx(2.9)


def test_memory_expires():
    clock = FakeClock()
    memory = LineMemory(timeout=3.0, clock=clock)
    memory.remember(140)
    clock.advance(3.0)
    position, age = memory.recall()
    assert position is None
    assert age >= 3.0
    assert memory.get_status()['fresh'] is False


def test_new_detection_overwrites():
    clock = FakeClock()
    memory = LineMemory(clock=clock)
    memory.remember(100)
    clock.advance(2.0)
    memory.remember(180)
    clock.advance(2.0)
    assert memory.recall()[0] == 180


def test_clear():
    memory = LineMemory(clock=FakeClock())
    memory.remember(100)
    memory.clear()
    assert memory.recall() == (None, None)
