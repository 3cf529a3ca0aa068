from __future__ import annotations

import pytest

from omnigen.core.deadline import Deadline, DeadlineExceeded


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_remaining_and_expiry() -> None:
    clock = FakeClock()
    deadline = Deadline(60, clock=clock)
    assert deadline.remaining() == 60
    clock.now += 45
    assert deadline.remaining() == 15
    assert not deadline.expired()
    clock.now += 15
    assert deadline.expired()
    with pytest.raises(DeadlineExceeded) as excinfo:
        deadline.check("composition")
    assert excinfo.value.budget_s == 60
    assert "during composition" in str(excinfo.value)


def test_timeout_is_capped_by_remaining_budget() -> None:
    clock = FakeClock()
    deadline = Deadline(60, clock=clock)
    assert deadline.timeout(180) == 60
    assert deadline.timeout(30) == 30
    assert deadline.timeout() == 60
    assert Deadline.unbounded().timeout(30) == 30
    assert Deadline.unbounded().timeout() is None


def test_sleep_never_overshoots_the_budget() -> None:
    clock = FakeClock()
    deadline = Deadline(12, clock=clock)
    slept: list[float] = []

    def sleeper(seconds: float) -> None:
        slept.append(seconds)
        clock.now += seconds

    deadline.sleep(5, sleeper)
    deadline.sleep(5, sleeper)
    with pytest.raises(DeadlineExceeded):
        deadline.sleep(5, sleeper)
    assert slept == [5, 5, 2]


def test_deadline_exceeded_is_a_timeout_error() -> None:
    assert issubclass(DeadlineExceeded, TimeoutError)
