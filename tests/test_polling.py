from __future__ import annotations

import pytest

from conftest import FakeClock
from onboard_provisioning.polling import poll_until


def test_ready_on_first_check_does_not_sleep(clock: FakeClock) -> None:
    outcome = poll_until(lambda: True, interval=30, timeout=300, clock=clock, sleep=clock.sleep)

    assert outcome.ready
    assert outcome.attempts == 1
    assert clock.sleeps == []


def test_polls_until_predicate_succeeds(clock: FakeClock) -> None:
    answers = iter([False, False, True])

    outcome = poll_until(lambda: next(answers), interval=30, timeout=300, clock=clock, sleep=clock.sleep)

    assert outcome.ready
    assert outcome.attempts == 3
    assert outcome.elapsed == 60
    assert clock.sleeps == [30, 30]


def test_timeout_is_never_exceeded(clock: FakeClock) -> None:
    outcome = poll_until(lambda: False, interval=30, timeout=100, clock=clock, sleep=clock.sleep)

    assert not outcome.ready
    assert clock.sleeps == [30, 30, 30, 10]
    assert outcome.elapsed == 100
    assert clock.now <= 100
    assert outcome.attempts == 5


def test_predicate_errors_count_as_not_ready(clock: FakeClock) -> None:
    calls = []

    def flaky() -> bool:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return True

    outcome = poll_until(flaky, interval=10, timeout=60, clock=clock, sleep=clock.sleep)

    assert outcome.ready
    assert outcome.attempts == 2


def test_zero_timeout_checks_once(clock: FakeClock) -> None:
    outcome = poll_until(lambda: False, interval=10, timeout=0, clock=clock, sleep=clock.sleep)

    assert not outcome.ready
    assert outcome.attempts == 1
    assert clock.sleeps == []


def test_interval_must_be_positive(clock: FakeClock) -> None:
    with pytest.raises(ValueError):
        poll_until(lambda: True, interval=0, timeout=10, clock=clock, sleep=clock.sleep)
