from __future__ import annotations

import pytest

from homepost_client.backoff import Backoff


def test_schedule_grows_and_caps():
    b = Backoff(5.0, 1.5, 60.0)
    delays = [b.next_delay() for _ in range(9)]
    assert delays[:4] == pytest.approx([5.0, 7.5, 11.25, 16.875])
    assert max(delays) == 60.0
    assert delays == sorted(delays)


def test_reset_starts_over():
    b = Backoff(1.0, 2.0, 30.0)
    b.next_delay()
    b.next_delay()
    b.reset()
    assert b.next_delay() == 1.0


def test_long_outage_does_not_overflow():
    b = Backoff(1.0, 10.0, 30.0)
    b.failures = 10_000
    assert b.next_delay() == 30.0


@pytest.mark.parametrize("base,factor", [(0, 1.5), (-1, 1.5), (1, 0.5)])
def test_invalid_parameters(base, factor):
    with pytest.raises(ValueError):
        Backoff(base, factor, 10)
