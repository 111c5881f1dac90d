"""
Tests for the polling backoff schedule.
"""

from itertools import islice

from result_poller.backoff import backoff_delays


def test_first_values():
    assert list(islice(backoff_delays(), 6)) == [2000, 2000, 3000, 5000, 8000, 13000]


def test_cap_and_length():
    delays = list(backoff_delays())
    assert len(delays) == 60
    assert max(delays) == 15000
    assert delays[6:] == [15000] * 54
    assert all(isinstance(d, int) and d > 0 for d in delays)


def test_custom_bounds():
    assert list(backoff_delays(max_attempts=4, cap_ms=4000)) == [2000, 2000, 3000, 4000]
    assert list(backoff_delays(max_attempts=0)) == []


def test_each_call_restarts():
    first = backoff_delays(3)
    next(first)
    assert list(backoff_delays(3)) == [2000, 2000, 3000]
    assert list(first) == [2000, 3000]
