"""
Test ResourceMonitor hourly limits
"""

import sys
sys.path.insert(0, '.')

import pytest

from hermes.errors import InvocationError
from hermes.parallel.resource_monitor import WINDOW_SECONDS, ResourceLimits, ResourceMonitor


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_call_limit():
    """Test the call limit blocks once reached"""
    print("\n=== Test: Call Limit ===")

    monitor = ResourceMonitor(ResourceLimits(max_calls_per_hour=2), clock=FakeClock())
    monitor.record_call()
    assert monitor.can_make_call()
    monitor.record_call()

    assert not monitor.can_make_call()
    with pytest.raises(InvocationError) as exc_info:
        monitor.check()
    assert "Hourly resource limit reached" in str(exc_info.value)
    print("[PASS]")


def test_cost_limit():
    monitor = ResourceMonitor(ResourceLimits(max_calls_per_hour=0, max_cost_per_hour=1.0), clock=FakeClock())
    monitor.record_call(0.6)
    assert monitor.can_make_call()
    monitor.record_call(0.5)

    assert not monitor.can_make_call()


def test_zero_limits_are_unlimited():
    monitor = ResourceMonitor(ResourceLimits(max_calls_per_hour=0, max_cost_per_hour=0.0), clock=FakeClock())
    for _ in range(500):
        monitor.record_call(10.0)

    assert monitor.can_make_call()


def test_window_expires():
    clock = FakeClock()
    monitor = ResourceMonitor(ResourceLimits(max_calls_per_hour=1), clock=clock)
    monitor.record_call(0.2)
    assert not monitor.can_make_call()

    clock.now += WINDOW_SECONDS
    assert monitor.can_make_call()

    stats = monitor.get_stats()
    assert stats['calls_last_hour'] == 0
    assert stats['total_calls'] == 1
    assert stats['total_cost'] == pytest.approx(0.2)
