"""Hourly API call and cost limits for agent invocations."""

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Tuple
import logging
import time

from hermes.errors import InvocationError

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600


@dataclass
class ResourceLimits:
    max_calls_per_hour: int = 100
    max_cost_per_hour: float = 0.0


class ResourceMonitor:
    """
    Sliding one-hour window of agent calls and their cost.

    A limit of 0 means unlimited.
    """

    def __init__(self, limits: Optional[ResourceLimits] = None, clock=time.monotonic):
        self.limits = limits or ResourceLimits()
        self._clock = clock
        self._calls: Deque[Tuple[float, float]] = deque()
        self.total_calls = 0
        self.total_cost = 0.0

    def record_call(self, cost: float = 0.0) -> None:
        self._calls.append((self._clock(), cost))
        self.total_calls += 1
        self.total_cost += cost

    def can_make_call(self) -> bool:
        self._expire()
        if self.limits.max_calls_per_hour and len(self._calls) >= self.limits.max_calls_per_hour:
            logger.warning(f"Hourly call limit reached ({self.limits.max_calls_per_hour})")
            return False
        if self.limits.max_cost_per_hour and self._window_cost() >= self.limits.max_cost_per_hour:
            logger.warning(f"Hourly cost limit reached (${self.limits.max_cost_per_hour:.2f})")
            return False
        return True

    def check(self) -> None:
        """
        Raises:
            InvocationError: If a limit for the current hour is exhausted
        """
        if not self.can_make_call():
            stats = self.get_stats()
            raise InvocationError(
                f"Hourly resource limit reached ({stats['calls_last_hour']} calls, "
                f"${stats['cost_last_hour']:.2f})"
            )

    def get_stats(self) -> Dict[str, Any]:
        self._expire()
        return {
            'calls_last_hour': len(self._calls),
            'cost_last_hour': self._window_cost(),
            'total_calls': self.total_calls,
            'total_cost': self.total_cost,
            'max_calls_per_hour': self.limits.max_calls_per_hour,
            'max_cost_per_hour': self.limits.max_cost_per_hour,
        }

    def _window_cost(self) -> float:
        return sum(cost for _, cost in self._calls)

    def _expire(self) -> None:
        cutoff = self._clock() - WINDOW_SECONDS
        while self._calls and self._calls[0][0] <= cutoff:
            self._calls.popleft()
