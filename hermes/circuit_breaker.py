"""
Circuit Breaker
===============

Stall-detection state machine that gates whether another execution loop may
run.

Key Features:
- CLOSED -> HALF_OPEN after 2 loops without progress
- HALF_OPEN -> OPEN after 3 loops without progress (blocks until reset)
- Any progress immediately closes the circuit
- Error streaks are tracked but never open the circuit on their own
- State and a bounded transition history are persisted atomically under .hermes/
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from hermes.state_io import read_json, write_json_atomic

logger = logging.getLogger(__name__)

HALF_OPEN_THRESHOLD = 2
OPEN_THRESHOLD = 3
MAX_HISTORY = 100

STATE_FILE = "circuit-state.json"
HISTORY_FILE = "circuit-history.json"


class CircuitState(Enum):
    CLOSED = "CLOSED"
    HALF_OPEN = "HALF_OPEN"
    OPEN = "OPEN"


@dataclass
class BreakerState:
    """
    Persisted breaker state.

    Attributes:
        state: Current circuit state
        consecutive_no_progress: Loops in a row without progress
        consecutive_errors: Loops in a row flagged with an error
        last_progress: Loop number of the last progress-bearing loop
        current_loop: Loop number of the most recent update
        total_opens: Times the circuit has opened, preserved across resets
        reason: Reason for the last transition
        last_updated: Time of the last persisted update
    """
    state: CircuitState = CircuitState.CLOSED
    consecutive_no_progress: int = 0
    consecutive_errors: int = 0
    last_progress: int = 0
    current_loop: int = 0
    total_opens: int = 0
    reason: str = ""
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutiveNoProgress": self.consecutive_no_progress,
            "consecutiveErrors": self.consecutive_errors,
            "lastProgress": self.last_progress,
            "currentLoop": self.current_loop,
            "totalOpens": self.total_opens,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BreakerState":
        try:
            state = CircuitState(data.get("state", "CLOSED"))
        except ValueError:
            logger.warning(f"Unknown circuit state {data.get('state')!r}, assuming CLOSED")
            state = CircuitState.CLOSED
        last_updated = None
        if data.get("lastUpdated"):
            try:
                last_updated = datetime.fromisoformat(data["lastUpdated"])
            except (TypeError, ValueError):
                last_updated = None
        return cls(
            state=state,
            consecutive_no_progress=int(data.get("consecutiveNoProgress", 0)),
            consecutive_errors=int(data.get("consecutiveErrors", 0)),
            last_progress=int(data.get("lastProgress", 0)),
            current_loop=int(data.get("currentLoop", 0)),
            total_opens=int(data.get("totalOpens", 0)),
            reason=data.get("reason", ""),
            last_updated=last_updated,
        )


@dataclass
class HistoryEntry:
    """One recorded state transition."""
    timestamp: datetime
    loop_number: int
    from_state: CircuitState
    to_state: CircuitState
    reason: str
    progress: bool = False
    has_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "loopNumber": self.loop_number,
            "fromState": self.from_state.value,
            "toState": self.to_state.value,
            "reason": self.reason,
            "progress": self.progress,
            "hasError": self.has_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            loop_number=int(data.get("loopNumber", 0)),
            from_state=CircuitState(data["fromState"]),
            to_state=CircuitState(data["toState"]),
            reason=data.get("reason", ""),
            progress=bool(data.get("progress", False)),
            has_error=bool(data.get("hasError", False)),
        )


class CircuitBreaker:
    """
    Circuit breaker over a project's persisted state.

    Every mutating call loads the state from disk, applies the change and
    writes it back, so separate handles on the same project stay consistent.
    """

    def __init__(self, project_path: str = ".", hermes_dir: str = ".hermes"):
        """
        Initialize circuit breaker.

        Args:
            project_path: Project root
            hermes_dir: State directory relative to the project root
        """
        state_dir = Path(project_path) / hermes_dir
        self.state_file = state_dir / STATE_FILE
        self.history_file = state_dir / HISTORY_FILE

    def initialize(self) -> None:
        """Create the state file in CLOSED state if it does not exist."""
        if not self.state_file.exists():
            self._save_state(BreakerState())

    def get_state(self) -> BreakerState:
        data = read_json(self.state_file, None)
        if not isinstance(data, dict):
            return BreakerState()
        return BreakerState.from_dict(data)

    def can_execute(self) -> bool:
        return self.get_state().state != CircuitState.OPEN

    def should_halt(self) -> bool:
        return self.get_state().state == CircuitState.OPEN

    def add_loop_result(self, has_progress: bool, has_error: bool, loop_number: int) -> bool:
        """
        Record the outcome of one loop.

        Args:
            has_progress: The loop made progress
            has_error: The loop hit an error
            loop_number: Loop number being recorded

        Returns:
            True if execution may continue (circuit not OPEN)
        """
        state = self.get_state()
        old_state = state.state
        state.current_loop = loop_number

        if has_progress:
            state.consecutive_no_progress = 0
            state.last_progress = loop_number
            if state.state != CircuitState.CLOSED:
                state.state = CircuitState.CLOSED
                state.reason = "Progress detected, circuit recovered"
        else:
            state.consecutive_no_progress += 1
            if state.consecutive_no_progress >= OPEN_THRESHOLD:
                if state.state != CircuitState.OPEN:
                    state.state = CircuitState.OPEN
                    state.total_opens += 1
                    state.reason = f"No progress for {state.consecutive_no_progress} loops, opening circuit"
            elif state.consecutive_no_progress >= HALF_OPEN_THRESHOLD:
                if state.state == CircuitState.CLOSED:
                    state.state = CircuitState.HALF_OPEN
                    state.reason = f"Monitoring: {state.consecutive_no_progress} loops without progress"

        if has_error:
            state.consecutive_errors += 1
        else:
            state.consecutive_errors = 0

        if old_state != state.state:
            log = logger.warning if state.state == CircuitState.OPEN else logger.info
            log(f"Circuit {old_state.value} -> {state.state.value} at loop {loop_number}: {state.reason}")
            self._add_history(HistoryEntry(
                timestamp=datetime.now(),
                loop_number=loop_number,
                from_state=old_state,
                to_state=state.state,
                reason=state.reason,
                progress=has_progress,
                has_error=has_error,
            ))

        self._save_state(state)
        return state.state != CircuitState.OPEN

    def reset(self, reason: str = "Manual reset") -> None:
        """
        Force the circuit CLOSED.

        Counters are cleared except ``total_opens``, which accumulates across
        open/reset cycles.
        """
        old = self.get_state()
        new = BreakerState(
            state=CircuitState.CLOSED,
            reason=reason,
            total_opens=old.total_opens,
        )
        if old.state != CircuitState.CLOSED:
            logger.info(f"Circuit reset from {old.state.value}: {reason}")
            self._add_history(HistoryEntry(
                timestamp=datetime.now(),
                loop_number=old.current_loop,
                from_state=old.state,
                to_state=CircuitState.CLOSED,
                reason=reason,
            ))
        self._save_state(new)

    def get_history(self) -> List[HistoryEntry]:
        data = read_json(self.history_file, [])
        if not isinstance(data, list):
            return []
        return [HistoryEntry.from_dict(item) for item in data]

    def format_status(self) -> str:
        state = self.get_state()
        icon = {
            CircuitState.CLOSED: "[OK]",
            CircuitState.HALF_OPEN: "[!!]",
            CircuitState.OPEN: "[XX]",
        }[state.state]
        rule = "=" * 60
        return "\n".join([
            rule,
            "           Circuit Breaker Status",
            rule,
            f"State:                 {icon} {state.state.value}",
            f"Reason:                {state.reason}",
            f"Loops since progress:  {state.consecutive_no_progress}",
            f"Last progress:         Loop #{state.last_progress}",
            f"Current loop:          #{state.current_loop}",
            f"Total opens:           {state.total_opens}",
            rule,
        ])

    def format_halt_message(self) -> str:
        state = self.get_state()
        rule = "=" * 60
        return "\n".join([
            rule,
            "  EXECUTION HALTED: Circuit Breaker Opened",
            rule,
            f"Loop #{state.current_loop}: {state.reason}",
            "",
            "Possible reasons:",
            "  - Project may be complete",
            "  - The agent may be stuck on an error",
            "  - PROMPT.md may need clarification",
            "",
            "Run 'hermes reset' after investigating to resume.",
            rule,
        ])

    def _save_state(self, state: BreakerState) -> None:
        state.last_updated = datetime.now()
        write_json_atomic(self.state_file, state.to_dict())

    def _add_history(self, entry: HistoryEntry) -> None:
        history = read_json(self.history_file, [])
        if not isinstance(history, list):
            history = []
        history.append(entry.to_dict())
        write_json_atomic(self.history_file, history[-MAX_HISTORY:])
