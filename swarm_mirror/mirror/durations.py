"""
Durations — Named-phase wall clock timing for push/fetch summaries.

    durations = Durations()
    durations.start("lock")
    ...
    durations.stop("lock")
    str(durations)  # "lock: 0.012 push: 1.204"

Phases still running are reported up to now.
"""

from __future__ import annotations

import time
from typing import Dict, List, Optional


class Durations:
    """Collects start/stop timestamps per named phase, in start order."""

    def __init__(self) -> None:
        self._timers: Dict[str, List[Optional[float]]] = {}

    def start(self, phase: str) -> None:
        if phase in self._timers:
            raise ValueError("Cannot start timer, id has already been used")
        self._timers[phase] = [time.time(), None]

    def stop(self, phase: Optional[str] = None) -> None:
        """Stop the named phase, or the most recently started one."""
        if not self._timers:
            raise ValueError("There are no active timers")
        if phase is None:
            phase = list(self._timers)[-1]
        if phase not in self._timers:
            raise ValueError("No active timer under specified id")
        if self._timers[phase][1] is not None:
            raise ValueError("Timer is already stopped")
        self._timers[phase][1] = time.time()

    def elapsed(self, phase: str) -> float:
        begin, end = self._timers[phase]
        return (end if end is not None else time.time()) - begin

    def to_dict(self) -> Dict[str, float]:
        return {phase: round(self.elapsed(phase), 3) for phase in self._timers}

    def __str__(self) -> str:
        return " ".join(f"{phase}: {self.elapsed(phase):.3f}" for phase in self._timers)
