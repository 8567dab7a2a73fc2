"""
reactloop/agent/state.py — Execution State

    IDLE ──begin()──▶ RUNNING ──▶ FINISHED
                         │
                         └──────▶ ERROR

FINISHED and ERROR only go back to IDLE through an explicit reset().
"""

from __future__ import annotations

from enum import Enum

from reactloop.exceptions import ValidationError


class ExecutionState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.FINISHED, ExecutionState.ERROR)

    @property
    def is_active(self) -> bool:
        return self is ExecutionState.RUNNING


_ALLOWED: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.IDLE:     frozenset({ExecutionState.RUNNING}),
    ExecutionState.RUNNING:  frozenset({ExecutionState.FINISHED, ExecutionState.ERROR}),
    ExecutionState.FINISHED: frozenset(),
    ExecutionState.ERROR:    frozenset(),
}


def check_transition(current: ExecutionState, target: ExecutionState) -> None:
    """Raise ValidationError unless current → target is a legal run transition."""
    if target not in _ALLOWED[current]:
        raise ValidationError(f"Illegal state transition {current.value} → {target.value}")
