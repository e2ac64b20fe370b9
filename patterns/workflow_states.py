"""Enum-based run state machine for integration instances.

Idle -> Triggered -> (Succeeded | Failed) -> Idle

The persisted columns on Integration are the source of truth; the current
state is derived from them (see ``derive_state``), and every change the
scheduler gate makes goes through ``IntegrationRun.transition`` so an
illegal move (double trigger, success without a trigger) is rejected.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# State definitions
# ---------------------------------------------------------------------------

class RunState(str, Enum):
    """Run lifecycle of one integration instance."""

    IDLE = "idle"
    TRIGGERED = "triggered"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------

_RUN_TRANSITIONS: dict[RunState, list[RunState]] = {
    RunState.IDLE: [RunState.TRIGGERED],
    RunState.TRIGGERED: [RunState.SUCCEEDED, RunState.FAILED],
    RunState.SUCCEEDED: [RunState.IDLE],
    RunState.FAILED: [RunState.IDLE],
}


def derive_state(
    last_triggered_at: datetime | None,
    last_successful_update_at: datetime | None,
    now: datetime,
    processing_window_minutes: float,
) -> RunState:
    """TRIGGERED while a trigger is recent and newer than the last success."""
    if last_triggered_at is None:
        return RunState.IDLE
    if last_successful_update_at and last_successful_update_at >= last_triggered_at:
        return RunState.IDLE
    elapsed = (now - last_triggered_at).total_seconds() / 60
    if 0 <= elapsed < processing_window_minutes:
        return RunState.TRIGGERED
    # Stale trigger: the run died without reporting back
    return RunState.IDLE


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

@dataclass
class RunTransition:
    """Record of a single state transition."""

    from_state: str
    to_state: str
    timestamp: datetime
    actor: str = "scheduler"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegrationRun:
    """State tracking for one instance's current run.

    Usage::

        run = IntegrationRun(integration_id="...", current_state=RunState.IDLE)
        run.transition(RunState.TRIGGERED)
        run.transition(RunState.SUCCEEDED)
    """

    integration_id: str
    current_state: RunState
    history: list[RunTransition] = field(default_factory=list)

    def can_transition(self, to_state: RunState) -> bool:
        """Check if a transition is allowed from the current state."""
        return to_state in _RUN_TRANSITIONS.get(self.current_state, [])

    def transition(
        self,
        to_state: RunState,
        actor: str = "scheduler",
        metadata: dict[str, Any] | None = None,
    ) -> RunTransition:
        """Execute a state transition.

        Raises ValueError if the transition is not allowed.
        """
        if not self.can_transition(to_state):
            allowed = [s.value for s in _RUN_TRANSITIONS.get(self.current_state, [])]
            raise ValueError(
                f"Cannot transition from {self.current_state.value} to {to_state.value}. "
                f"Allowed: {allowed}"
            )

        record = RunTransition(
            from_state=self.current_state.value,
            to_state=to_state.value,
            timestamp=datetime.now(timezone.utc),
            actor=actor,
            metadata=metadata or {},
        )
        self.history.append(record)
        self.current_state = to_state
        return record

    def settle(self) -> None:
        """Return a finished run to IDLE."""
        if self.current_state in (RunState.SUCCEEDED, RunState.FAILED):
            self.transition(RunState.IDLE)
