"""State machine for agent jobs.

Uses the transitions library so the allowed moves between job states are
declared in one table instead of being implied by scattered assignments.

    pending --start--> running --complete--> completed
       |                  |
       +------fail--------+----------------> failed
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from transitions import Machine, MachineError

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """State of an agent job as seen by the status poll."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, source: str, dest: str, message: Optional[str] = None) -> None:
        self.source = source
        self.dest = dest
        if message:
            super().__init__(message)
        else:
            super().__init__(f"Invalid transition from '{source}' to '{dest}'")


class JobStateMachine:
    """Validates job state changes.

    Example usage:
        >>> sm = JobStateMachine()
        >>> sm.start()
        >>> sm.current_state
        'running'
        >>> sm.can_transition_to("pending")
        False
    """

    STATES = [s.value for s in JobState]

    TRANSITIONS = [
        {"trigger": "start", "source": "pending", "dest": "running"},
        {"trigger": "complete", "source": "running", "dest": "completed"},
        {"trigger": "fail", "source": "pending", "dest": "failed"},
        {"trigger": "fail", "source": "running", "dest": "failed"},
    ]

    def __init__(self, initial_state: str = "pending") -> None:
        if initial_state not in self.STATES:
            raise ValueError(f"Invalid state: '{initial_state}'. Valid states: {self.STATES}")

        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=initial_state,
            auto_transitions=False,
            send_event=False,
        )

    @property
    def current_state(self) -> str:
        return str(getattr(self, "state"))

    def is_terminal(self) -> bool:
        return JobState(self.current_state) in TERMINAL_STATES

    def can_transition_to(self, target_state: str) -> bool:
        """Check if a transition from the current state to target_state exists."""
        return any(
            t["source"] == self.current_state and t["dest"] == target_state
            for t in self.TRANSITIONS
        )

    def transition_to(self, target_state: str) -> None:
        """Move to target_state via whichever trigger leads there.

        Raises:
            InvalidTransitionError: If no trigger connects the two states
        """
        for t in self.TRANSITIONS:
            if t["source"] == self.current_state and t["dest"] == target_state:
                try:
                    self.trigger(t["trigger"])
                except MachineError as e:
                    raise InvalidTransitionError(self.current_state, target_state, str(e)) from e
                logger.debug("Job state -> %s", target_state)
                return
        raise InvalidTransitionError(self.current_state, target_state)


def validate_job_transition(current: str, target: str) -> None:
    """Validate a job state change without keeping a machine around.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if target not in JobStateMachine.STATES:
        raise InvalidTransitionError(
            current, target, f"Invalid target state: '{target}'. Valid states: {JobStateMachine.STATES}"
        )
    sm = JobStateMachine(initial_state=current)
    if not sm.can_transition_to(target):
        raise InvalidTransitionError(current, target)
