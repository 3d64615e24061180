"""
Execution Engine - Trade Job State Machine.

============================================================
PURPOSE
============================================================
Manages trade job lifecycle with strict state transitions.

STATE MACHINE:

    PENDING ──────────────► CANCELLED
       │                        ▲
       ▼                        │
    EXECUTING ──────────────────┤
       │                        │
       ├──► PARTIALLY_FILLED ───┤
       │          │             │
       │          ▼             │
       └──────► FILLED          │
                                │
    Non-terminal states can also transition to FAILED.

INVARIANTS:
- Terminal states (FILLED, FAILED, CANCELLED) are final
- FAILED and CANCELLED carry a reason_code
- All transitions are logged

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from core.exceptions import InvalidStateTransition
from core.types import JobStatus
from storage.models import TradeJobModel


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {
        JobStatus.EXECUTING,
        JobStatus.CANCELLED,
        JobStatus.FAILED,
    },
    JobStatus.EXECUTING: {
        JobStatus.PARTIALLY_FILLED,
        JobStatus.FILLED,
        JobStatus.CANCELLED,
        JobStatus.FAILED,
    },
    JobStatus.PARTIALLY_FILLED: {
        JobStatus.FILLED,
        JobStatus.CANCELLED,
        JobStatus.FAILED,
    },
    # Terminal states - no transitions out
    JobStatus.FILLED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

REASON_REQUIRED: Set[JobStatus] = {JobStatus.FAILED, JobStatus.CANCELLED}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class JobTransitionEvent:
    """Event representing a job status transition."""

    job_id: int
    """Trade job ID."""

    from_state: JobStatus
    """Previous state."""

    to_state: JobStatus
    """New state."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """When transition occurred."""

    reason_code: Optional[str] = None
    """Reason code for terminal non-success states."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""


# ============================================================
# TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """Checks transitions and explains denials."""

    @staticmethod
    def can_transition(from_state: JobStatus, to_state: JobStatus) -> tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        # Same state is always valid (idempotent)
        if from_state == to_state:
            return True, "Same state"

        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"


# ============================================================
# JOB STATE MACHINE
# ============================================================

class JobStateMachine:
    """
    Drives a TradeJobModel through its lifecycle.

    The caller owns the session; this class only mutates the row.
    """

    def __init__(self, job: TradeJobModel):
        self._job = job
        self._history: List[JobTransitionEvent] = []
        self._listeners: List[Callable[[JobTransitionEvent], None]] = []

    @property
    def current_state(self) -> JobStatus:
        return JobStatus(self._job.status)

    @property
    def job(self) -> TradeJobModel:
        return self._job

    @property
    def history(self) -> List[JobTransitionEvent]:
        return list(self._history)

    def add_listener(self, listener: Callable[[JobTransitionEvent], None]) -> None:
        """Add a transition listener."""
        self._listeners.append(listener)

    def transition_to(
        self,
        target_state: JobStatus,
        reason_code: Optional[str] = None,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> JobTransitionEvent:
        """
        Transition to a new state.

        Raises:
            InvalidStateTransition: If transition is not allowed
        """
        allowed, why = TransitionGuard.can_transition(self.current_state, target_state)
        if not allowed:
            raise InvalidStateTransition(
                self._job.id, self.current_state.value, target_state.value, why,
            )

        if target_state in REASON_REQUIRED and not reason_code:
            raise InvalidStateTransition(
                self._job.id, self.current_state.value, target_state.value,
                "reason_code required",
            )

        # Same state - no-op
        if self.current_state == target_state:
            return JobTransitionEvent(
                job_id=self._job.id,
                from_state=self.current_state,
                to_state=target_state,
            )

        event = JobTransitionEvent(
            job_id=self._job.id,
            from_state=self.current_state,
            to_state=target_state,
            reason_code=reason_code,
            details=details or {},
        )
        if now is not None:
            event.timestamp = now

        self._job.status = target_state.value
        self._job.updated_at = event.timestamp
        if reason_code:
            self._job.reason_code = reason_code
        if error_message:
            self._job.error_message = error_message
        if target_state.is_terminal():
            self._job.finished_at = event.timestamp

        self._history.append(event)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Job listener error: {e}")

        logger.info(
            f"Job {self._job.id}: {event.from_state.value} -> {event.to_state.value}"
            + (f" ({reason_code})" if reason_code else "")
        )
        return event

    # --------------------------------------------------------
    # CONVENIENCE METHODS
    # --------------------------------------------------------

    def mark_executing(self, now: Optional[datetime] = None) -> JobTransitionEvent:
        self._job.attempts = (self._job.attempts or 0) + 1
        return self.transition_to(JobStatus.EXECUTING, now=now)

    def mark_filled(self) -> JobTransitionEvent:
        return self.transition_to(JobStatus.FILLED)

    def mark_partially_filled(self) -> JobTransitionEvent:
        return self.transition_to(JobStatus.PARTIALLY_FILLED)

    def mark_failed(
        self, reason_code: str, error_message: str = "", now: Optional[datetime] = None,
    ) -> JobTransitionEvent:
        return self.transition_to(JobStatus.FAILED, reason_code, error_message or None, now=now)

    def mark_cancelled(self, reason_code: str, now: Optional[datetime] = None) -> JobTransitionEvent:
        return self.transition_to(JobStatus.CANCELLED, reason_code, now=now)
