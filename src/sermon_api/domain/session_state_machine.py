from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class SessionStatus(str, Enum):
    CREATED = "CREATED"
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SessionAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    CANCEL = "cancel"


TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED})

# (current status, action) -> next status. Anything missing is illegal.
TRANSITIONS: Dict[Tuple[SessionStatus, SessionAction], SessionStatus] = {
    (SessionStatus.CREATED, SessionAction.START): SessionStatus.IN_PROGRESS,
    (SessionStatus.IN_PROGRESS, SessionAction.PAUSE): SessionStatus.PAUSED,
    (SessionStatus.PAUSED, SessionAction.RESUME): SessionStatus.IN_PROGRESS,
    (SessionStatus.IN_PROGRESS, SessionAction.COMPLETE): SessionStatus.COMPLETED,
    (SessionStatus.CREATED, SessionAction.CANCEL): SessionStatus.CANCELLED,
    (SessionStatus.IN_PROGRESS, SessionAction.CANCEL): SessionStatus.CANCELLED,
    (SessionStatus.PAUSED, SessionAction.CANCEL): SessionStatus.CANCELLED,
}


class InvalidTransitionError(Exception):
    def __init__(self, current: SessionStatus, action: SessionAction) -> None:
        super().__init__(f"Cannot {action.value} session in {current.value} status")
        self.current = current
        self.action = action


@dataclass(frozen=True)
class TransitionResult:
    current: SessionStatus
    action: SessionAction
    next_status: Optional[SessionStatus]

    @property
    def allowed(self) -> bool:
        return self.next_status is not None

    def unwrap(self) -> SessionStatus:
        if self.next_status is None:
            raise InvalidTransitionError(self.current, self.action)
        return self.next_status


def next_status(current: SessionStatus, action: SessionAction) -> TransitionResult:
    """Look up the status reached by applying ``action`` to ``current``.

    Pure function: no timestamps, no persistence.
    """

    return TransitionResult(current=current, action=action, next_status=TRANSITIONS.get((current, action)))


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATUSES


def allowed_actions(current: SessionStatus) -> list[SessionAction]:
    return [action for (status, action) in TRANSITIONS if status == current]
