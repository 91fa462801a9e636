from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, computed_field

from src.sermon_api.domain.clock import utc_now
from src.sermon_api.domain.session_state_machine import (
    SessionAction,
    SessionStatus,
    is_terminal,
    next_status,
)


class SessionGuardError(Exception):
    """Raised when a session is modified in a status that forbids it."""


class TranscriptionSession(BaseModel):
    """A bounded unit of live or file-based transcription work.

    The session store owns these records and is the only authoritative source
    for ``status``. Status changes go through :meth:`apply_action` so that the
    transition table and the timing side effects stay in one place.
    """

    id: UUID
    # Tenant that owns this session for its whole lifetime.
    organization_id: str
    created_by_user_id: Optional[str] = None

    title: str
    description: Optional[str] = None
    language: str = "en"
    enable_speaker_diarization: bool = True
    enable_punctuation: bool = True
    enable_timestamps: bool = True
    is_live: bool = False
    audio_stream_url: Optional[str] = None
    audio_file_name: Optional[str] = None

    status: SessionStatus = SessionStatus.CREATED

    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    # Time already spent IN_PROGRESS, excluding the currently open interval.
    accumulated_seconds: float = 0.0
    # Start of the currently open IN_PROGRESS interval, if any.
    last_resumed_at: Optional[datetime] = None

    error_message: Optional[str] = Field(default=None, max_length=1000)

    @property
    def is_active(self) -> bool:
        return self.status in {SessionStatus.IN_PROGRESS, SessionStatus.PAUSED}

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def in_progress_seconds(self, now: Optional[datetime] = None) -> float:
        """Cumulative time spent IN_PROGRESS, including the open interval."""

        total = self.accumulated_seconds
        if self.status == SessionStatus.IN_PROGRESS and self.last_resumed_at is not None:
            total += max(0.0, ((now or utc_now()) - self.last_resumed_at).total_seconds())
        return total

    @computed_field
    @property
    def duration_seconds(self) -> float:
        return round(self.in_progress_seconds(), 3)

    def apply_action(self, action: SessionAction, now: Optional[datetime] = None) -> SessionStatus:
        """Move the session along the transition table.

        Raises InvalidTransitionError when the action is not legal from the
        current status; the session is left untouched in that case.
        """

        target = next_status(self.status, action).unwrap()
        now = now or utc_now()

        if self.status == SessionStatus.IN_PROGRESS and self.last_resumed_at is not None:
            self.accumulated_seconds += max(0.0, (now - self.last_resumed_at).total_seconds())
            self.last_resumed_at = None

        if target == SessionStatus.IN_PROGRESS:
            if self.started_at is None:
                self.started_at = now
            self.last_resumed_at = now

        if is_terminal(target):
            self.ended_at = now

        self.status = target
        self.is_live = target == SessionStatus.IN_PROGRESS
        self.updated_at = now
        return target

    def ensure_configurable(self) -> None:
        if self.status == SessionStatus.IN_PROGRESS:
            raise SessionGuardError("Cannot update session while in progress")

    def ensure_deletable(self) -> None:
        if self.status == SessionStatus.IN_PROGRESS:
            raise SessionGuardError("Cannot delete session while in progress")
