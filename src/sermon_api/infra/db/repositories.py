from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from src.sermon_api.cancellation import CancellationToken
from src.sermon_api.domain.models.transcription_session import TranscriptionSession


class SessionNotFoundError(KeyError):
    """Raised by ``update`` when the session row no longer exists."""


class TranscriptionSessionRepository(ABC):
    """Durable store for transcription sessions.

    Every read and write is scoped to an organization except ``list_active``,
    whose callers must post-filter by organization themselves. All calls
    accept an optional cancellation token checked before touching storage.
    """

    @abstractmethod
    def create(
        self, session: TranscriptionSession, cancel_token: Optional[CancellationToken] = None
    ) -> TranscriptionSession:
        raise NotImplementedError

    @abstractmethod
    def get(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[TranscriptionSession]:
        raise NotImplementedError

    @abstractmethod
    def update(
        self, session: TranscriptionSession, cancel_token: Optional[CancellationToken] = None
    ) -> TranscriptionSession:
        raise NotImplementedError

    @abstractmethod
    def delete(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_active(self, cancel_token: Optional[CancellationToken] = None) -> List[TranscriptionSession]:
        """Return IN_PROGRESS and PAUSED sessions across all organizations."""
        raise NotImplementedError

    @abstractmethod
    def list_for_organization(
        self,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[TranscriptionSession]:
        """Return every session the organization owns, in any status."""
        raise NotImplementedError
