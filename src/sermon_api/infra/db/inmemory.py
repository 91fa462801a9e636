from __future__ import annotations

from threading import RLock
from typing import Dict, List, Optional
from uuid import UUID

from src.sermon_api.cancellation import CancellationToken, check_cancelled
from src.sermon_api.domain.models.transcription_session import TranscriptionSession
from src.sermon_api.infra.db.repositories import SessionNotFoundError, TranscriptionSessionRepository


class InMemoryTranscriptionSessionRepository(TranscriptionSessionRepository):
    """Process-local session store used in tests and local development.

    Records are copied on the way in and out so that callers only change the
    stored state through ``update``, the same as with a real database.
    """

    def __init__(self) -> None:
        self._sessions: Dict[UUID, TranscriptionSession] = {}
        self._lock = RLock()

    def create(
        self, session: TranscriptionSession, cancel_token: Optional[CancellationToken] = None
    ) -> TranscriptionSession:
        check_cancelled(cancel_token)
        with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)
        return session

    def get(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[TranscriptionSession]:
        check_cancelled(cancel_token)
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.organization_id != organization_id:
                return None
            return session.model_copy(deep=True)

    def update(
        self, session: TranscriptionSession, cancel_token: Optional[CancellationToken] = None
    ) -> TranscriptionSession:
        check_cancelled(cancel_token)
        with self._lock:
            existing = self._sessions.get(session.id)
            if existing is None or existing.organization_id != session.organization_id:
                raise SessionNotFoundError(str(session.id))
            self._sessions[session.id] = session.model_copy(deep=True)
        return session

    def delete(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        check_cancelled(cancel_token)
        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is None or existing.organization_id != organization_id:
                return False
            del self._sessions[session_id]
            return True

    def list_active(self, cancel_token: Optional[CancellationToken] = None) -> List[TranscriptionSession]:
        check_cancelled(cancel_token)
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values() if s.is_active]

    def list_for_organization(
        self,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[TranscriptionSession]:
        check_cancelled(cancel_token)
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values() if s.organization_id == organization_id]

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()


# Swapped for a SQL-backed repository by infra.db.bootstrap when configured.
session_repository: TranscriptionSessionRepository = InMemoryTranscriptionSessionRepository()
