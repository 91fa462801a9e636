from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select

from src.sermon_api.cancellation import CancellationToken, check_cancelled
from src.sermon_api.domain.models.transcription_session import TranscriptionSession
from src.sermon_api.domain.session_state_machine import SessionStatus
from src.sermon_api.infra.db.models import TranscriptionSessionORM
from src.sermon_api.infra.db.repositories import SessionNotFoundError, TranscriptionSessionRepository
from src.sermon_api.infra.db.session import SessionFactory

_ACTIVE_STATUSES = (SessionStatus.IN_PROGRESS.value, SessionStatus.PAUSED.value)


class SqlTranscriptionSessionRepository(TranscriptionSessionRepository):
    """SQL-backed session store.

    Each call opens its own short-lived ORM session. Organization scoping is
    applied in the query so a foreign session is indistinguishable from a
    missing one.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def create(
        self, session: TranscriptionSession, cancel_token: Optional[CancellationToken] = None
    ) -> TranscriptionSession:
        check_cancelled(cancel_token)
        db = self._session_factory()
        try:
            db.add(TranscriptionSessionORM.from_domain(session))
            db.commit()
            return session
        finally:
            db.close()

    def get(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[TranscriptionSession]:
        check_cancelled(cancel_token)
        db = self._session_factory()
        try:
            orm = db.get(TranscriptionSessionORM, session_id)
            if orm is None:
                return None
            if orm.organization_id != organization_id:
                return None
            return orm.to_domain()
        finally:
            db.close()

    def update(
        self, session: TranscriptionSession, cancel_token: Optional[CancellationToken] = None
    ) -> TranscriptionSession:
        check_cancelled(cancel_token)
        db = self._session_factory()
        try:
            existing = db.get(TranscriptionSessionORM, session.id)
            if existing is None or existing.organization_id != session.organization_id:
                raise SessionNotFoundError(str(session.id))
            existing.apply(session)
            db.commit()
            return session
        finally:
            db.close()

    def delete(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        check_cancelled(cancel_token)
        db = self._session_factory()
        try:
            existing = db.get(TranscriptionSessionORM, session_id)
            if existing is None or existing.organization_id != organization_id:
                return False
            db.delete(existing)
            db.commit()
            return True
        finally:
            db.close()

    def list_active(self, cancel_token: Optional[CancellationToken] = None) -> List[TranscriptionSession]:
        check_cancelled(cancel_token)
        db = self._session_factory()
        try:
            query = select(TranscriptionSessionORM).where(TranscriptionSessionORM.status.in_(_ACTIVE_STATUSES))
            return [orm.to_domain() for orm in db.scalars(query).all()]
        finally:
            db.close()

    def list_for_organization(
        self,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[TranscriptionSession]:
        check_cancelled(cancel_token)
        db = self._session_factory()
        try:
            query = select(TranscriptionSessionORM).where(TranscriptionSessionORM.organization_id == organization_id)
            return [orm.to_domain() for orm in db.scalars(query).all()]
        finally:
            db.close()
