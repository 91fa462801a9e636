from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from src.sermon_api.cancellation import CancellationToken
from src.sermon_api.domain.clock import utc_now
from src.sermon_api.domain.models.transcription_session import SessionGuardError, TranscriptionSession
from src.sermon_api.domain.results import ErrorKind, ServiceResult
from src.sermon_api.domain.session_state_machine import InvalidTransitionError, SessionAction
from src.sermon_api.infra.db import inmemory as inmemory_repos
from src.sermon_api.infra.db.repositories import TranscriptionSessionRepository
from src.sermon_api.services.common import run_guarded

logger = logging.getLogger(__name__)

# Configuration fields a caller may change while the session is not recording.
UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "language",
        "enable_speaker_diarization",
        "enable_punctuation",
        "enable_timestamps",
        "audio_stream_url",
        "audio_file_name",
    }
)

SESSION_NOT_FOUND = "Session not found"
MAX_RECENT_SESSIONS = 100


class TranscriptionSessionService:
    """Organization-scoped session CRUD and status transitions over the session store.

    The store is looked up on every call so that swapping the repository at
    startup (see infra.db.bootstrap) takes effect without rebuilding services.
    """

    def __init__(self, repository: Optional[TranscriptionSessionRepository] = None) -> None:
        self._repository = repository

    @property
    def repository(self) -> TranscriptionSessionRepository:
        return self._repository if self._repository is not None else inmemory_repos.session_repository

    def create_session(
        self,
        *,
        organization_id: str,
        title: str,
        created_by_user_id: Optional[str] = None,
        description: Optional[str] = None,
        language: str = "en",
        enable_speaker_diarization: bool = True,
        enable_punctuation: bool = True,
        enable_timestamps: bool = True,
        audio_stream_url: Optional[str] = None,
        audio_file_name: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[TranscriptionSession]:
        if not title or not title.strip():
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Title is required")

        def _create() -> ServiceResult[TranscriptionSession]:
            session = TranscriptionSession(
                id=uuid4(),
                organization_id=organization_id,
                created_by_user_id=created_by_user_id,
                title=title.strip(),
                description=description,
                language=language,
                enable_speaker_diarization=enable_speaker_diarization,
                enable_punctuation=enable_punctuation,
                enable_timestamps=enable_timestamps,
                audio_stream_url=audio_stream_url,
                audio_file_name=audio_file_name,
                created_at=utc_now(),
            )
            self.repository.create(session, cancel_token)
            logger.info("Session %s created for organization %s", session.id, organization_id)
            return ServiceResult.ok(session, "Session created")

        return run_guarded(logger, "create session", _create)

    def get_session(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[TranscriptionSession]:
        def _get() -> ServiceResult[TranscriptionSession]:
            session = self.repository.get(session_id, organization_id, cancel_token)
            if session is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
            return ServiceResult.ok(session)

        return run_guarded(logger, f"get session {session_id}", _get)

    def update_session(
        self,
        session_id: UUID,
        organization_id: str,
        changes: Dict[str, Any],
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[TranscriptionSession]:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            return ServiceResult.fail(
                ErrorKind.VALIDATION_ERROR,
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
            )
        if "title" in changes and (changes["title"] is None or not str(changes["title"]).strip()):
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Title cannot be empty")

        def _update() -> ServiceResult[TranscriptionSession]:
            session = self.repository.get(session_id, organization_id, cancel_token)
            if session is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
            try:
                session.ensure_configurable()
            except SessionGuardError as exc:
                return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, str(exc))

            for name, value in changes.items():
                setattr(session, name, value)
            session.updated_at = utc_now()
            self.repository.update(session, cancel_token)
            return ServiceResult.ok(session, "Session updated")

        return run_guarded(logger, f"update session {session_id}", _update)

    def delete_session(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[bool]:
        def _delete() -> ServiceResult[bool]:
            session = self.repository.get(session_id, organization_id, cancel_token)
            if session is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
            try:
                session.ensure_deletable()
            except SessionGuardError as exc:
                return ServiceResult.fail(ErrorKind.CONFLICT, str(exc))

            self.repository.delete(session_id, organization_id, cancel_token)
            logger.info("Session %s deleted", session_id)
            return ServiceResult.ok(True, "Session deleted")

        return run_guarded(logger, f"delete session {session_id}", _delete)

    def transition(
        self,
        session_id: UUID,
        organization_id: str,
        action: SessionAction,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[TranscriptionSession]:
        """Apply a state-machine action and persist the result.

        Illegal transitions are CONFLICT, never INTERNAL_ERROR.
        """

        def _transition() -> ServiceResult[TranscriptionSession]:
            session = self.repository.get(session_id, organization_id, cancel_token)
            if session is None:
                return ServiceResult.fail(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)

            previous = session.status
            try:
                session.apply_action(action)
            except InvalidTransitionError as exc:
                return ServiceResult.fail(ErrorKind.CONFLICT, str(exc))

            self.repository.update(session, cancel_token)
            logger.info(
                "Session %s moved %s -> %s (%s)",
                session_id,
                previous.value,
                session.status.value,
                action.value,
            )
            return ServiceResult.ok(session, f"Session {action.value} succeeded")

        return run_guarded(logger, f"{action.value} session {session_id}", _transition)

    def start_session(self, session_id: UUID, organization_id: str, cancel_token: Optional[CancellationToken] = None):
        return self.transition(session_id, organization_id, SessionAction.START, cancel_token)

    def pause_session(self, session_id: UUID, organization_id: str, cancel_token: Optional[CancellationToken] = None):
        return self.transition(session_id, organization_id, SessionAction.PAUSE, cancel_token)

    def resume_session(self, session_id: UUID, organization_id: str, cancel_token: Optional[CancellationToken] = None):
        return self.transition(session_id, organization_id, SessionAction.RESUME, cancel_token)

    def complete_session(self, session_id: UUID, organization_id: str, cancel_token: Optional[CancellationToken] = None):
        return self.transition(session_id, organization_id, SessionAction.COMPLETE, cancel_token)

    def cancel_session(self, session_id: UUID, organization_id: str, cancel_token: Optional[CancellationToken] = None):
        return self.transition(session_id, organization_id, SessionAction.CANCEL, cancel_token)

    def list_active_sessions(
        self,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[List[TranscriptionSession]]:
        def _list() -> ServiceResult[List[TranscriptionSession]]:
            # list_active spans every organization; scope it here.
            sessions = [
                s for s in self.repository.list_active(cancel_token) if s.organization_id == organization_id
            ]
            sessions.sort(key=lambda s: s.created_at, reverse=True)
            return ServiceResult.ok(sessions)

        return run_guarded(logger, "list active sessions", _list)

    def list_recent_sessions(
        self,
        organization_id: str,
        count: int = 10,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[List[TranscriptionSession]]:
        if count < 1 or count > MAX_RECENT_SESSIONS:
            return ServiceResult.fail(
                ErrorKind.VALIDATION_ERROR, f"Count must be between 1 and {MAX_RECENT_SESSIONS}"
            )

        def _recent() -> ServiceResult[List[TranscriptionSession]]:
            sessions = self.repository.list_for_organization(organization_id, cancel_token)
            sessions.sort(key=lambda s: s.created_at, reverse=True)
            return ServiceResult.ok(sessions[:count])

        return run_guarded(logger, "list recent sessions", _recent)

    def get_active_session_count(
        self,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[int]:
        def _count() -> ServiceResult[int]:
            sessions = self.repository.list_for_organization(organization_id, cancel_token)
            return ServiceResult.ok(sum(1 for s in sessions if s.is_active))

        return run_guarded(logger, "count active sessions", _count)

    def get_total_session_duration(
        self,
        organization_id: str,
        from_date: Optional[datetime] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[float]:
        """Seconds spent IN_PROGRESS across the organization's sessions.

        ``from_date`` limits the sum to sessions created at or after it.
        """

        def _total() -> ServiceResult[float]:
            now = utc_now()
            total = 0.0
            for session in self.repository.list_for_organization(organization_id, cancel_token):
                if from_date is not None and session.created_at < from_date:
                    continue
                total += session.in_progress_seconds(now)
            return ServiceResult.ok(round(total, 3))

        return run_guarded(logger, "sum session duration", _total)


session_service = TranscriptionSessionService()
