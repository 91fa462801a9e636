from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from src.sermon_api.cancellation import CancellationToken
from src.sermon_api.config import Settings, settings as default_settings
from src.sermon_api.domain.models.audio_stream import IngestionCacheEntry, StreamConfiguration, StreamStatus
from src.sermon_api.domain.models.transcription_session import TranscriptionSession
from src.sermon_api.domain.results import ErrorKind, ServiceResult
from src.sermon_api.domain.session_state_machine import SessionAction, SessionStatus
from src.sermon_api.infra.cache.ingestion_cache import IngestionCache, IngestionCacheConflict, ingestion_cache
from src.sermon_api.services.audio_stream.ingestion import (
    SESSION_NOT_ACTIVE,
    ChunkIngestionPipeline,
    ingestion_pipeline,
)
from src.sermon_api.services.common import run_guarded
from src.sermon_api.services.sessions.service import TranscriptionSessionService, session_service

logger = logging.getLogger(__name__)

STREAM_ALREADY_ACTIVE = "Audio stream is already active for this session"
MIN_SAMPLE_RATE = 8000
MAX_SAMPLE_RATE = 48000


class SessionLifecycleService:
    """Keeps the ingestion cache consistent with authoritative session status.

    Status transitions go through here so that leaving IN_PROGRESS promptly
    closes the stream instead of waiting for the cache entry to expire.
    """

    def __init__(
        self,
        *,
        cache: Optional[IngestionCache] = None,
        sessions: Optional[TranscriptionSessionService] = None,
        config: Optional[Settings] = None,
        pipeline: Optional[ChunkIngestionPipeline] = None,
        api_prefix: str = "/api/v1",
    ) -> None:
        self._cache = cache if cache is not None else ingestion_cache
        self._sessions = sessions if sessions is not None else session_service
        self._config = config if config is not None else default_settings
        self._pipeline = pipeline if pipeline is not None else ingestion_pipeline
        self._api_prefix = api_prefix

    def close_stream(self, session_id: UUID) -> Optional[IngestionCacheEntry]:
        """Drop the cache entry and the provider's per-session state."""

        closed = self._cache.close(session_id)
        self.release(session_id)
        return closed

    def release(self, session_id: UUID) -> None:
        """Drop provider state for a stream the cache no longer holds."""

        self._pipeline.release(session_id)

    def _describe(
        self,
        session: TranscriptionSession,
        entry: Optional[IngestionCacheEntry],
    ) -> StreamStatus:
        is_active = entry is not None and entry.is_active
        return StreamStatus(
            session_id=session.id,
            is_active=is_active,
            status=session.status,
            can_receive_audio=session.status == SessionStatus.IN_PROGRESS and is_active,
            last_activity_at=(entry.last_activity_at if entry else None) or session.updated_at or session.created_at,
            total_chunks_received=entry.total_chunks_received if entry else 0,
            total_bytes_received=entry.total_bytes_received if entry else 0,
            max_chunk_size_bytes=self._config.max_chunk_size_bytes,
            supported_formats=list(self._config.supported_audio_formats),
            websocket_url=f"{self._api_prefix}/audio/{session.id}/ws",
            upload_url=f"{self._api_prefix}/audio/{session.id}/stream",
        )

    def validate_stream_options(self, audio_format: str, sample_rate: int, channels: int) -> Optional[str]:
        supported = [f.lower() for f in self._config.supported_audio_formats]
        if not audio_format or audio_format.lower() not in supported:
            return f"Audio format must be one of: {', '.join(supported)}"
        if not MIN_SAMPLE_RATE <= sample_rate <= MAX_SAMPLE_RATE:
            return f"Sample rate must be between {MIN_SAMPLE_RATE} and {MAX_SAMPLE_RATE} Hz"
        if self._config.supported_sample_rates and sample_rate not in self._config.supported_sample_rates:
            rates = ", ".join(str(rate) for rate in self._config.supported_sample_rates)
            return f"Sample rate must be one of: {rates}"
        if channels not in (1, 2):
            return "Channels must be 1 (mono) or 2 (stereo)"
        return None

    def start_stream(
        self,
        session_id: UUID,
        organization_id: str,
        user_id: Optional[str],
        audio_format: str = "wav",
        sample_rate: int = 16000,
        channels: int = 1,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[StreamStatus]:
        invalid = self.validate_stream_options(audio_format, sample_rate, channels)
        if invalid is not None:
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, invalid)

        def _start() -> ServiceResult[StreamStatus]:
            fetched = self._sessions.get_session(session_id, organization_id, cancel_token)
            if not fetched.success:
                return fetched.cast_failure()
            session = fetched.data

            if session.status != SessionStatus.IN_PROGRESS:
                return ServiceResult.fail(ErrorKind.CONFLICT, SESSION_NOT_ACTIVE)

            try:
                entry = self._cache.open(
                    session_id,
                    organization_id,
                    user_id,
                    audio_format.lower(),
                    sample_rate,
                    channels,
                    session_status=session.status,
                    session_created_at=session.created_at,
                    session_updated_at=session.updated_at,
                )
            except IngestionCacheConflict:
                return ServiceResult.fail(ErrorKind.CONFLICT, STREAM_ALREADY_ACTIVE)

            logger.info("Audio stream started for session %s by user %s", session_id, user_id)
            return ServiceResult.ok(self._describe(session, entry), "Audio stream started successfully")

        return run_guarded(logger, f"start audio stream for session {session_id}", _start)

    def stop_stream(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[StreamStatus]:
        """Close the stream if open. Calling it again is a successful no-op.

        The close does not depend on the session's status. If the session row
        is gone, an entry owned by the caller's organization is still closed
        and NOT_FOUND is returned.
        """

        def _stop() -> ServiceResult[StreamStatus]:
            fetched = self._sessions.get_session(session_id, organization_id, cancel_token)
            if not fetched.success:
                if fetched.error_kind == ErrorKind.NOT_FOUND:
                    orphan = self._cache.peek(session_id)
                    if orphan is not None and orphan.organization_id == organization_id:
                        self.close_stream(session_id)
                        logger.info("Audio stream for deleted session %s closed", session_id)
                return fetched.cast_failure()

            closed = self.close_stream(session_id)
            if closed is not None:
                logger.info(
                    "Audio stream stopped for session %s (%d chunks, %d bytes)",
                    session_id,
                    closed.total_chunks_received,
                    closed.total_bytes_received,
                )
            return ServiceResult.ok(self._describe(fetched.data, None), "Audio stream stopped successfully")

        return run_guarded(logger, f"stop audio stream for session {session_id}", _stop)

    def refresh_session_data(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[StreamStatus]:
        """Re-read the authoritative status into the cache entry.

        If the session has left IN_PROGRESS the entry is closed right away.
        """

        def _refresh() -> ServiceResult[StreamStatus]:
            fetched = self._sessions.get_session(session_id, organization_id, cancel_token)
            if not fetched.success:
                return fetched.cast_failure()
            session = fetched.data

            entry = self._cache.refresh_from_authoritative(session_id, session.status, session.updated_at)
            if entry is not None and session.status != SessionStatus.IN_PROGRESS:
                # refresh_from_authoritative already dropped it; make sure a
                # racing re-open is closed too.
                self.close_stream(session_id)
                logger.info(
                    "Audio stream stopped for session %s due to session status change to %s",
                    session_id,
                    session.status.value,
                )
                entry = None
            return ServiceResult.ok(self._describe(session, entry), "Session data refreshed")

        return run_guarded(logger, f"refresh session data for session {session_id}", _refresh)

    def get_stream_status(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[StreamStatus]:
        def _status() -> ServiceResult[StreamStatus]:
            fetched = self._sessions.get_session(session_id, organization_id, cancel_token)
            if not fetched.success:
                return fetched.cast_failure()

            entry = self._cache.peek(session_id)
            if entry is not None and entry.organization_id != organization_id:
                entry = None
            return ServiceResult.ok(self._describe(fetched.data, entry), "Audio stream status retrieved successfully")

        return run_guarded(logger, f"get audio stream status for session {session_id}", _status)

    def transition_session(
        self,
        session_id: UUID,
        organization_id: str,
        action: SessionAction,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[TranscriptionSession]:
        result = self._sessions.transition(session_id, organization_id, action, cancel_token)
        if not result.success:
            return result

        session = result.data
        if session.status != SessionStatus.IN_PROGRESS:
            closed = self.close_stream(session_id)
            if closed is not None:
                logger.info(
                    "Audio stream closed for session %s after %s (%d chunks, %d bytes)",
                    session_id,
                    action.value,
                    closed.total_chunks_received,
                    closed.total_bytes_received,
                )
        return result

    def get_stream_configuration(self, organization_id: str) -> ServiceResult[StreamConfiguration]:
        if not organization_id:
            return ServiceResult.fail(ErrorKind.NOT_FOUND, "Organization not found")

        configuration = StreamConfiguration(
            max_chunk_size_bytes=self._config.max_chunk_size_bytes,
            max_session_duration_seconds=int(self._cache.max_session_duration.total_seconds()),
            sliding_inactivity_seconds=int(self._cache.sliding_window.total_seconds()),
            supported_formats=list(self._config.supported_audio_formats),
            supported_sample_rates=list(self._config.supported_sample_rates),
        )
        return ServiceResult.ok(configuration)

    def refresh_active_sessions(self) -> List[UUID]:
        """Reconcile long-lived streams against the session store.

        Called by the background sweeper. Returns the ids that were refreshed;
        failures are logged and skipped so one bad session does not stall the
        rest.
        """

        now = self._cache.now()
        refreshed: List[UUID] = []
        for entry in self._cache.active_entries():
            age = (now - entry.last_refreshed_at).total_seconds()
            if age < self._config.session_refresh_interval_seconds:
                continue
            result = self.refresh_session_data(entry.session_id, entry.organization_id)
            if result.success:
                refreshed.append(entry.session_id)
            elif result.error_kind == ErrorKind.NOT_FOUND:
                # The session row is gone; nothing can legitimately stream to it.
                self.close_stream(entry.session_id)
                logger.info("Audio stream for deleted session %s closed", entry.session_id)
            else:
                logger.warning("Periodic refresh failed for session %s: %s", entry.session_id, result.message)
        return refreshed


lifecycle_service = SessionLifecycleService()
