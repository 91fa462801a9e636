from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from src.sermon_api.cancellation import CancellationToken
from src.sermon_api.config import Settings, settings as default_settings
from src.sermon_api.domain.clock import utc_now
from src.sermon_api.domain.models.audio_stream import ChunkReceipt, IngestionCacheEntry
from src.sermon_api.domain.results import ErrorKind, ServiceResult
from src.sermon_api.domain.session_state_machine import SessionStatus
from src.sermon_api.infra.cache.ingestion_cache import (
    IngestionCache,
    IngestionCacheConflict,
    IngestionCacheMiss,
    ingestion_cache,
)
from src.sermon_api.services.common import run_guarded
from src.sermon_api.services.sessions.service import TranscriptionSessionService, session_service
from src.sermon_api.services.transcription.providers import (
    TranscriptionProvider,
    get_transcription_provider_from_env,
)

logger = logging.getLogger(__name__)

SESSION_NOT_ACTIVE = "Session is not active and cannot receive audio"
ACCESS_DENIED = "Session belongs to a different organization"


class ChunkIngestionPipeline:
    """Admission and accounting for incoming audio chunks.

    Each chunk is checked against the ingestion cache, not the session store;
    the store is only consulted to rebuild a missing cache entry. Chunk
    ordering is not enforced: duplicates and out-of-order indices are
    accepted, and only the last observed index and the running totals are
    kept. Reassembly is the transcription provider's job.
    """

    def __init__(
        self,
        *,
        cache: Optional[IngestionCache] = None,
        sessions: Optional[TranscriptionSessionService] = None,
        provider: Optional[TranscriptionProvider] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self._cache = cache if cache is not None else ingestion_cache
        self._sessions = sessions if sessions is not None else session_service
        self._provider = provider
        self._config = config if config is not None else default_settings

    @property
    def provider(self) -> TranscriptionProvider:
        if self._provider is None:
            self._provider = get_transcription_provider_from_env()
        return self._provider

    def process_chunk(
        self,
        session_id: UUID,
        organization_id: str,
        data: bytes,
        chunk_index: int,
        is_final_chunk: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServiceResult[ChunkReceipt]:
        def _process() -> ServiceResult[ChunkReceipt]:
            entry = self._cache.touch(session_id)
            if entry is None:
                reconciled = self._reconcile(session_id, organization_id, cancel_token)
                if not reconciled.success:
                    return reconciled.cast_failure()
                entry = reconciled.data

            # Re-check even on a hit: a stale entry must not leak across tenants.
            if entry.organization_id != organization_id:
                logger.warning(
                    "Chunk for session %s rejected: organization %s does not own it",
                    session_id,
                    organization_id,
                )
                return ServiceResult.fail(ErrorKind.FORBIDDEN, ACCESS_DENIED)

            if entry.session_status != SessionStatus.IN_PROGRESS:
                return ServiceResult.fail(ErrorKind.CONFLICT, SESSION_NOT_ACTIVE)

            invalid = self._validate_payload(data, chunk_index)
            if invalid is not None:
                return invalid

            size = len(data)
            try:
                self._cache.record_chunk(session_id, size, chunk_index)
            except IngestionCacheMiss:
                # Evicted between the touch and the record (stop, refresh or
                # expiry). Authoritative state decides whether to go on.
                reconciled = self._reconcile(session_id, organization_id, cancel_token)
                if not reconciled.success:
                    return reconciled.cast_failure()
                try:
                    self._cache.record_chunk(session_id, size, chunk_index)
                except IngestionCacheMiss:
                    # Closed again while rebuilding; treat it as a stopped stream.
                    logger.info("Chunk %d for session %s dropped: stream closed concurrently", chunk_index, session_id)
                    return ServiceResult.fail(ErrorKind.CONFLICT, SESSION_NOT_ACTIVE)

            logger.debug(
                "Audio chunk %d accepted for session %s (%d bytes, final=%s)",
                chunk_index,
                session_id,
                size,
                is_final_chunk,
            )
            receipt = ChunkReceipt(
                chunk_index=chunk_index,
                accepted=True,
                size_bytes=size,
                processed_at=utc_now(),
                is_final_chunk=is_final_chunk,
            )
            return ServiceResult.ok(receipt, "Audio chunk processed successfully")

        return run_guarded(logger, f"process audio chunk {chunk_index} for session {session_id}", _process)

    def _validate_payload(self, data: bytes, chunk_index: int) -> Optional[ServiceResult[ChunkReceipt]]:
        if chunk_index < 0:
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "Chunk index must be non-negative")
        if len(data) == 0:
            return ServiceResult.fail(ErrorKind.VALIDATION_ERROR, "No audio data provided")
        limit = self._config.max_chunk_size_bytes
        if len(data) > limit:
            return ServiceResult.fail(
                ErrorKind.VALIDATION_ERROR,
                f"Audio chunk too large. Maximum size is {limit} bytes",
            )
        return None

    def _reconcile(
        self,
        session_id: UUID,
        organization_id: str,
        cancel_token: Optional[CancellationToken],
    ) -> ServiceResult[IngestionCacheEntry]:
        """Rebuild a missing cache entry from the authoritative session."""

        fetched = self._sessions.get_session(session_id, organization_id, cancel_token)
        if not fetched.success:
            return fetched.cast_failure()

        session = fetched.data
        if session.status != SessionStatus.IN_PROGRESS:
            return ServiceResult.fail(ErrorKind.CONFLICT, SESSION_NOT_ACTIVE)

        if self._config.strict_format_recovery:
            return ServiceResult.fail(
                ErrorKind.VALIDATION_ERROR,
                "Audio stream metadata was lost; restart the stream to declare the audio format",
            )

        try:
            entry = self._cache.open(
                session_id,
                organization_id,
                None,
                self._config.recovery_audio_format,
                self._config.recovery_sample_rate,
                self._config.recovery_channels,
                session_status=session.status,
                session_created_at=session.created_at,
                session_updated_at=session.updated_at,
                reconstructed=True,
            )
        except IngestionCacheConflict:
            # A concurrent chunk rebuilt the entry first; use theirs.
            entry = self._cache.touch(session_id)
            if entry is None:
                return ServiceResult.fail(ErrorKind.CONFLICT, SESSION_NOT_ACTIVE)
            return ServiceResult.ok(entry)

        logger.warning(
            "Ingestion entry for session %s rebuilt after cache miss; audio format defaulted to %s/%dHz/%dch",
            session_id,
            entry.audio_format,
            entry.sample_rate,
            entry.channels,
        )
        return ServiceResult.ok(entry)

    def forward_chunk(
        self,
        session_id: UUID,
        data: bytes,
        chunk_index: int,
        is_final_chunk: bool = False,
    ) -> bool:
        """Hand an accepted chunk to the transcription provider.

        Fire-and-forget: the chunk has already been accepted, so provider
        failures are logged and reported through the return value only.
        """

        entry = self._cache.peek(session_id)
        audio_format = entry.audio_format if entry else self._config.recovery_audio_format
        sample_rate = entry.sample_rate if entry else self._config.recovery_sample_rate
        channels = entry.channels if entry else self._config.recovery_channels

        try:
            self.provider.accept_chunk(
                session_id,
                data,
                chunk_index=chunk_index,
                is_final_chunk=is_final_chunk,
                audio_format=audio_format,
                sample_rate=sample_rate,
                channels=channels,
            )
        except Exception:
            logger.exception("Transcription provider rejected chunk %d for session %s", chunk_index, session_id)
            return False
        return True

    def release(self, session_id: UUID) -> None:
        """Tell the provider the stream is over so it can drop per-session state."""

        try:
            self.provider.release(session_id)
        except Exception:
            logger.exception("Transcription provider failed to release session %s", session_id)


ingestion_pipeline = ChunkIngestionPipeline()
