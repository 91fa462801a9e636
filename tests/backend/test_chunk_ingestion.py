from datetime import timedelta
from uuid import uuid4

import pytest

from src.sermon_api.cancellation import CancellationToken
from src.sermon_api.config import Settings
from src.sermon_api.domain.results import ErrorKind
from src.sermon_api.domain.session_state_machine import SessionStatus
from src.sermon_api.infra.cache.ingestion_cache import IngestionCache, IngestionCacheMiss, ingestion_cache
from src.sermon_api.infra.db.inmemory import InMemoryTranscriptionSessionRepository
from src.sermon_api.services.audio_stream.ingestion import ChunkIngestionPipeline
from src.sermon_api.services.audio_stream.lifecycle import SessionLifecycleService
from src.sermon_api.services.sessions.service import TranscriptionSessionService
from src.sermon_api.services.transcription.providers import DemoTranscriptionProvider

MAX_CHUNK = 1024


class ExplodingProvider:
    def accept_chunk(self, session_id, data, **kwargs):
        raise RuntimeError("provider offline")

    def release(self, session_id):
        raise RuntimeError("provider offline")


@pytest.fixture
def cache(clock):
    return IngestionCache(max_session_duration=timedelta(hours=4), sliding_window=timedelta(minutes=30), clock=clock)


@pytest.fixture
def sessions():
    return TranscriptionSessionService(InMemoryTranscriptionSessionRepository())


@pytest.fixture
def config():
    return Settings(max_chunk_size_bytes=MAX_CHUNK)


@pytest.fixture
def provider():
    return DemoTranscriptionProvider()


@pytest.fixture
def pipeline(cache, sessions, config, provider):
    pipeline = ChunkIngestionPipeline(cache=cache, sessions=sessions, provider=provider, config=config)
    assert pipeline._cache is cache
    return pipeline


@pytest.fixture
def lifecycle(cache, sessions, config, pipeline):
    lifecycle = SessionLifecycleService(cache=cache, sessions=sessions, config=config, pipeline=pipeline)
    assert lifecycle._cache is cache
    return lifecycle


def _live_session(sessions, organization_id="org-a"):
    session = sessions.create_session(organization_id=organization_id, title="Sunday service").data
    sessions.start_session(session.id, organization_id)
    return session.id


def _streaming_session(sessions, lifecycle, organization_id="org-a", audio_format="mp3"):
    session_id = _live_session(sessions, organization_id)
    assert lifecycle.start_stream(session_id, organization_id, "user-1", audio_format, 44100, 2).success
    return session_id


def test_accepts_chunk_and_updates_counters(pipeline, sessions, lifecycle, cache):
    session_id = _streaming_session(sessions, lifecycle)

    first = pipeline.process_chunk(session_id, "org-a", b"\x00" * 100, 0)
    second = pipeline.process_chunk(session_id, "org-a", b"\x00" * 20, 1, is_final_chunk=True)

    assert first.success
    assert first.data.accepted
    assert first.data.size_bytes == 100
    assert second.data.is_final_chunk

    entry = cache.peek(session_id)
    assert entry.total_chunks_received == 2
    assert entry.total_bytes_received == 120
    assert entry.last_chunk_index == 1
    assert not entry.reconstructed


def test_chunk_size_boundaries(pipeline, sessions, lifecycle):
    session_id = _streaming_session(sessions, lifecycle)

    exact = pipeline.process_chunk(session_id, "org-a", b"x" * MAX_CHUNK, 0)
    over = pipeline.process_chunk(session_id, "org-a", b"x" * (MAX_CHUNK + 1), 1)
    empty = pipeline.process_chunk(session_id, "org-a", b"", 2)

    assert exact.success
    assert over.error_kind == ErrorKind.VALIDATION_ERROR
    assert "too large" in over.message
    assert empty.error_kind == ErrorKind.VALIDATION_ERROR


def test_negative_chunk_index_is_rejected(pipeline, sessions, lifecycle):
    session_id = _streaming_session(sessions, lifecycle)

    result = pipeline.process_chunk(session_id, "org-a", b"abc", -1)

    assert result.error_kind == ErrorKind.VALIDATION_ERROR


def test_out_of_order_and_duplicate_indices_are_accepted(pipeline, sessions, lifecycle, cache):
    session_id = _streaming_session(sessions, lifecycle)

    for index in (5, 2, 2, 9):
        assert pipeline.process_chunk(session_id, "org-a", b"ab", index).success

    entry = cache.peek(session_id)
    assert entry.total_chunks_received == 4
    assert entry.last_chunk_index == 9


def test_cache_miss_rebuilds_entry_with_defaults(pipeline, sessions, cache, caplog):
    session_id = _live_session(sessions)

    with caplog.at_level("WARNING"):
        result = pipeline.process_chunk(session_id, "org-a", b"audio", 0)

    assert result.success
    entry = cache.peek(session_id)
    assert entry.reconstructed
    assert entry.audio_format == "unknown"
    assert entry.sample_rate == 16000
    assert entry.channels == 1
    assert entry.user_id is None
    assert entry.total_chunks_received == 1
    assert "rebuilt" in caplog.text


def test_cache_miss_for_unknown_session_is_not_found(pipeline):
    result = pipeline.process_chunk(uuid4(), "org-a", b"audio", 0)

    assert result.error_kind == ErrorKind.NOT_FOUND


def test_cache_miss_for_paused_session_is_conflict(pipeline, sessions, cache):
    session_id = _live_session(sessions)
    sessions.pause_session(session_id, "org-a")

    result = pipeline.process_chunk(session_id, "org-a", b"audio", 0)

    assert result.error_kind == ErrorKind.CONFLICT
    assert result.message == "Session is not active and cannot receive audio"
    assert session_id not in cache


def test_cache_miss_for_other_organization_is_not_found(pipeline, sessions):
    session_id = _live_session(sessions, "org-a")

    result = pipeline.process_chunk(session_id, "org-b", b"audio", 0)

    assert result.error_kind == ErrorKind.NOT_FOUND


def test_cache_hit_for_other_organization_is_forbidden(pipeline, sessions, lifecycle, cache):
    session_id = _streaming_session(sessions, lifecycle, "org-a")

    result = pipeline.process_chunk(session_id, "org-b", b"audio", 0)

    assert result.error_kind == ErrorKind.FORBIDDEN
    assert cache.peek(session_id).total_chunks_received == 0


def test_stale_cached_status_is_rechecked(pipeline, sessions, lifecycle, cache):
    session_id = _streaming_session(sessions, lifecycle)
    # Paused behind the lifecycle service's back; only a refresh updates the cache.
    sessions.pause_session(session_id, "org-a")
    assert pipeline.process_chunk(session_id, "org-a", b"audio", 0).success

    lifecycle.refresh_session_data(session_id, "org-a")

    result = pipeline.process_chunk(session_id, "org-a", b"audio", 1)
    assert result.error_kind == ErrorKind.CONFLICT


def test_expired_entry_then_resume_reconstructs_with_defaults(pipeline, sessions, lifecycle, cache, clock):
    session_id = _streaming_session(sessions, lifecycle, audio_format="flac")
    assert pipeline.process_chunk(session_id, "org-a", b"x" * 10, 0).success

    clock.advance(minutes=31)
    result = pipeline.process_chunk(session_id, "org-a", b"y" * 5, 1)

    assert result.success
    entry = cache.peek(session_id)
    assert entry.reconstructed
    # Declared format was lost with the evicted entry; counters restart.
    assert entry.audio_format == "unknown"
    assert entry.total_chunks_received == 1
    assert entry.total_bytes_received == 5


def test_strict_recovery_refuses_to_guess_format(cache, sessions, provider):
    strict = ChunkIngestionPipeline(
        cache=cache,
        sessions=sessions,
        provider=provider,
        config=Settings(strict_format_recovery=True),
    )
    session_id = _live_session(sessions)

    result = strict.process_chunk(session_id, "org-a", b"audio", 0)

    assert result.error_kind == ErrorKind.VALIDATION_ERROR
    assert session_id not in cache


def test_cancelled_token_yields_cancelled(pipeline, sessions):
    session_id = _live_session(sessions)
    token = CancellationToken()
    token.cancel()

    result = pipeline.process_chunk(session_id, "org-a", b"audio", 0, cancel_token=token)

    assert result.error_kind == ErrorKind.CANCELLED


def test_store_failure_is_internal_error(cache, provider, config):
    class BrokenRepository(InMemoryTranscriptionSessionRepository):
        def get(self, session_id, organization_id, cancel_token=None):
            raise ConnectionError("database unavailable")

    broken = ChunkIngestionPipeline(
        cache=cache,
        sessions=TranscriptionSessionService(BrokenRepository()),
        provider=provider,
        config=config,
    )

    result = broken.process_chunk(uuid4(), "org-a", b"audio", 0)

    assert result.error_kind == ErrorKind.INTERNAL_ERROR
    assert "database unavailable" in result.message


def test_forward_chunk_passes_cached_format_to_provider(pipeline, sessions, lifecycle, provider):
    session_id = _streaming_session(sessions, lifecycle, audio_format="mp3")

    assert pipeline.forward_chunk(session_id, b"abcd", 0)
    assert pipeline.forward_chunk(session_id, b"ef", 1, is_final_chunk=True)

    stats = provider.stats_for(session_id)
    assert stats.chunks == 2
    assert stats.bytes == 6
    assert stats.audio_format == "mp3"
    assert stats.finalized


def test_forward_chunk_swallows_provider_failure(cache, sessions, lifecycle, config, caplog):
    session_id = _streaming_session(sessions, lifecycle)
    pipeline = ChunkIngestionPipeline(cache=cache, sessions=sessions, provider=ExplodingProvider(), config=config)

    assert pipeline.process_chunk(session_id, "org-a", b"audio", 0).success
    with caplog.at_level("ERROR"):
        assert pipeline.forward_chunk(session_id, b"audio", 0) is False
    assert "provider offline" in caplog.text
    assert cache.peek(session_id).session_status == SessionStatus.IN_PROGRESS


def test_empty_injected_cache_is_used(sessions, provider, config, clock):
    empty = IngestionCache(clock=clock)
    assert len(empty) == 0

    pipeline = ChunkIngestionPipeline(cache=empty, sessions=sessions, provider=provider, config=config)
    session_id = _live_session(sessions)

    assert pipeline.process_chunk(session_id, "org-a", b"audio", 0).success
    assert empty.peek(session_id).total_chunks_received == 1
    assert session_id not in ingestion_cache


def test_stream_closed_again_during_rebuild_is_conflict(sessions, provider, config, clock):
    class ClosingCache(IngestionCache):
        """Every record finds the entry already gone, as if a stop raced each chunk."""

        def record_chunk(self, session_id, byte_count, chunk_index):
            self.close(session_id)
            raise IngestionCacheMiss(session_id)

    racing = ClosingCache(clock=clock)
    pipeline = ChunkIngestionPipeline(cache=racing, sessions=sessions, provider=provider, config=config)
    lifecycle = SessionLifecycleService(cache=racing, sessions=sessions, config=config, pipeline=pipeline)
    session_id = _streaming_session(sessions, lifecycle)

    result = pipeline.process_chunk(session_id, "org-a", b"audio", 0)

    assert result.error_kind == ErrorKind.CONFLICT
    assert result.message == "Session is not active and cannot receive audio"


def test_release_drops_provider_state(pipeline, sessions, lifecycle, provider):
    session_id = _streaming_session(sessions, lifecycle)
    pipeline.forward_chunk(session_id, b"abcd", 0, is_final_chunk=True)
    assert provider.stats_for(session_id) is not None

    pipeline.release(session_id)

    assert provider.stats_for(session_id) is None
    assert provider.tracked_sessions() == 0


def test_release_logs_provider_failure(cache, sessions, config, caplog):
    pipeline = ChunkIngestionPipeline(cache=cache, sessions=sessions, provider=ExplodingProvider(), config=config)

    with caplog.at_level("ERROR"):
        pipeline.release(uuid4())

    assert "failed to release" in caplog.text
