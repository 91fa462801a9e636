from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.sermon_api.domain.session_state_machine import SessionStatus


class IngestionCacheEntry(BaseModel):
    """Ephemeral per-session ingestion accounting held by the ingestion cache.

    This is a rebuildable projection of a TranscriptionSession. The
    denormalized ``session_status`` may be stale; the byte and chunk counters
    exist nowhere else.
    """

    session_id: UUID
    organization_id: str
    # Unknown when the entry was rebuilt after a cache miss.
    user_id: Optional[str] = None

    audio_format: str
    sample_rate: int
    channels: int
    is_active: bool = True
    # True when rebuilt from the session store with guessed format defaults.
    reconstructed: bool = False

    started_at: datetime
    stopped_at: Optional[datetime] = None
    last_activity_at: datetime
    last_refreshed_at: datetime

    total_chunks_received: int = 0
    total_bytes_received: int = 0
    last_chunk_index: Optional[int] = None

    session_status: SessionStatus
    session_created_at: datetime
    session_updated_at: Optional[datetime] = None

    expires_at_absolute: datetime
    expires_at_sliding: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at_absolute or now >= self.expires_at_sliding


class ChunkReceipt(BaseModel):
    chunk_index: int
    accepted: bool = True
    size_bytes: int
    processed_at: datetime
    is_final_chunk: bool = False


class StartStreamRequest(BaseModel):
    audio_format: str = "wav"
    sample_rate: int = 16000
    channels: int = 1
    use_websocket: bool = True


class StreamStatus(BaseModel):
    session_id: UUID
    is_active: bool
    # Authoritative session status at the time of the call.
    status: SessionStatus
    can_receive_audio: bool
    last_activity_at: Optional[datetime] = None
    total_chunks_received: int = 0
    total_bytes_received: int = 0
    max_chunk_size_bytes: int
    supported_formats: List[str] = Field(default_factory=list)
    supports_websocket: bool = True
    supports_chunked_upload: bool = True
    websocket_url: Optional[str] = None
    upload_url: Optional[str] = None


class StreamConfiguration(BaseModel):
    max_chunk_size_bytes: int
    max_session_duration_seconds: int
    sliding_inactivity_seconds: int
    supported_formats: List[str]
    supported_sample_rates: List[int]
    enable_real_time_transcription: bool = True
