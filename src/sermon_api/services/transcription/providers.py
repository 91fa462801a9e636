from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional, Protocol
from uuid import UUID

import httpx

from src.sermon_api.config import settings

logger = logging.getLogger(__name__)


class TranscriptionProvider(Protocol):
    """Protocol for downstream speech-to-text providers.

    The ingestion pipeline hands every accepted chunk to the provider and does
    not wait for, or depend on, any transcription result.
    """

    def accept_chunk(
        self,
        session_id: UUID,
        data: bytes,
        *,
        chunk_index: int,
        is_final_chunk: bool,
        audio_format: str,
        sample_rate: int,
        channels: int,
    ) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def release(self, session_id: UUID) -> None:  # pragma: no cover - interface
        """Called once the session's stream is closed."""
        raise NotImplementedError


@dataclass
class ProviderSessionStats:
    chunks: int = 0
    bytes: int = 0
    finalized: bool = False
    audio_format: Optional[str] = None


class DemoTranscriptionProvider:
    """Very simple demo provider.

    In a real deployment this would forward audio to a streaming
    speech-recognition service. For now it only keeps per-session byte
    accounting so tests remain fast and offline.
    """

    def __init__(self) -> None:
        self._stats: Dict[UUID, ProviderSessionStats] = {}
        self._lock = Lock()

    def accept_chunk(
        self,
        session_id: UUID,
        data: bytes,
        *,
        chunk_index: int,
        is_final_chunk: bool,
        audio_format: str,
        sample_rate: int,
        channels: int,
    ) -> None:
        with self._lock:
            stats = self._stats.setdefault(session_id, ProviderSessionStats())
            stats.chunks += 1
            stats.bytes += len(data)
            stats.audio_format = audio_format
            stats.finalized = stats.finalized or is_final_chunk

    def release(self, session_id: UUID) -> None:
        with self._lock:
            self._stats.pop(session_id, None)

    def stats_for(self, session_id: UUID) -> Optional[ProviderSessionStats]:
        with self._lock:
            return self._stats.get(session_id)

    def tracked_sessions(self) -> int:
        with self._lock:
            return len(self._stats)


class HttpTranscriptionProvider:
    """Provider that POSTs raw chunks to an HTTP ingestion endpoint.

    Session and format metadata travel as headers; the body is the raw audio.
    Set TRANSCRIPTION_PROVIDER=http and TRANSCRIPTION_PROVIDER_URL to use it.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        url = base_url or settings.transcription_provider_url
        if not url:
            raise RuntimeError("TRANSCRIPTION_PROVIDER_URL must be set to use HttpTranscriptionProvider")
        self._client = client or httpx.Client(
            base_url=url,
            timeout=timeout if timeout is not None else settings.transcription_provider_timeout,
        )

    def accept_chunk(
        self,
        session_id: UUID,
        data: bytes,
        *,
        chunk_index: int,
        is_final_chunk: bool,
        audio_format: str,
        sample_rate: int,
        channels: int,
    ) -> None:
        response = self._client.post(
            f"/sessions/{session_id}/chunks",
            content=data,
            headers={
                "Content-Type": "application/octet-stream",
                "X-Chunk-Index": str(chunk_index),
                "X-Final-Chunk": "true" if is_final_chunk else "false",
                "X-Audio-Format": audio_format,
                "X-Sample-Rate": str(sample_rate),
                "X-Channels": str(channels),
            },
        )
        response.raise_for_status()

    def release(self, session_id: UUID) -> None:
        # Stateless on this side; the endpoint finalizes on X-Final-Chunk.
        return None

    def close(self) -> None:
        self._client.close()


demo_transcription_provider = DemoTranscriptionProvider()


def get_transcription_provider_from_env() -> TranscriptionProvider:
    """Select a provider based on the TRANSCRIPTION_PROVIDER setting.

    - TRANSCRIPTION_PROVIDER=http → HttpTranscriptionProvider
    - Anything else (or unset) → DemoTranscriptionProvider
    """

    name = settings.transcription_provider.lower()
    if name == "http":
        return HttpTranscriptionProvider()
    return demo_transcription_provider
