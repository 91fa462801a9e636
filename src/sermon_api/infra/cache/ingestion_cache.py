"""Process-wide ingestion cache for live audio streams.

Maps a session id to its :class:`IngestionCacheEntry`. Entries expire on an
absolute cap measured from creation and on a sliding inactivity window,
whichever comes first. The cache never talks to the session store; callers
rebuild entries from the store after a miss.

Locking: one registry lock guards map membership, and one lock per session id
serialises mutation of that session's entry. A per-key lock is always taken
before the registry lock, never the other way round.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterator, List, Optional
from uuid import UUID

from src.sermon_api.config import settings
from src.sermon_api.domain.clock import Clock, utc_now
from src.sermon_api.domain.models.audio_stream import IngestionCacheEntry
from src.sermon_api.domain.session_state_machine import SessionStatus

logger = logging.getLogger(__name__)


class IngestionCacheConflict(Exception):
    """An active entry already exists for the session."""


class IngestionCacheMiss(KeyError):
    """The entry is absent or expired; the caller must reconcile."""


@dataclass
class _KeyLock:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class IngestionCache:
    def __init__(
        self,
        *,
        max_session_duration: Optional[timedelta] = None,
        sliding_window: Optional[timedelta] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._max_session_duration = max_session_duration or timedelta(seconds=settings.max_session_duration_seconds)
        self._sliding_window = sliding_window or timedelta(seconds=settings.sliding_inactivity_seconds)
        self._clock = clock
        self._entries: Dict[UUID, IngestionCacheEntry] = {}
        self._key_locks: Dict[UUID, _KeyLock] = {}
        self._registry_lock = Lock()

    @property
    def max_session_duration(self) -> timedelta:
        return self._max_session_duration

    @property
    def sliding_window(self) -> timedelta:
        return self._sliding_window

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _locked(self, session_id: UUID) -> Iterator[None]:
        with self._registry_lock:
            slot = self._key_locks.get(session_id)
            if slot is None:
                slot = self._key_locks[session_id] = _KeyLock()
            slot.holders += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._registry_lock:
                slot.holders -= 1
                if slot.holders == 0 and session_id not in self._entries:
                    del self._key_locks[session_id]

    def _get(self, session_id: UUID) -> Optional[IngestionCacheEntry]:
        with self._registry_lock:
            return self._entries.get(session_id)

    def _put(self, entry: IngestionCacheEntry) -> None:
        with self._registry_lock:
            self._entries[entry.session_id] = entry

    def _pop(self, session_id: UUID) -> Optional[IngestionCacheEntry]:
        with self._registry_lock:
            return self._entries.pop(session_id, None)

    def _live(self, session_id: UUID, now: datetime) -> Optional[IngestionCacheEntry]:
        """Return the stored entry, evicting it first if it has expired.

        Must be called with the session's key lock held.
        """

        entry = self._get(session_id)
        if entry is None:
            return None
        if entry.is_expired(now):
            self._evict(session_id, entry, now, reason="expired")
            return None
        return entry

    def _evict(self, session_id: UUID, entry: IngestionCacheEntry, now: datetime, *, reason: str) -> None:
        self._pop(session_id)
        entry.is_active = False
        entry.stopped_at = now
        logger.info(
            "Ingestion entry for session %s evicted (%s) after %d chunks / %d bytes",
            session_id,
            reason,
            entry.total_chunks_received,
            entry.total_bytes_received,
        )

    def _extend(self, entry: IngestionCacheEntry, now: datetime) -> None:
        entry.expires_at_sliding = now + self._sliding_window

    def open(
        self,
        session_id: UUID,
        organization_id: str,
        user_id: Optional[str],
        audio_format: str,
        sample_rate: int,
        channels: int,
        *,
        session_status: SessionStatus,
        session_created_at: datetime,
        session_updated_at: Optional[datetime] = None,
        reconstructed: bool = False,
    ) -> IngestionCacheEntry:
        """Create a fresh entry with zero counters.

        Raises IngestionCacheConflict if an active, unexpired entry exists.
        """

        with self._locked(session_id):
            now = self._clock()
            existing = self._live(session_id, now)
            if existing is not None and existing.is_active:
                raise IngestionCacheConflict(f"Audio stream is already active for session {session_id}")

            entry = IngestionCacheEntry(
                session_id=session_id,
                organization_id=organization_id,
                user_id=user_id,
                audio_format=audio_format,
                sample_rate=sample_rate,
                channels=channels,
                is_active=True,
                reconstructed=reconstructed,
                started_at=now,
                last_activity_at=now,
                last_refreshed_at=now,
                session_status=session_status,
                session_created_at=session_created_at,
                session_updated_at=session_updated_at,
                expires_at_absolute=now + self._max_session_duration,
                expires_at_sliding=now + self._sliding_window,
            )
            self._put(entry)
            return entry.model_copy()

    def touch(self, session_id: UUID) -> Optional[IngestionCacheEntry]:
        """Return a snapshot of the entry and extend its sliding expiry.

        None means a miss: the entry is absent, expired or inactive.
        """

        with self._locked(session_id):
            now = self._clock()
            entry = self._live(session_id, now)
            if entry is None or not entry.is_active:
                return None
            self._extend(entry, now)
            return entry.model_copy()

    def peek(self, session_id: UUID) -> Optional[IngestionCacheEntry]:
        """Like touch, without extending expiry. Used by status queries."""

        with self._locked(session_id):
            entry = self._live(session_id, self._clock())
            return entry.model_copy() if entry is not None else None

    def record_chunk(self, session_id: UUID, byte_count: int, chunk_index: int) -> IngestionCacheEntry:
        with self._locked(session_id):
            now = self._clock()
            entry = self._live(session_id, now)
            if entry is None or not entry.is_active:
                raise IngestionCacheMiss(str(session_id))

            entry.total_chunks_received += 1
            entry.total_bytes_received += byte_count
            entry.last_chunk_index = chunk_index
            entry.last_activity_at = now
            self._extend(entry, now)
            return entry.model_copy()

    def close(self, session_id: UUID) -> Optional[IngestionCacheEntry]:
        """Mark the entry inactive and drop it. No-op when absent."""

        with self._locked(session_id):
            entry = self._pop(session_id)
            if entry is None:
                return None
            entry.is_active = False
            entry.stopped_at = self._clock()
            return entry.model_copy()

    def refresh_from_authoritative(
        self,
        session_id: UUID,
        status: SessionStatus,
        updated_at: Optional[datetime],
    ) -> Optional[IngestionCacheEntry]:
        """Overwrite the denormalized session snapshot.

        When ``status`` is no longer IN_PROGRESS the entry is removed and the
        returned snapshot is inactive. Returns None when nothing was cached.
        """

        with self._locked(session_id):
            now = self._clock()
            entry = self._live(session_id, now)
            if entry is None:
                return None

            entry.session_status = status
            entry.session_updated_at = updated_at
            entry.last_refreshed_at = now
            if status != SessionStatus.IN_PROGRESS:
                self._evict(session_id, entry, now, reason=f"session {status.value}")
            return entry.model_copy()

    def sweep_expired(self) -> List[UUID]:
        """Evict every expired entry and return the evicted session ids."""

        with self._registry_lock:
            candidates = list(self._entries.keys())

        evicted: List[UUID] = []
        for session_id in candidates:
            with self._locked(session_id):
                now = self._clock()
                entry = self._get(session_id)
                if entry is not None and entry.is_expired(now):
                    self._evict(session_id, entry, now, reason="expired")
                    evicted.append(session_id)
        return evicted

    def active_entries(self) -> List[IngestionCacheEntry]:
        with self._registry_lock:
            return [entry.model_copy() for entry in self._entries.values() if entry.is_active]

    def clear(self) -> None:
        with self._registry_lock:
            self._entries.clear()
            for session_id in [key for key, slot in self._key_locks.items() if slot.holders == 0]:
                del self._key_locks[session_id]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        with self._registry_lock:
            return session_id in self._entries


ingestion_cache = IngestionCache()
