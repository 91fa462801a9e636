from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Float, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import Uuid


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class TranscriptionSessionORM(Base):
    __tablename__ = "transcription_sessions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    # Tenant/organization identifier for multitenancy.
    organization_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    created_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    language: Mapped[str] = mapped_column(String(16), nullable=False, default="en")
    enable_speaker_diarization: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    enable_punctuation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    enable_timestamps: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_live: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    audio_stream_url: Mapped[str | None] = mapped_column(String, nullable=True)
    audio_file_name: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accumulated_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_resumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    @classmethod
    def from_domain(cls, session: "TranscriptionSession") -> "TranscriptionSessionORM":  # type: ignore[name-defined]
        orm = cls(id=session.id)
        orm.apply(session)
        return orm

    def apply(self, session: "TranscriptionSession") -> None:  # type: ignore[name-defined]
        """Copy every mutable field from the domain model onto this row."""

        self.organization_id = session.organization_id
        self.created_by_user_id = session.created_by_user_id
        self.title = session.title
        self.description = session.description
        self.language = session.language
        self.enable_speaker_diarization = session.enable_speaker_diarization
        self.enable_punctuation = session.enable_punctuation
        self.enable_timestamps = session.enable_timestamps
        self.is_live = session.is_live
        self.audio_stream_url = session.audio_stream_url
        self.audio_file_name = session.audio_file_name
        self.status = session.status.value
        self.created_at = session.created_at
        self.updated_at = session.updated_at
        self.started_at = session.started_at
        self.ended_at = session.ended_at
        self.accumulated_seconds = session.accumulated_seconds
        self.last_resumed_at = session.last_resumed_at
        self.error_message = session.error_message

    def to_domain(self) -> "TranscriptionSession":  # type: ignore[name-defined]
        from src.sermon_api.domain.models.transcription_session import TranscriptionSession
        from src.sermon_api.domain.session_state_machine import SessionStatus

        return TranscriptionSession(
            id=self.id,
            organization_id=self.organization_id,
            created_by_user_id=self.created_by_user_id,
            title=self.title,
            description=self.description,
            language=self.language,
            enable_speaker_diarization=self.enable_speaker_diarization,
            enable_punctuation=self.enable_punctuation,
            enable_timestamps=self.enable_timestamps,
            is_live=self.is_live,
            audio_stream_url=self.audio_stream_url,
            audio_file_name=self.audio_file_name,
            status=SessionStatus(self.status),
            created_at=_as_utc(self.created_at),
            updated_at=_as_utc(self.updated_at),
            started_at=_as_utc(self.started_at),
            ended_at=_as_utc(self.ended_at),
            accumulated_seconds=self.accumulated_seconds,
            last_resumed_at=_as_utc(self.last_resumed_at),
            error_message=self.error_message,
        )
