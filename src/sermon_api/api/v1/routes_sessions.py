from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from src.sermon_api.api.responses import ApiResponse, unwrap
from src.sermon_api.domain.models.transcription_session import TranscriptionSession
from src.sermon_api.domain.models.user import User
from src.sermon_api.domain.session_state_machine import SessionAction
from src.sermon_api.security import ensure_can_manage_transcriptions, get_api_key, get_current_user
from src.sermon_api.services.audio_stream.lifecycle import lifecycle_service
from src.sermon_api.services.audit.service import audit_service
from src.sermon_api.services.sessions.service import session_service
from src.sermon_api.tenancy import organization_dependency

router = APIRouter(
    prefix="/sessions",
    tags=["sessions"],
    dependencies=[Depends(get_api_key), Depends(organization_dependency)],
)


class CreateSessionRequest(BaseModel):
    title: str
    description: Optional[str] = None
    language: str = "en"
    enable_speaker_diarization: bool = True
    enable_punctuation: bool = True
    enable_timestamps: bool = True
    audio_stream_url: Optional[str] = None
    audio_file_name: Optional[str] = None


class UpdateSessionRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    enable_speaker_diarization: Optional[bool] = None
    enable_punctuation: Optional[bool] = None
    enable_timestamps: Optional[bool] = None
    audio_stream_url: Optional[str] = None
    audio_file_name: Optional[str] = None


@router.post("/", response_model=ApiResponse[TranscriptionSession], status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: CreateSessionRequest,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[TranscriptionSession]:
    ensure_can_manage_transcriptions(user)

    response = unwrap(
        await run_in_threadpool(
            session_service.create_session,
            organization_id=organization_id,
            created_by_user_id=str(user.id),
            **payload.model_dump(),
        )
    )

    audit_service.log_event(
        action="create_session",
        resource_type="transcription_session",
        resource_id=str(response.data.id),
    )

    return response


@router.get("/", response_model=ApiResponse[List[TranscriptionSession]])
async def list_active_sessions(
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[List[TranscriptionSession]]:
    """Sessions currently recording or paused, newest first."""

    return unwrap(await run_in_threadpool(session_service.list_active_sessions, organization_id))


@router.get("/recent", response_model=ApiResponse[List[TranscriptionSession]])
async def list_recent_sessions(
    count: int = Query(10, description="How many sessions to return, newest first"),
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[List[TranscriptionSession]]:
    return unwrap(await run_in_threadpool(session_service.list_recent_sessions, organization_id, count))


@router.get("/active/count", response_model=ApiResponse[int])
async def get_active_session_count(
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[int]:
    return unwrap(await run_in_threadpool(session_service.get_active_session_count, organization_id))


@router.get("/duration", response_model=ApiResponse[float])
async def get_total_session_duration(
    from_date: Optional[datetime] = Query(None, description="Only count sessions created at or after this time"),
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[float]:
    """Total seconds spent recording across the organization's sessions."""

    if from_date is not None and from_date.tzinfo is None:
        from_date = from_date.replace(tzinfo=timezone.utc)
    return unwrap(await run_in_threadpool(session_service.get_total_session_duration, organization_id, from_date))


@router.get("/{session_id}", response_model=ApiResponse[TranscriptionSession])
async def get_session(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[TranscriptionSession]:
    return unwrap(await run_in_threadpool(session_service.get_session, session_id, organization_id))


@router.patch("/{session_id}", response_model=ApiResponse[TranscriptionSession])
async def update_session(
    session_id: UUID,
    payload: UpdateSessionRequest,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[TranscriptionSession]:
    ensure_can_manage_transcriptions(user)

    changes = payload.model_dump(exclude_unset=True)
    response = unwrap(await run_in_threadpool(session_service.update_session, session_id, organization_id, changes))

    audit_service.log_event(
        action="update_session",
        resource_type="transcription_session",
        resource_id=str(session_id),
        extra={"fields": sorted(changes)},
    )

    return response


@router.delete("/{session_id}", response_model=ApiResponse[bool])
async def delete_session(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[bool]:
    ensure_can_manage_transcriptions(user)

    response = unwrap(await run_in_threadpool(session_service.delete_session, session_id, organization_id))

    audit_service.log_event(
        action="delete_session",
        resource_type="transcription_session",
        resource_id=str(session_id),
    )

    return response


async def _transition(session_id: UUID, organization_id: str, user: User, action: SessionAction):
    ensure_can_manage_transcriptions(user)

    response = unwrap(
        await run_in_threadpool(lifecycle_service.transition_session, session_id, organization_id, action)
    )

    audit_service.log_event(
        action=f"{action.value}_session",
        resource_type="transcription_session",
        resource_id=str(session_id),
        extra={"status": response.data.status.value},
    )

    return response


@router.post("/{session_id}/start", response_model=ApiResponse[TranscriptionSession])
async def start_session(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[TranscriptionSession]:
    return await _transition(session_id, organization_id, user, SessionAction.START)


@router.post("/{session_id}/pause", response_model=ApiResponse[TranscriptionSession])
async def pause_session(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[TranscriptionSession]:
    return await _transition(session_id, organization_id, user, SessionAction.PAUSE)


@router.post("/{session_id}/resume", response_model=ApiResponse[TranscriptionSession])
async def resume_session(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[TranscriptionSession]:
    return await _transition(session_id, organization_id, user, SessionAction.RESUME)


@router.post("/{session_id}/complete", response_model=ApiResponse[TranscriptionSession])
async def complete_session(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[TranscriptionSession]:
    return await _transition(session_id, organization_id, user, SessionAction.COMPLETE)


@router.post("/{session_id}/cancel", response_model=ApiResponse[TranscriptionSession])
async def cancel_session(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[TranscriptionSession]:
    return await _transition(session_id, organization_id, user, SessionAction.CANCEL)
