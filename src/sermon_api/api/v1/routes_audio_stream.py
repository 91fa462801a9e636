from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, Optional, Set
from uuid import UUID

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.concurrency import run_in_threadpool

from src.sermon_api.api.responses import HTTP_413_CONTENT_TOO_LARGE, ApiResponse, ServiceError, unwrap
from src.sermon_api.cancellation import CancellationToken
from src.sermon_api.config import settings
from src.sermon_api.domain.models.audio_stream import (
    ChunkReceipt,
    StartStreamRequest,
    StreamConfiguration,
    StreamStatus,
)
from src.sermon_api.domain.models.user import User
from src.sermon_api.domain.results import ErrorKind
from src.sermon_api.security import ensure_can_manage_transcriptions, get_api_key, get_current_user
from src.sermon_api.services.audio_stream.ingestion import ingestion_pipeline
from src.sermon_api.services.audio_stream.lifecycle import STREAM_ALREADY_ACTIVE, lifecycle_service
from src.sermon_api.services.audit.service import audit_service
from src.sermon_api.tenancy import organization_dependency

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/audio",
    tags=["audio"],
    dependencies=[Depends(get_api_key), Depends(organization_dependency)],
)

# WebSocket routes resolve auth and organization inside the handler: browsers
# cannot set custom headers on a WebSocket handshake, so query parameters are
# accepted as a fallback.
ws_router = APIRouter(prefix="/audio", tags=["audio"])

# Errors after which the WebSocket is closed instead of waiting for more audio.
_FATAL_STREAM_ERRORS = {ErrorKind.NOT_FOUND, ErrorKind.FORBIDDEN, ErrorKind.CONFLICT, ErrorKind.CANCELLED}


@router.get("/configuration", response_model=ApiResponse[StreamConfiguration])
async def get_stream_configuration(
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[StreamConfiguration]:
    return unwrap(lifecycle_service.get_stream_configuration(organization_id))


@router.post("/{session_id}/start", response_model=ApiResponse[StreamStatus])
async def start_stream(
    session_id: UUID,
    payload: Optional[StartStreamRequest] = None,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[StreamStatus]:
    ensure_can_manage_transcriptions(user)
    payload = payload or StartStreamRequest()

    response = unwrap(
        await run_in_threadpool(
            lifecycle_service.start_stream,
            session_id,
            organization_id,
            str(user.id),
            audio_format=payload.audio_format,
            sample_rate=payload.sample_rate,
            channels=payload.channels,
        )
    )

    audit_service.log_event(
        action="start_stream",
        resource_type="transcription_session",
        resource_id=str(session_id),
        extra={
            "audio_format": payload.audio_format,
            "sample_rate": payload.sample_rate,
            "channels": payload.channels,
        },
    )

    return response


@router.post("/{session_id}/stop", response_model=ApiResponse[StreamStatus])
async def stop_stream(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[StreamStatus]:
    ensure_can_manage_transcriptions(user)

    response = unwrap(await run_in_threadpool(lifecycle_service.stop_stream, session_id, organization_id))

    audit_service.log_event(
        action="stop_stream",
        resource_type="transcription_session",
        resource_id=str(session_id),
    )

    return response


@router.get("/{session_id}/status", response_model=ApiResponse[StreamStatus])
async def get_stream_status(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[StreamStatus]:
    return unwrap(await run_in_threadpool(lifecycle_service.get_stream_status, session_id, organization_id))


@router.post("/{session_id}/refresh", response_model=ApiResponse[StreamStatus])
async def refresh_session_data(
    session_id: UUID,
    organization_id: str = Depends(organization_dependency),
) -> ApiResponse[StreamStatus]:
    """Re-read the session's authoritative status into the ingestion cache."""

    return unwrap(await run_in_threadpool(lifecycle_service.refresh_session_data, session_id, organization_id))


async def _read_chunk_body(request: Request, limit: int) -> bytes:
    """Read the raw body, giving up with 413 as soon as it passes ``limit``."""

    too_large = ServiceError(
        ErrorKind.VALIDATION_ERROR,
        f"Audio chunk too large. Maximum size is {limit} bytes",
        status_code=HTTP_413_CONTENT_TOO_LARGE,
    )
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise too_large

    body = bytearray()
    async for part in request.stream():
        body.extend(part)
        if len(body) > limit:
            raise too_large
    return bytes(body)


@router.post("/{session_id}/stream", response_model=ApiResponse[ChunkReceipt])
async def upload_chunk(
    session_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    chunk_index: int = Query(..., description="Client-assigned chunk sequence number"),
    is_final_chunk: bool = Query(False),
    organization_id: str = Depends(organization_dependency),
    user: User = Depends(get_current_user),
) -> ApiResponse[ChunkReceipt]:
    """Submit one audio chunk as the raw request body.

    The chunk is accepted against the ingestion cache and then handed to the
    transcription provider after the response is sent.
    """

    ensure_can_manage_transcriptions(user)
    data = await _read_chunk_body(request, settings.max_chunk_size_bytes)

    response = unwrap(
        await run_in_threadpool(
            ingestion_pipeline.process_chunk, session_id, organization_id, data, chunk_index, is_final_chunk
        )
    )

    background_tasks.add_task(ingestion_pipeline.forward_chunk, session_id, data, chunk_index, is_final_chunk)

    if is_final_chunk:
        audit_service.log_event(
            action="final_audio_chunk",
            resource_type="transcription_session",
            resource_id=str(session_id),
            extra={"chunk_index": chunk_index, "size_bytes": len(data)},
        )

    return response


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _drain(pending: Set[asyncio.Future]) -> None:
    if pending:
        await asyncio.gather(*list(pending))


def _error_message(message: str, error_kind: Optional[ErrorKind] = None) -> Dict[str, Any]:
    return {
        "type": "Error",
        "message": message,
        "error_kind": error_kind.value if error_kind else None,
        "timestamp": _timestamp(),
    }


@ws_router.websocket("/{session_id}/ws")
async def stream_audio_ws(websocket: WebSocket, session_id: UUID) -> None:
    """Live audio ingestion over WebSocket.

    Binary frames are audio chunks, indexed automatically from 0. Text frames
    are JSON control messages: ``{"type": "Ping"}`` is answered with a Pong
    and ``{"type": "EndStream"}`` stops the stream and closes the socket.
    Query parameters ``audio_format``, ``sample_rate`` and ``channels``
    declare the audio format when the stream is opened here.
    """

    qp = websocket.query_params
    try:
        await get_api_key(websocket.headers.get("X-API-Key") or qp.get("api_key"))
        organization_id = await organization_dependency(
            websocket.headers.get("X-Organization-ID") or qp.get("organization_id")
        )
        user = await get_current_user(organization_id=organization_id)
        ensure_can_manage_transcriptions(user)
        sample_rate = int(qp.get("sample_rate", "16000"))
        channels = int(qp.get("channels", "1"))
    except HTTPException as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail))
        return
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid stream parameters")
        return

    await websocket.accept()
    cancel_token = CancellationToken()

    started = await run_in_threadpool(
        lifecycle_service.start_stream,
        session_id,
        organization_id,
        str(user.id),
        audio_format=qp.get("audio_format", "wav"),
        sample_rate=sample_rate,
        channels=channels,
        cancel_token=cancel_token,
    )
    # A stream opened beforehand through POST /start is reused.
    if not started.success and started.message != STREAM_ALREADY_ACTIVE:
        await websocket.send_json(_error_message(started.message, started.error_kind))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    logger.info("WebSocket audio stream opened for session %s", session_id)
    await websocket.send_json(
        {"type": "ConnectionEstablished", "session_id": str(session_id), "timestamp": _timestamp()}
    )

    loop = asyncio.get_running_loop()
    forwarding: Set[asyncio.Future] = set()
    chunk_index = 0
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))

            if message.get("bytes") is not None:
                data = message["bytes"]
                result = await run_in_threadpool(
                    ingestion_pipeline.process_chunk,
                    session_id,
                    organization_id,
                    data,
                    chunk_index,
                    cancel_token=cancel_token,
                )
                if not result.success:
                    await websocket.send_json(_error_message(result.message, result.error_kind))
                    if result.error_kind in _FATAL_STREAM_ERRORS:
                        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                        return
                    continue

                # Provider hand-off must not hold up the acknowledgement.
                future = loop.run_in_executor(
                    None, partial(ingestion_pipeline.forward_chunk, session_id, data, chunk_index)
                )
                forwarding.add(future)
                future.add_done_callback(forwarding.discard)
                await websocket.send_json(
                    {
                        "type": "AudioChunkAcknowledged",
                        "chunk_index": chunk_index,
                        "size_bytes": result.data.size_bytes,
                        "timestamp": _timestamp(),
                    }
                )
                chunk_index += 1

            elif message.get("text") is not None:
                try:
                    control = json.loads(message["text"])
                except json.JSONDecodeError:
                    await websocket.send_json(_error_message("Control messages must be JSON"))
                    continue

                message_type = control.get("type") if isinstance(control, dict) else None
                if message_type == "Ping":
                    await websocket.send_json({"type": "Pong", "timestamp": _timestamp()})
                elif message_type == "EndStream":
                    # Pending hand-offs must reach the provider before its state is released.
                    await _drain(forwarding)
                    stopped = await run_in_threadpool(
                        lifecycle_service.stop_stream, session_id, organization_id, cancel_token
                    )
                    await websocket.send_json(
                        {
                            "type": "StreamEnded",
                            "session_id": str(session_id),
                            "chunks_received": chunk_index,
                            "success": stopped.success,
                            "timestamp": _timestamp(),
                        }
                    )
                    await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
                    logger.info("WebSocket audio stream ended by client for session %s", session_id)
                    return
                else:
                    logger.warning("Unknown control message type %r for session %s", message_type, session_id)
                    await websocket.send_json(_error_message(f"Unknown control message type: {message_type}"))
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for session %s after %d chunks", session_id, chunk_index)
        cancel_token.cancel()
        await _drain(forwarding)
        # The token is cancelled, so stop without it.
        await run_in_threadpool(lifecycle_service.stop_stream, session_id, organization_id)
