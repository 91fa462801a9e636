import threading
from uuid import UUID

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from src.sermon_api.config import settings
from src.sermon_api.infra.cache.ingestion_cache import ingestion_cache
from src.sermon_api.main import app
from src.sermon_api.services.audio_stream.ingestion import ingestion_pipeline
from src.sermon_api.services.transcription.providers import DemoTranscriptionProvider

ORG_A = {"X-Organization-ID": "org-a"}
ORG_B = {"X-Organization-ID": "org-b"}


@pytest.fixture(autouse=True)
def demo_provider(monkeypatch):
    provider = DemoTranscriptionProvider()
    monkeypatch.setattr(ingestion_pipeline, "_provider", provider)
    return provider


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _live_session(ac: AsyncClient, headers=ORG_A) -> str:
    created = (await ac.post("/api/v1/sessions/", json={"title": "Live stream"}, headers=headers)).json()["data"]
    await ac.post(f"/api/v1/sessions/{created['id']}/start", headers=headers)
    return created["id"]


async def test_stream_configuration():
    async with _client() as ac:
        response = await ac.get("/api/v1/audio/configuration", headers=ORG_A)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()["data"]
    assert data["max_chunk_size_bytes"] == settings.max_chunk_size_bytes
    assert "wav" in data["supported_formats"]


async def test_chunk_upload_flow(demo_provider):
    async with _client() as ac:
        session_id = await _live_session(ac)

        start_resp = await ac.post(
            f"/api/v1/audio/{session_id}/start",
            json={"audio_format": "wav", "sample_rate": 16000, "channels": 1},
            headers=ORG_A,
        )
        assert start_resp.status_code == status.HTTP_200_OK
        stream = start_resp.json()["data"]
        assert stream["is_active"] is True
        assert stream["can_receive_audio"] is True
        assert stream["upload_url"] == f"/api/v1/audio/{session_id}/stream"

        for index in range(3):
            chunk_resp = await ac.post(
                f"/api/v1/audio/{session_id}/stream",
                params={"chunk_index": index, "is_final_chunk": index == 2},
                content=b"\x00" * 512,
                headers={**ORG_A, "Content-Type": "application/octet-stream"},
            )
            assert chunk_resp.status_code == status.HTTP_200_OK
            receipt = chunk_resp.json()["data"]
            assert receipt["accepted"] is True
            assert receipt["chunk_index"] == index
            assert receipt["size_bytes"] == 512

        status_resp = await ac.get(f"/api/v1/audio/{session_id}/status", headers=ORG_A)
        assert status_resp.json()["data"]["total_chunks_received"] == 3
        assert status_resp.json()["data"]["total_bytes_received"] == 1536

        stats = demo_provider.stats_for(UUID(session_id))
        assert stats.chunks == 3
        assert stats.finalized

        stop_resp = await ac.post(f"/api/v1/audio/{session_id}/stop", headers=ORG_A)
        assert stop_resp.status_code == status.HTTP_200_OK
        assert stop_resp.json()["data"]["is_active"] is False

        stop_again = await ac.post(f"/api/v1/audio/{session_id}/stop", headers=ORG_A)
        assert stop_again.status_code == status.HTTP_200_OK

    assert demo_provider.stats_for(UUID(session_id)) is None


async def test_start_stream_rejects_unsupported_format():
    async with _client() as ac:
        session_id = await _live_session(ac)
        response = await ac.post(
            f"/api/v1/audio/{session_id}/start",
            json={"audio_format": "ogg", "sample_rate": 16000, "channels": 1},
            headers=ORG_A,
        )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_kind"] == "validation_error"


async def test_start_stream_twice_is_conflict():
    async with _client() as ac:
        session_id = await _live_session(ac)
        first = await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)
        second = await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)

    assert first.status_code == status.HTTP_200_OK
    assert second.status_code == status.HTTP_409_CONFLICT


async def test_chunk_for_session_not_recording_is_conflict():
    async with _client() as ac:
        created = (await ac.post("/api/v1/sessions/", json={"title": "Idle"}, headers=ORG_A)).json()["data"]
        response = await ac.post(
            f"/api/v1/audio/{created['id']}/stream",
            params={"chunk_index": 0},
            content=b"audio",
            headers=ORG_A,
        )

    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["message"] == "Session is not active and cannot receive audio"


async def test_oversized_and_empty_chunks(monkeypatch):
    monkeypatch.setattr(settings, "max_chunk_size_bytes", 64)

    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)

        exact = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 0}, content=b"x" * 64, headers=ORG_A
        )
        oversized = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 1}, content=b"x" * 65, headers=ORG_A
        )
        empty = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 2}, content=b"", headers=ORG_A
        )

    assert exact.status_code == status.HTTP_200_OK
    assert oversized.status_code == 413
    assert oversized.json()["error_kind"] == "validation_error"
    assert empty.status_code == status.HTTP_400_BAD_REQUEST


async def test_chunk_from_other_organization_is_forbidden_on_cache_hit():
    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)

        response = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 0}, content=b"audio", headers=ORG_B
        )
        status_as_b = await ac.get(f"/api/v1/audio/{session_id}/status", headers=ORG_B)

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert status_as_b.status_code == status.HTTP_404_NOT_FOUND


async def test_chunk_after_cache_loss_rebuilds_entry():
    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)
        ingestion_cache.clear()

        response = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 7}, content=b"audio", headers=ORG_A
        )
        status_resp = await ac.get(f"/api/v1/audio/{session_id}/status", headers=ORG_A)

    assert response.status_code == status.HTTP_200_OK
    assert status_resp.json()["data"]["is_active"] is True
    assert status_resp.json()["data"]["total_chunks_received"] == 1


async def test_pausing_session_closes_stream():
    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)

        await ac.post(f"/api/v1/sessions/{session_id}/pause", headers=ORG_A)
        status_resp = await ac.get(f"/api/v1/audio/{session_id}/status", headers=ORG_A)
        chunk_resp = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 0}, content=b"audio", headers=ORG_A
        )

    data = status_resp.json()["data"]
    assert data["is_active"] is False
    assert data["can_receive_audio"] is False
    assert data["status"] == "PAUSED"
    assert chunk_resp.status_code == status.HTTP_409_CONFLICT


async def test_refresh_endpoint_keeps_live_stream_open():
    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)

        refresh_resp = await ac.post(f"/api/v1/audio/{session_id}/refresh", headers=ORG_A)

    assert refresh_resp.status_code == status.HTTP_200_OK
    assert refresh_resp.json()["data"]["is_active"] is True


def test_websocket_stream_acknowledges_chunks(demo_provider):
    client = TestClient(app)

    session_id = client.post("/api/v1/sessions/", json={"title": "WS"}, headers=ORG_A).json()["data"]["id"]
    client.post(f"/api/v1/sessions/{session_id}/start", headers=ORG_A)

    with client.websocket_connect(f"/api/v1/audio/{session_id}/ws?organization_id=org-a&audio_format=wav") as ws:
        established = ws.receive_json()
        assert established["type"] == "ConnectionEstablished"
        assert established["session_id"] == session_id

        ws.send_bytes(b"\x00" * 100)
        ack = ws.receive_json()
        assert ack["type"] == "AudioChunkAcknowledged"
        assert ack["chunk_index"] == 0

        ws.send_bytes(b"\x00" * 50)
        assert ws.receive_json()["chunk_index"] == 1

        ws.send_json({"type": "Ping"})
        assert ws.receive_json()["type"] == "Pong"

        ws.send_text("not json")
        assert ws.receive_json()["type"] == "Error"

        ws.send_json({"type": "EndStream"})
        ended = ws.receive_json()
        assert ended["type"] == "StreamEnded"
        assert ended["chunks_received"] == 2

    status_resp = client.get(f"/api/v1/audio/{session_id}/status", headers=ORG_A).json()["data"]
    assert status_resp["is_active"] is False


def test_websocket_rejects_session_that_is_not_recording():
    client = TestClient(app)
    session_id = client.post("/api/v1/sessions/", json={"title": "Idle WS"}, headers=ORG_A).json()["data"]["id"]

    with client.websocket_connect(f"/api/v1/audio/{session_id}/ws", headers=ORG_A) as ws:
        error = ws.receive_json()
        assert error["type"] == "Error"
        assert error["error_kind"] == "conflict"
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_websocket_requires_organization():
    client = TestClient(app)

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/v1/audio/00000000-0000-0000-0000-000000000000/ws"):
            pass


async def test_oversized_streamed_body_is_cut_off(monkeypatch):
    monkeypatch.setattr(settings, "max_chunk_size_bytes", 64)

    async def body():
        # No Content-Length: the size is only known while reading.
        for _ in range(100):
            yield b"x" * 32

    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)

        response = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 0}, content=body(), headers=ORG_A
        )
        status_resp = await ac.get(f"/api/v1/audio/{session_id}/status", headers=ORG_A)

    assert response.status_code == 413
    assert response.json()["error_kind"] == "validation_error"
    assert status_resp.json()["data"]["total_chunks_received"] == 0


async def test_declared_length_over_limit_is_rejected_up_front(monkeypatch):
    monkeypatch.setattr(settings, "max_chunk_size_bytes", 64)

    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)

        response = await ac.post(
            f"/api/v1/audio/{session_id}/stream",
            params={"chunk_index": 0},
            content=b"x" * 10,
            headers={**ORG_A, "Content-Length": "1048576"},
        )

    assert response.status_code == 413


async def test_chunk_processing_runs_off_the_event_loop(monkeypatch):
    loop_thread = threading.get_ident()
    seen = []
    process_chunk = ingestion_pipeline.process_chunk

    def recording_process_chunk(*args, **kwargs):
        seen.append(threading.get_ident())
        return process_chunk(*args, **kwargs)

    monkeypatch.setattr(ingestion_pipeline, "process_chunk", recording_process_chunk)

    async with _client() as ac:
        session_id = await _live_session(ac)
        await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)
        response = await ac.post(
            f"/api/v1/audio/{session_id}/stream", params={"chunk_index": 0}, content=b"audio", headers=ORG_A
        )

    assert response.status_code == status.HTTP_200_OK
    assert seen and loop_thread not in seen


async def test_finished_sessions_leave_no_provider_state(demo_provider):
    async with _client() as ac:
        for _ in range(5):
            session_id = await _live_session(ac)
            await ac.post(f"/api/v1/audio/{session_id}/start", headers=ORG_A)
            await ac.post(
                f"/api/v1/audio/{session_id}/stream",
                params={"chunk_index": 0, "is_final_chunk": True},
                content=b"audio",
                headers=ORG_A,
            )
            await ac.post(f"/api/v1/audio/{session_id}/stop", headers=ORG_A)
            await ac.post(f"/api/v1/sessions/{session_id}/complete", headers=ORG_A)

    assert demo_provider.tracked_sessions() == 0
    assert len(ingestion_cache) == 0


def test_websocket_end_stream_releases_provider_state(demo_provider):
    client = TestClient(app)
    session_id = client.post("/api/v1/sessions/", json={"title": "WS"}, headers=ORG_A).json()["data"]["id"]
    client.post(f"/api/v1/sessions/{session_id}/start", headers=ORG_A)

    with client.websocket_connect(f"/api/v1/audio/{session_id}/ws?organization_id=org-a") as ws:
        ws.receive_json()
        for _ in range(3):
            ws.send_bytes(b"\x00" * 64)
            ws.receive_json()
        ws.send_json({"type": "EndStream"})
        assert ws.receive_json()["type"] == "StreamEnded"

    assert demo_provider.stats_for(UUID(session_id)) is None
