from datetime import timedelta

import pytest

from src.sermon_api.config import settings
from src.sermon_api.domain.results import ErrorKind
from src.sermon_api.domain.session_state_machine import SessionStatus
from src.sermon_api.infra.db import inmemory as inmemory_repos
from src.sermon_api.infra.db.bootstrap import build_sql_session_repository, init_sql_repositories
from src.sermon_api.infra.db.sql_sessions import SqlTranscriptionSessionRepository
from src.sermon_api.services.sessions.service import TranscriptionSessionService


@pytest.fixture
def sql_service(tmp_path):
    repository = build_sql_session_repository(f"sqlite:///{tmp_path / 'sessions.db'}")
    return TranscriptionSessionService(repository)


def test_sql_repository_round_trips_session_lifecycle(sql_service):
    created = sql_service.create_session(organization_id="org-a", title="Morning worship", language="es").data

    sql_service.start_session(created.id, "org-a")
    paused = sql_service.pause_session(created.id, "org-a").data

    loaded = sql_service.get_session(created.id, "org-a").data
    assert loaded.title == "Morning worship"
    assert loaded.language == "es"
    assert loaded.status == SessionStatus.PAUSED
    assert loaded.started_at == paused.started_at
    assert loaded.accumulated_seconds == pytest.approx(paused.accumulated_seconds)
    assert loaded.started_at.utcoffset() == timedelta(0)


def test_sql_repository_scopes_by_organization(sql_service):
    created = sql_service.create_session(organization_id="org-a", title="Vespers").data

    assert sql_service.get_session(created.id, "org-b").error_kind == ErrorKind.NOT_FOUND
    assert sql_service.delete_session(created.id, "org-b").error_kind == ErrorKind.NOT_FOUND
    assert sql_service.get_session(created.id, "org-a").success


def test_sql_list_active_filters_status_and_organization(sql_service):
    live = sql_service.create_session(organization_id="org-a", title="Live").data
    sql_service.start_session(live.id, "org-a")
    sql_service.create_session(organization_id="org-a", title="Not started")
    other = sql_service.create_session(organization_id="org-b", title="Other org").data
    sql_service.start_session(other.id, "org-b")

    active = sql_service.list_active_sessions("org-a").data

    assert [session.id for session in active] == [live.id]


def test_sql_delete_guard(sql_service):
    created = sql_service.create_session(organization_id="org-a", title="Guarded").data
    sql_service.start_session(created.id, "org-a")

    assert sql_service.delete_session(created.id, "org-a").error_kind == ErrorKind.CONFLICT

    sql_service.complete_session(created.id, "org-a")
    assert sql_service.delete_session(created.id, "org-a").success
    assert sql_service.get_session(created.id, "org-a").error_kind == ErrorKind.NOT_FOUND


def test_init_sql_repositories_is_noop_by_default(monkeypatch):
    monkeypatch.setattr(settings, "use_sql_repos", False)

    assert init_sql_repositories("sqlite://") is False


def test_init_sql_repositories_swaps_store(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "use_sql_repos", True)
    monkeypatch.setattr(inmemory_repos, "session_repository", inmemory_repos.session_repository)

    assert init_sql_repositories(f"sqlite:///{tmp_path / 'swap.db'}") is True
    assert isinstance(inmemory_repos.session_repository, SqlTranscriptionSessionRepository)


def test_sql_session_analytics(sql_service):
    first = sql_service.create_session(organization_id="org-a", title="First").data
    second = sql_service.create_session(organization_id="org-a", title="Second").data
    sql_service.create_session(organization_id="org-b", title="Elsewhere")
    sql_service.start_session(first.id, "org-a")
    sql_service.pause_session(first.id, "org-a")

    recent = sql_service.list_recent_sessions("org-a", count=5).data

    assert [s.id for s in recent] == [second.id, first.id]
    assert sql_service.get_active_session_count("org-a").data == 1
    assert sql_service.get_active_session_count("org-b").data == 0
    assert sql_service.get_total_session_duration("org-a").data >= 0
