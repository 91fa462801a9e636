from __future__ import annotations

import logging
from typing import Optional

from src.sermon_api.config import settings
from src.sermon_api.infra.db import inmemory as inmemory_repos
from src.sermon_api.infra.db.models import Base
from src.sermon_api.infra.db.repositories import TranscriptionSessionRepository
from src.sermon_api.infra.db.session import create_sqlalchemy_engine, create_sqlalchemy_session_factory
from src.sermon_api.infra.db.sql_sessions import SqlTranscriptionSessionRepository

logger = logging.getLogger(__name__)


def build_sql_session_repository(database_url: str) -> TranscriptionSessionRepository:
    engine = create_sqlalchemy_engine(database_url)
    # Create tables if they do not exist. A real deployment should manage the
    # schema through migrations.
    Base.metadata.create_all(engine)
    return SqlTranscriptionSessionRepository(create_sqlalchemy_session_factory(engine))


def init_sql_repositories(database_url: Optional[str] = None) -> bool:
    """Optionally switch the in-memory session store to a SQL-backed one.

    If USE_SQL_REPOS is not enabled or DATABASE_URL is not configured, this is
    a no-op and the in-memory repository remains active. Returns whether the
    swap happened.
    """

    if not settings.use_sql_repos:
        return False

    db_url = database_url or settings.database_url
    if not db_url:
        logger.warning("USE_SQL_REPOS is enabled but DATABASE_URL is not set; keeping in-memory session store")
        return False

    # Services resolve the repository through this module attribute at call
    # time, so swapping it here rewires every caller.
    inmemory_repos.session_repository = build_sql_session_repository(db_url)
    logger.info("SQL-backed session store initialised")
    return True
