from __future__ import annotations

from threading import Lock
from typing import Dict, Optional, Tuple
from uuid import uuid4

from src.sermon_api.domain.models.user import User, UserRole


class InMemoryUserDirectory:
    """Very small in-memory user directory keyed by (auth subject, organization).

    User and membership management is owned elsewhere; the audio subsystem
    only needs a stable user id per caller to stamp on sessions and streams.
    """

    def __init__(self) -> None:
        self._by_subject: Dict[Tuple[str, str], User] = {}
        self._lock = Lock()

    def upsert_user_for_subject(
        self,
        *,
        subject: str,
        organization_id: str,
        email: str,
        role: UserRole,
    ) -> User:
        key = (subject, organization_id)
        with self._lock:
            existing = self._by_subject.get(key)
            if existing is not None:
                return existing

            user = User(id=uuid4(), email=email, role=role, organization_id=organization_id)
            self._by_subject[key] = user
            return user

    def get_user_by_subject(self, subject: str, organization_id: str) -> Optional[User]:
        with self._lock:
            return self._by_subject.get((subject, organization_id))

    def set_role(self, subject: str, organization_id: str, role: UserRole) -> Optional[User]:
        with self._lock:
            user = self._by_subject.get((subject, organization_id))
            if user is None:
                return None
            user.role = role
            return user

    def clear(self) -> None:
        with self._lock:
            self._by_subject.clear()


user_directory = InMemoryUserDirectory()
