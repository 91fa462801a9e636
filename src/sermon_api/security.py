from __future__ import annotations

import hashlib
from contextvars import ContextVar
from typing import List, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.sermon_api.config import settings
from src.sermon_api.domain.models.user import User, UserRole
from src.sermon_api.services.users.service import user_directory
from src.sermon_api.tenancy import organization_dependency

# API key is expected in this header when ENABLE_API_AUTH is true.
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Context variable storing a stable, non-raw identifier for the current caller
# (e.g., a hashed API key). This allows downstream consumers such as the
# audit logger to associate events with a subject without exposing the raw
# secret.
_current_subject: ContextVar[Optional[str]] = ContextVar("current_subject", default=None)


def get_current_subject() -> Optional[str]:
    """Return the current subject identifier, if any.

    This is set by ``get_api_key`` when API authentication is enabled. The
    value is a stable hash-derived identifier, not the raw secret.
    """

    return _current_subject.get()


def _parse_api_keys() -> List[str]:
    """Return the configured API keys as a normalized list.

    API_KEYS is treated as a comma-separated list. Whitespace is stripped and
    empty entries are ignored.
    """

    if not settings.api_keys:
        return []
    return [key.strip() for key in settings.api_keys.split(",") if key.strip()]


def subject_for_api_key(api_key: str) -> str:
    return "api-key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


async def get_api_key(api_key: Optional[str] = Security(_api_key_header)) -> str:
    """FastAPI dependency for simple API-key based authentication.

    - If ENABLE_API_AUTH is false (default for development/tests), this is a
      no-op and always succeeds.
    - If ENABLE_API_AUTH is true, a valid API key must be supplied in the
      X-API-Key header and match the configured API_KEYS list.
    """

    if not settings.enable_api_auth:
        _current_subject.set(None)
        return ""

    allowed_keys = _parse_api_keys()
    if not allowed_keys:
        # Misconfiguration: auth is enabled but no keys are configured.
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API authentication is enabled but no API keys are configured.",
        )

    if not api_key or api_key not in allowed_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )

    _current_subject.set(subject_for_api_key(api_key))
    return api_key


async def get_current_user(
    api_key: str = Depends(get_api_key),
    organization_id: str = Depends(organization_dependency),
) -> User:
    """Resolve the calling User within the request's organization.

    Token issuance and membership management live outside this service; here
    an auth subject simply maps to one user per organization.
    """

    subject = get_current_subject()
    if subject is None:
        # Auth disabled: synthesize a single admin user per organization.
        return user_directory.upsert_user_for_subject(
            subject="anonymous",
            organization_id=organization_id,
            email="anonymous@example.com",
            role=UserRole.ORGANIZATION_ADMIN,
        )

    user = user_directory.get_user_by_subject(subject, organization_id)
    if user is None:
        user = user_directory.upsert_user_for_subject(
            subject=subject,
            organization_id=organization_id,
            email=f"user+{subject[-8:]}@example.com",
            role=UserRole.ORGANIZATION_USER,
        )

    return user


def ensure_can_manage_transcriptions(user: User) -> None:
    """Raise HTTP 403 if the user may only view transcriptions.

    Creating sessions, driving their lifecycle and streaming audio are
    reserved for organization admins and regular organization users.
    """

    if user.role in {UserRole.ORGANIZATION_ADMIN, UserRole.ORGANIZATION_USER}:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not authorized to manage transcription sessions",
    )
