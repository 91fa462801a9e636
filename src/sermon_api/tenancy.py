from __future__ import annotations

from contextvars import ContextVar
from typing import Optional

from fastapi import Header, HTTPException, status


# Context variable storing the organization identifier for the in-flight
# request. Services take the organization explicitly; this is for consumers
# such as the audit logger that only need it for correlation.
_current_organization: ContextVar[Optional[str]] = ContextVar("current_organization", default=None)


def get_current_organization() -> Optional[str]:
    """Return the current organization identifier, if one was established.

    In HTTP requests this is set by :func:`organization_dependency`. In
    non-request contexts (e.g., direct service calls in tests) it is None.
    """

    return _current_organization.get()


async def organization_dependency(
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-ID"),
) -> str:
    """FastAPI dependency that establishes the organization for a request.

    Every session and stream operation is organization-scoped, so a missing
    header is rejected rather than defaulted.
    """

    if not x_organization_id or not x_organization_id.strip():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization context is required (X-Organization-ID header).",
        )

    organization_id = x_organization_id.strip()
    _current_organization.set(organization_id)
    return organization_id
