from __future__ import annotations

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """Structured representation of an audit event.

    Intentionally keeps payload minimal: IDs, types, counts and high-level
    actions rather than audio content or transcript text.
    """

    timestamp: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    organization_id: Optional[str] = None
    subject: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class AuditService:
    def log_event(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        subject: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Log a structured audit event.

        - `action`: high-level verb, e.g., "start_stream", "complete_session".
        - `resource_type`: coarse type, e.g., "transcription_session".
        - `resource_id`: stable identifier (UUID string) when available.
        - `organization_id`: tenant; inferred from the request context when
          omitted.
        - `subject`: optional identifier for the caller. If omitted, we
          attempt to infer it from the current security context.
        - `extra`: optional small dict of metadata (counts, flags).
        """

        if subject is None:
            from src.sermon_api.security import get_current_subject

            subject = get_current_subject()

        if organization_id is None:
            from src.sermon_api.tenancy import get_current_organization

            organization_id = get_current_organization()

        event = AuditEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            organization_id=organization_id,
            subject=subject,
            extra=extra,
        )

        try:
            logger.info(json.dumps(asdict(event)))
        except TypeError:
            # Fallback: log a simpler representation if something in extra is
            # not JSON serializable.
            safe_event = asdict(event)
            safe_event["extra"] = None
            logger.info(json.dumps(safe_event))

        return event


audit_service = AuditService()
