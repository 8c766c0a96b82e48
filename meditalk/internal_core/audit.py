from __future__ import annotations

import datetime as _dt
import logging
from typing import Optional

from .contracts import AuditEvent, AuditEventType
from .session_store import InMemorySessionStore

logger = logging.getLogger(__name__)

_MAX_DETAIL_CHARS = 200


def _sanitize_detail(detail: str) -> str:
    # Callers pass counts, ids and error codes; transcript text, patient
    # names and audio bytes must never reach the audit trail.
    cleaned = " ".join((detail or "").split())
    if len(cleaned) > _MAX_DETAIL_CHARS:
        cleaned = cleaned[:_MAX_DETAIL_CHARS] + "..."
    return cleaned


def log_event(
    store: InMemorySessionStore,
    session_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> AuditEvent:
    """Append one consultation audit event to the session and mirror it to the log."""
    event = AuditEvent(
        ts_iso=_dt.datetime.now(_dt.timezone.utc).isoformat(),
        session_id=session_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    store.append_audit_event(session_id, event)
    logger.info(
        "audit session_id=%s type=%s code=%s duration_ms=%s detail=%s",
        session_id,
        event.type,
        event.code,
        event.duration_ms,
        event.detail,
    )
    return event
