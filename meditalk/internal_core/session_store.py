from __future__ import annotations

import time
import uuid
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from .contracts import AuditEvent


class SessionNotFoundError(KeyError):
    pass


class SessionOwnerError(PermissionError):
    pass


class InMemorySessionStore:
    def __init__(self, ttl_seconds: int):
        self._ttl_seconds = ttl_seconds
        self._lock = RLock()
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def create_session(self, owner_id: str, workflow_factory: Callable[[str], Any]) -> str:
        session_id = uuid.uuid4().hex
        workflow = workflow_factory(session_id)
        now = time.time()
        with self._lock:
            self._sessions[session_id] = {
                "session_id": session_id,
                "owner_id": owner_id,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self._ttl_seconds,
                "workflow": workflow,
                "audit_events": [],
            }
        return session_id

    def _touch(self, session_id: str) -> None:
        now = time.time()
        session = self._sessions[session_id]
        session["updated_at"] = now
        session["expires_at"] = now + self._ttl_seconds

    def _require(self, session_id: str) -> Dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session_id: {session_id}")
        return session

    def get_workflow(self, session_id: str, owner_id: Optional[str] = None) -> Any:
        with self._lock:
            session = self._require(session_id)
            if owner_id is not None and session["owner_id"] != owner_id:
                raise SessionOwnerError(f"Session {session_id} belongs to another clinician")
            self._touch(session_id)
            return session["workflow"]

    def append_audit_event(self, session_id: str, event: AuditEvent) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            session["audit_events"].append(event)
            self._touch(session_id)

    def audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._require(session_id)["audit_events"])

    def destroy_session(self, session_id: str, reason: str) -> Optional[Any]:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        workflow = session.get("workflow")
        close = getattr(workflow, "close", None)
        if callable(close):
            close(reason=reason)
        return workflow

    def cleanup_expired_sessions(self) -> int:
        now = time.time()
        expired = []
        with self._lock:
            for session_id, session in self._sessions.items():
                if session["expires_at"] <= now:
                    expired.append(session_id)
        for session_id in expired:
            self.destroy_session(session_id, reason="ttl_expired")
        return len(expired)
