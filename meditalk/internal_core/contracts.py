from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

AuditEventType = Literal[
    "SESSION_CREATED",
    "PATIENT_REGISTERED",
    "RECORDING_STARTED",
    "RECORDING_STOPPED",
    "CAPTURE_FAILED",
    "ASR_CHUNK_DONE",
    "ASR_FAILED",
    "END_REQUESTED",
    "FINALIZE",
    "PERSIST_FAILED",
    "COMPLIANCE_DONE",
    "COMPLIANCE_FAILED",
    "DIAGNOSIS_DONE",
    "DIAGNOSIS_FALLBACK",
    "SESSION_RESET",
    "SESSION_DESTROYED",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


NotificationLevel = Literal["info", "warning", "error"]


class Notification(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: NotificationLevel = "info"
    title: str
    detail: str = ""
    ts_iso: str = ""


class TranscriptionResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = ""
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    meta: Dict[str, Any] = Field(default_factory=dict)
