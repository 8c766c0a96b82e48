from __future__ import annotations

"""
HTTP and WebSocket surface for the MediTalk consultation backend.

Design intent:
- Keep API orchestration thin and typed; stages live in ConsultationWorkflow.
- Every request carries the clinician id explicitly (X-Clinician-Id header).
- Collaborators are resolved from `app.state` so tests can inject fakes.
"""

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from meditalk.analysis.chat import FollowUpResponder
from meditalk.analysis.compliance import ComplianceReviewer
from meditalk.analysis.diagnosis import DiagnosisAnalyzer
from meditalk.analysis.llm_client import AnalysisError, ChatBackend, build_chat_backend
from meditalk.consultation.dedupe import dedupe_patient_records, exclude_record
from meditalk.consultation.models import (
    ConsultationMessage,
    ConsultationRecord,
    Diagnosis,
    PatientInfo,
    Speaker,
)
from meditalk.consultation.workflow import (
    ConsultationWorkflow,
    WorkflowStateError,
    WorkflowValidationError,
)
from meditalk.internal_core.asr import ASRError, ASRProvider, build_asr_provider
from meditalk.internal_core.audio_utils import decode_base64_audio, enforce_max_size_bytes
from meditalk.internal_core.audit import log_event
from meditalk.internal_core.config import AppConfig, load_config
from meditalk.internal_core.contracts import AuditEvent, Notification
from meditalk.internal_core.record_store import (
    InMemoryRecordStore,
    JsonFileRecordStore,
    RecordStoreError,
)
from meditalk.internal_core.session_store import (
    InMemorySessionStore,
    SessionNotFoundError,
    SessionOwnerError,
)


class SessionCreatedResponse(BaseModel):
    session_id: str
    stage: str


class SessionStateResponse(BaseModel):
    session_id: str
    stage: str
    waiter_state: str
    capture_active: bool
    transcriptions_in_flight: int
    patient: Optional[PatientInfo] = None
    transcript: list[ConsultationMessage] = Field(default_factory=list)
    record_id: Optional[str] = None
    diagnoses: Optional[list[Diagnosis]] = None
    compliance_review: Optional[dict[str, Any]] = None
    compliance_pending: bool = False
    persist_error: Optional[str] = None
    notifications: list[Notification] = Field(default_factory=list)


class RegisterRequest(BaseModel):
    name: str = Field(default="", max_length=128)
    age: str | int = ""
    consent: bool = False


class CaptureErrorRequest(BaseModel):
    detail: str = Field(default="", max_length=500)


class AudioChunkRequest(BaseModel):
    data_b64: str = Field(min_length=1)
    mime_type: str = Field(default="audio/webm", max_length=128)
    speaker: Optional[Speaker] = None


class ManualMessageRequest(BaseModel):
    text: str = Field(max_length=20000)
    speaker: Optional[Speaker] = None


class MessageResponse(BaseModel):
    session_id: str
    stage: str
    waiter_state: str
    message: Optional[ConsultationMessage] = None


class EndSessionResponse(BaseModel):
    session_id: str
    finalized: bool
    stage: str
    waiter_state: str
    record_id: Optional[str] = None
    persist_error: Optional[str] = None


class DiagnosisResponse(BaseModel):
    session_id: str
    stage: str
    diagnoses: list[Diagnosis] = Field(default_factory=list)


class AuditEventsResponse(BaseModel):
    session_id: str
    events: list[AuditEvent] = Field(default_factory=list)


class RecordListResponse(BaseModel):
    records: list[ConsultationRecord] = Field(default_factory=list)


class ChatReplyRequest(BaseModel):
    text: str = Field(max_length=4000)


class ChatReplyResponse(BaseModel):
    reply: str


app = FastAPI(title="meditalk backend service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_WS_FINALIZE_TIMEOUT_SEC = 30.0


# -- app.state resolution ---------------------------------------------------


def _get_config() -> AppConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, AppConfig):
        return existing
    created = load_config()
    logging.getLogger("meditalk").setLevel(created.MEDITALK_LOG_LEVEL.upper())
    setattr(app.state, "config", created)
    return created


def _get_session_store() -> InMemorySessionStore:
    existing = getattr(app.state, "session_store", None)
    if isinstance(existing, InMemorySessionStore):
        return existing
    created = InMemorySessionStore(ttl_seconds=_get_config().MEDITALK_SESSION_TTL_SECONDS)
    setattr(app.state, "session_store", created)
    return created


def _get_record_store() -> InMemoryRecordStore:
    existing = getattr(app.state, "record_store", None)
    if existing is not None:
        return existing
    cfg = _get_config()
    kind = (cfg.MEDITALK_RECORD_STORE or "memory").strip().lower()
    if kind == "json":
        created: InMemoryRecordStore = JsonFileRecordStore(cfg.record_store_path())
    else:
        created = InMemoryRecordStore()
    setattr(app.state, "record_store", created)
    return created


def _get_asr_provider() -> ASRProvider:
    existing = getattr(app.state, "asr_provider", None)
    if existing is not None:
        return existing
    created = build_asr_provider(_get_config())
    setattr(app.state, "asr_provider", created)
    return created


def _get_chat_backend() -> ChatBackend:
    existing = getattr(app.state, "chat_backend", None)
    if existing is not None:
        return existing
    created = build_chat_backend(_get_config())
    setattr(app.state, "chat_backend", created)
    return created


def _get_diagnosis_analyzer() -> Any:
    existing = getattr(app.state, "diagnosis_analyzer", None)
    if existing is not None:
        return existing
    cfg = _get_config()
    return DiagnosisAnalyzer(
        _get_chat_backend(),
        model=cfg.MEDITALK_DIAGNOSIS_MODEL,
        temperature=cfg.MEDITALK_LLM_TEMPERATURE,
        max_tokens=cfg.MEDITALK_LLM_MAX_TOKENS,
    )


def _get_compliance_reviewer() -> Any:
    existing = getattr(app.state, "compliance_reviewer", None)
    if existing is not None:
        return existing
    cfg = _get_config()
    return ComplianceReviewer(
        _get_chat_backend(),
        model=cfg.MEDITALK_COMPLIANCE_MODEL,
        temperature=cfg.MEDITALK_LLM_TEMPERATURE,
        max_tokens=cfg.MEDITALK_LLM_MAX_TOKENS,
    )


def _get_follow_up_responder() -> FollowUpResponder:
    existing = getattr(app.state, "follow_up_responder", None)
    if existing is not None:
        return existing
    return FollowUpResponder(_get_chat_backend(), model=_get_config().MEDITALK_CHAT_MODEL)


def _build_workflow(session_id: str, owner_id: str) -> ConsultationWorkflow:
    cfg = _get_config()
    store = _get_session_store()

    def on_event(event_type: str, code: str, detail: str, duration_ms: Optional[int]) -> None:
        log_event(store, session_id, event_type, code, detail, duration_ms)  # type: ignore[arg-type]

    return ConsultationWorkflow(
        owner_id=owner_id,
        record_store=_get_record_store(),
        diagnosis_analyzer=_get_diagnosis_analyzer(),
        compliance_reviewer=_get_compliance_reviewer(),
        grace_seconds=cfg.MEDITALK_END_GRACE_SECONDS,
        compliance_timeout_seconds=cfg.MEDITALK_COMPLIANCE_TIMEOUT_SECONDS,
        schedule=getattr(app.state, "waiter_scheduler", None),
        on_event=on_event,
    )


# -- request helpers --------------------------------------------------------


def _require_clinician(raw: Optional[str]) -> str:
    clinician_id = str(raw or "").strip()
    if not clinician_id:
        raise HTTPException(status_code=401, detail="X-Clinician-Id header is required.")
    return clinician_id


def _load_workflow(session_id: str, clinician_id: str) -> ConsultationWorkflow:
    try:
        return _get_session_store().get_workflow(session_id, owner_id=clinician_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}") from exc
    except SessionOwnerError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def _http_error_for(exc: Exception) -> HTTPException:
    if isinstance(exc, WorkflowValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, WorkflowStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ASRError):
        return HTTPException(status_code=502, detail=f"Transcription failed ({exc.code}): {exc.message}")
    if isinstance(exc, RecordStoreError):
        return HTTPException(status_code=503, detail=f"Record store unavailable ({exc.code}): {exc.message}")
    return HTTPException(status_code=500, detail=str(exc))


def _state_response(session_id: str, workflow: ConsultationWorkflow) -> SessionStateResponse:
    return SessionStateResponse(session_id=session_id, **workflow.view())


def _decode_chunk(data_b64: str) -> bytes:
    try:
        audio = decode_base64_audio(data_b64)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        enforce_max_size_bytes(len(audio), _get_config().MEDITALK_MAX_AUDIO_CHUNK_BYTES)
    except ValueError as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    return audio


async def _transcribe_chunk(
    workflow: ConsultationWorkflow,
    audio: bytes,
    *,
    mime_type: str,
    speaker: Optional[Speaker],
) -> Optional[ConsultationMessage]:
    cfg = _get_config()
    return await workflow.transcribe_audio(
        _get_asr_provider(),
        audio,
        mime_type=mime_type,
        language=cfg.MEDITALK_ASR_LANGUAGE,
        timeout_sec=cfg.MEDITALK_ASR_TIMEOUT_SECONDS,
        speaker=speaker,
    )


# -- routes -----------------------------------------------------------------


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sessions", response_model=SessionCreatedResponse)
async def create_session(x_clinician_id: Optional[str] = Header(default=None)) -> SessionCreatedResponse:
    clinician_id = _require_clinician(x_clinician_id)
    store = _get_session_store()
    store.cleanup_expired_sessions()
    session_id = store.create_session(
        clinician_id,
        lambda new_id: _build_workflow(new_id, clinician_id),
    )
    log_event(store, session_id, "SESSION_CREATED", "CREATED", "")
    logger.info("session created session_id=%s", session_id)
    return SessionCreatedResponse(session_id=session_id, stage="registration")


@app.get("/sessions/{session_id}", response_model=SessionStateResponse)
async def get_session_state(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> SessionStateResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    return _state_response(session_id, workflow)


@app.get("/sessions/{session_id}/audit", response_model=AuditEventsResponse)
async def get_session_audit(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> AuditEventsResponse:
    _load_workflow(session_id, _require_clinician(x_clinician_id))
    return AuditEventsResponse(session_id=session_id, events=_get_session_store().audit_events(session_id))


@app.post("/sessions/{session_id}/register", response_model=SessionStateResponse)
async def register_patient(
    session_id: str,
    payload: RegisterRequest,
    x_clinician_id: Optional[str] = Header(default=None),
) -> SessionStateResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    try:
        workflow.register(PatientInfo(name=payload.name, age=payload.age, consent=payload.consent))
    except (WorkflowValidationError, WorkflowStateError) as exc:
        raise _http_error_for(exc) from exc
    return _state_response(session_id, workflow)


@app.post("/sessions/{session_id}/recording/start", response_model=SessionStateResponse)
async def start_recording(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> SessionStateResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    try:
        workflow.start_recording()
    except WorkflowStateError as exc:
        raise _http_error_for(exc) from exc
    return _state_response(session_id, workflow)


@app.post("/sessions/{session_id}/recording/stop", response_model=SessionStateResponse)
async def stop_recording(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> SessionStateResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    try:
        workflow.stop_recording()
    except WorkflowStateError as exc:
        raise _http_error_for(exc) from exc
    return _state_response(session_id, workflow)


@app.post("/sessions/{session_id}/recording/error", response_model=SessionStateResponse)
async def report_capture_error(
    session_id: str,
    payload: CaptureErrorRequest,
    x_clinician_id: Optional[str] = Header(default=None),
) -> SessionStateResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    workflow.record_capture_failure(payload.detail)
    return _state_response(session_id, workflow)


@app.post("/sessions/{session_id}/audio", response_model=MessageResponse)
async def transcribe_audio_chunk(
    session_id: str,
    payload: AudioChunkRequest,
    x_clinician_id: Optional[str] = Header(default=None),
) -> MessageResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    audio = _decode_chunk(payload.data_b64)
    try:
        message = await _transcribe_chunk(
            workflow,
            audio,
            mime_type=payload.mime_type,
            speaker=payload.speaker,
        )
    except (ASRError, WorkflowStateError) as exc:
        raise _http_error_for(exc) from exc
    return MessageResponse(
        session_id=session_id,
        stage=workflow.stage,
        waiter_state=workflow.waiter.state,
        message=message,
    )


@app.post("/sessions/{session_id}/messages", response_model=MessageResponse)
async def add_manual_message(
    session_id: str,
    payload: ManualMessageRequest,
    x_clinician_id: Optional[str] = Header(default=None),
) -> MessageResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    try:
        message = workflow.accept_transcription(payload.text, payload.speaker)
    except WorkflowStateError as exc:
        raise _http_error_for(exc) from exc
    return MessageResponse(
        session_id=session_id,
        stage=workflow.stage,
        waiter_state=workflow.waiter.state,
        message=message,
    )


def _end_response(session_id: str, workflow: ConsultationWorkflow, finalized: bool) -> EndSessionResponse:
    return EndSessionResponse(
        session_id=session_id,
        finalized=finalized,
        stage=workflow.stage,
        waiter_state=workflow.waiter.state,
        record_id=workflow.record_id,
        persist_error=workflow.persist_error,
    )


@app.post("/sessions/{session_id}/end", response_model=EndSessionResponse)
async def end_session(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> EndSessionResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    try:
        finalized = workflow.end_session()
    except WorkflowStateError as exc:
        raise _http_error_for(exc) from exc
    return _end_response(session_id, workflow, finalized)


@app.post("/sessions/{session_id}/persist/retry", response_model=EndSessionResponse)
async def retry_persist(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> EndSessionResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    try:
        workflow.retry_persist()
    except WorkflowStateError as exc:
        raise _http_error_for(exc) from exc
    if workflow.persist_error is not None:
        raise HTTPException(status_code=503, detail=f"Saving consultation failed: {workflow.persist_error}")
    return _end_response(session_id, workflow, True)


@app.post("/sessions/{session_id}/diagnosis", response_model=DiagnosisResponse)
async def request_diagnosis(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> DiagnosisResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    try:
        diagnoses = await workflow.request_diagnosis()
    except (WorkflowValidationError, WorkflowStateError) as exc:
        raise _http_error_for(exc) from exc
    return DiagnosisResponse(session_id=session_id, stage=workflow.stage, diagnoses=diagnoses)


@app.post("/sessions/{session_id}/reset", response_model=SessionStateResponse)
async def start_new_consultation(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> SessionStateResponse:
    workflow = _load_workflow(session_id, _require_clinician(x_clinician_id))
    workflow.start_new()
    return _state_response(session_id, workflow)


@app.delete("/sessions/{session_id}")
async def destroy_session(
    session_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> dict[str, str]:
    _load_workflow(session_id, _require_clinician(x_clinician_id))
    store = _get_session_store()
    log_event(store, session_id, "SESSION_DESTROYED", "DESTROYED", "client_request")
    store.destroy_session(session_id, reason="client_request")
    return {"session_id": session_id, "status": "destroyed"}


@app.get("/records", response_model=RecordListResponse)
async def list_records(
    patient_name: Optional[str] = Query(default=None, max_length=128),
    patient_age: Optional[str] = Query(default=None, max_length=16),
    exclude_record_id: Optional[str] = Query(default=None, max_length=64),
    x_clinician_id: Optional[str] = Header(default=None),
) -> RecordListResponse:
    clinician_id = _require_clinician(x_clinician_id)
    records = _get_record_store().list_records(clinician_id)
    name = str(patient_name or "").strip()
    if name:
        records = dedupe_patient_records(
            records,
            name,
            (patient_age or "").strip() or None,
            window_seconds=_get_config().MEDITALK_DEDUPE_WINDOW_SECONDS,
        )
    return RecordListResponse(records=exclude_record(records, exclude_record_id))


@app.get("/records/{record_id}", response_model=ConsultationRecord)
async def get_record(
    record_id: str,
    x_clinician_id: Optional[str] = Header(default=None),
) -> ConsultationRecord:
    clinician_id = _require_clinician(x_clinician_id)
    record = _get_record_store().get_record(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown record: {record_id}")
    if record.owner_id != clinician_id:
        raise HTTPException(status_code=403, detail="Record belongs to another clinician.")
    return record


@app.post("/chat/reply", response_model=ChatReplyResponse)
async def chat_reply(
    payload: ChatReplyRequest,
    x_clinician_id: Optional[str] = Header(default=None),
) -> ChatReplyResponse:
    _require_clinician(x_clinician_id)
    responder = _get_follow_up_responder()
    try:
        reply = await asyncio.to_thread(responder.reply, payload.text)
    except AnalysisError as exc:
        status = 400 if exc.code == "TEXT_EMPTY" else 502
        raise HTTPException(status_code=status, detail=exc.message) from exc
    return ChatReplyResponse(reply=reply)


# -- live audio websocket ---------------------------------------------------


class _SocketSender:
    """Serializes sends from the receive loop and background chunk tasks."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._lock = asyncio.Lock()
        self.closed = False

    async def send(self, payload: dict[str, Any]) -> None:
        if self.closed:
            return
        async with self._lock:
            try:
                await self._websocket.send_json(payload)
            except (WebSocketDisconnect, RuntimeError) as exc:
                self.closed = True
                logger.debug("websocket send dropped type=%s error=%s", payload.get("type"), exc)


def _finalized_payload(session_id: str, workflow: ConsultationWorkflow) -> dict[str, Any]:
    return {
        "type": "finalized",
        "session_id": session_id,
        "stage": workflow.stage,
        "record_id": workflow.record_id,
        "message_count": len(workflow.transcript),
        "persist_error": workflow.persist_error,
    }


async def _ws_transcribe(
    sender: _SocketSender,
    session_id: str,
    workflow: ConsultationWorkflow,
    audio: bytes,
    *,
    seq: Optional[int],
    mime_type: str,
    speaker: Optional[Speaker],
) -> None:
    try:
        message = await _transcribe_chunk(workflow, audio, mime_type=mime_type, speaker=speaker)
    except ASRError as exc:
        await sender.send({"type": "error", "seq": seq, "detail": f"asr_failed:{exc.code}"})
        return
    except WorkflowStateError as exc:
        await sender.send({"type": "error", "seq": seq, "detail": str(exc)})
        return
    await sender.send(
        {
            "type": "message",
            "session_id": session_id,
            "seq": seq,
            "message": message.model_dump(mode="json") if message is not None else None,
        }
    )


async def _ws_report_finalized(sender: _SocketSender, session_id: str, workflow: ConsultationWorkflow) -> None:
    if await workflow.wait_finalized(timeout=_WS_FINALIZE_TIMEOUT_SEC):
        await sender.send(_finalized_payload(session_id, workflow))


@app.websocket("/ws/sessions/{session_id}/audio")
async def live_audio_ws(websocket: WebSocket, session_id: str) -> None:
    await websocket.accept()
    clinician_id = str(websocket.query_params.get("clinician_id", "")).strip()
    if not clinician_id:
        await websocket.send_json({"type": "error", "detail": "clinician_id is required."})
        await websocket.close(code=1008)
        return
    try:
        workflow = _get_session_store().get_workflow(session_id, owner_id=clinician_id)
    except (SessionNotFoundError, SessionOwnerError) as exc:
        await websocket.send_json({"type": "error", "detail": str(exc)})
        await websocket.close(code=1008)
        return

    sender = _SocketSender(websocket)
    pending: set[asyncio.Task[None]] = set()

    def _spawn(coro: Any) -> None:
        task = asyncio.create_task(coro)
        pending.add(task)
        task.add_done_callback(pending.discard)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await sender.send({"type": "error", "detail": "invalid_json"})
                continue
            if not isinstance(payload, dict):
                await sender.send({"type": "error", "detail": "invalid_payload"})
                continue

            message_type = str(payload.get("type", "")).strip().lower()
            if message_type == "start":
                try:
                    workflow.start_recording()
                except WorkflowStateError as exc:
                    await sender.send({"type": "error", "detail": str(exc)})
                    continue
                await sender.send(
                    {"type": "ack_start", "session_id": session_id, "waiter_state": workflow.waiter.state}
                )
                continue

            if message_type == "audio_chunk":
                seq_raw = payload.get("seq")
                seq = seq_raw if isinstance(seq_raw, int) else None
                try:
                    audio = _decode_chunk(str(payload.get("data_b64", "")))
                except HTTPException as exc:
                    await sender.send({"type": "error", "seq": seq, "detail": exc.detail})
                    continue
                speaker = payload.get("speaker")
                if speaker not in {"doctor", "patient"}:
                    speaker = None
                mime_type = str(payload.get("mime_type", "") or "audio/webm").strip()
                await sender.send(
                    {"type": "ack_audio_chunk", "session_id": session_id, "seq": seq, "bytes": len(audio)}
                )
                _spawn(
                    _ws_transcribe(
                        sender,
                        session_id,
                        workflow,
                        audio,
                        seq=seq,
                        mime_type=mime_type,
                        speaker=speaker,
                    )
                )
                continue

            if message_type == "stop":
                try:
                    workflow.stop_recording()
                except WorkflowStateError as exc:
                    await sender.send({"type": "error", "detail": str(exc)})
                    continue
                await sender.send(
                    {"type": "ack_stop", "session_id": session_id, "waiter_state": workflow.waiter.state}
                )
                continue

            if message_type == "end":
                try:
                    finalized = workflow.end_session()
                except WorkflowStateError as exc:
                    await sender.send({"type": "error", "detail": str(exc)})
                    continue
                await sender.send(
                    {
                        "type": "ack_end",
                        "session_id": session_id,
                        "finalized": finalized,
                        "waiter_state": workflow.waiter.state,
                    }
                )
                if finalized:
                    await sender.send(_finalized_payload(session_id, workflow))
                else:
                    _spawn(_ws_report_finalized(sender, session_id, workflow))
                continue

            await sender.send({"type": "error", "detail": f"unsupported_type:{message_type or 'missing'}"})
    except WebSocketDisconnect:
        sender.closed = True
        logger.info("live audio websocket disconnected session_id=%s pending=%d", session_id, len(pending))
        # Microphone is gone with the socket; in-flight chunks still land.
        if workflow.stage == "recording" and workflow.waiter.capture_active:
            workflow.stop_recording()
