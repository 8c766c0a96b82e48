from __future__ import annotations

"""
Clinician-facing consultation stages and their collaborator calls.

Design intent:
- Stages only move forward through explicit, validated transitions.
- Collaborator failures become notifications; only validation blocks a step.
- Compliance review runs in the background and never holds up a transition.

A workflow instance belongs to one asyncio event loop; blocking collaborators
(speech-to-text, LLM analysis) are pushed to worker threads.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, Protocol, Sequence

from meditalk.analysis.diagnosis import MAX_DIAGNOSES, unavailable_fallback
from meditalk.consultation.models import (
    ConsultationMessage,
    Diagnosis,
    PatientInfo,
    Speaker,
    sort_diagnoses,
)
from meditalk.consultation.transcript import TranscriptAccumulator
from meditalk.consultation.waiter import (
    DEFAULT_GRACE_SECONDS,
    RecordingCompletionWaiter,
    Scheduler,
    WaiterStateError,
)
from meditalk.internal_core.asr.base import ASRError, ASRProvider
from meditalk.internal_core.contracts import Notification, NotificationLevel
from meditalk.internal_core.record_store import InMemoryRecordStore, RecordStoreError

Stage = Literal["registration", "recording", "post_recording_review", "diagnosis_review"]
EventHook = Callable[[str, str, str, Optional[int]], None]

logger = logging.getLogger(__name__)


class WorkflowValidationError(ValueError):
    """Input does not allow the requested transition; state is unchanged."""


class WorkflowStateError(RuntimeError):
    """The requested operation is not available in the current stage."""


class DiagnosisCollaborator(Protocol):
    def analyze(self, messages: Sequence[ConsultationMessage], patient: PatientInfo) -> list[Diagnosis]: ...


class ComplianceCollaborator(Protocol):
    def review(self, messages: Sequence[ConsultationMessage], patient: PatientInfo) -> dict[str, Any]: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_patient_info(info: PatientInfo) -> None:
    if not info.name:
        raise WorkflowValidationError("Patient name is required.")
    if not info.age:
        raise WorkflowValidationError("Patient age is required.")
    if info.consent is not True:
        raise WorkflowValidationError("Patient consent is required before recording.")


class ConsultationWorkflow:
    def __init__(
        self,
        *,
        owner_id: str,
        record_store: InMemoryRecordStore,
        diagnosis_analyzer: Optional[DiagnosisCollaborator] = None,
        compliance_reviewer: Optional[ComplianceCollaborator] = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        compliance_timeout_seconds: float = 120.0,
        schedule: Optional[Scheduler] = None,
        on_event: Optional[EventHook] = None,
    ) -> None:
        self.owner_id = owner_id
        self._record_store = record_store
        self._diagnosis_analyzer = diagnosis_analyzer
        self._compliance_reviewer = compliance_reviewer
        self._compliance_timeout_seconds = float(compliance_timeout_seconds)
        self._on_event = on_event

        self.transcript = TranscriptAccumulator()
        self.waiter = RecordingCompletionWaiter(
            self.transcript,
            self._on_finalized,
            grace_seconds=grace_seconds,
            schedule=schedule,
        )

        self.stage: Stage = "registration"
        self.patient: Optional[PatientInfo] = None
        self.record_id: Optional[str] = None
        self.diagnoses: Optional[list[Diagnosis]] = None
        self.compliance_review: Optional[dict[str, Any]] = None
        self.persist_error: Optional[str] = None
        self.notifications: list[Notification] = []
        self._final_snapshot: Optional[list[ConsultationMessage]] = None
        self._compliance_task: Optional[asyncio.Task[None]] = None
        self._finalized_event = asyncio.Event()
        self._generation = 0

    # -- stage transitions -------------------------------------------------

    def register(self, info: PatientInfo) -> None:
        if self.stage != "registration":
            raise WorkflowStateError(f"Cannot register a patient during stage '{self.stage}'.")
        validate_patient_info(info)
        self.patient = info
        self.stage = "recording"
        self._notify("info", "Consultation started", f"Recording for {info.name}.")
        self._emit("PATIENT_REGISTERED", "REGISTERED", f"age={info.age}")

    def start_recording(self) -> None:
        self._require_stage("recording")
        try:
            self.waiter.start_recording()
        except WaiterStateError as exc:
            raise WorkflowStateError(str(exc)) from exc
        self._emit("RECORDING_STARTED", "CAPTURE_ON", f"messages={len(self.transcript)}")

    def stop_recording(self) -> None:
        self._require_stage("recording")
        self.waiter.set_capture_active(False)
        self._emit("RECORDING_STOPPED", "CAPTURE_OFF", f"messages={len(self.transcript)}")

    def record_capture_failure(self, detail: str) -> None:
        """Microphone could not be acquired; stay in the current stage."""
        if self.waiter.state == "recording":
            self.waiter.set_capture_active(False)
        self._notify("error", "Microphone unavailable", detail or "Microphone access is required.")
        self._emit("CAPTURE_FAILED", "CAPTURE_FAILED", f"detail_chars={len(detail or '')}")

    def end_session(self) -> bool:
        self._require_stage("recording")
        self._emit(
            "END_REQUESTED",
            "END_REQUESTED",
            f"capture={self.waiter.capture_active} in_flight={self.waiter.in_flight} messages={len(self.transcript)}",
        )
        try:
            return self.waiter.request_end()
        except WaiterStateError as exc:
            raise WorkflowStateError(str(exc)) from exc

    def retry_persist(self) -> None:
        if self.stage != "recording" or self._final_snapshot is None or self.persist_error is None:
            raise WorkflowStateError("Nothing to retry.")
        self._persist_and_advance(self._final_snapshot)

    async def request_diagnosis(self) -> list[Diagnosis]:
        self._require_stage("post_recording_review")
        messages = self.transcript.snapshot()
        if not messages:
            raise WorkflowValidationError("Transcript is empty; nothing to analyze.")
        patient = self._require_patient()
        generation = self._generation

        started = time.perf_counter()
        try:
            if self._diagnosis_analyzer is None:
                raise RuntimeError("diagnosis analyzer is not configured")
            result = await asyncio.to_thread(self._diagnosis_analyzer.analyze, messages, patient)
            diagnoses = sort_diagnoses(list(result), limit=MAX_DIAGNOSES)
            failed = False
        except Exception as exc:
            logger.warning("diagnosis analysis failed error=%s", exc)
            diagnoses = [unavailable_fallback()]
            failed = True
        duration_ms = int((time.perf_counter() - started) * 1000)

        if generation != self._generation:
            # Clinician started a new consultation while we were waiting.
            return diagnoses

        self.diagnoses = diagnoses
        self.stage = "diagnosis_review"
        if failed:
            self._notify("warning", "Diagnosis unavailable", "Consult a medical professional directly.")
            self._emit("DIAGNOSIS_FALLBACK", "DIAGNOSIS_FALLBACK", "analysis failed", duration_ms)
            return diagnoses

        if self.record_id is not None:
            try:
                self._record_store.update_record(self.record_id, diagnoses=diagnoses)
            except (RecordStoreError, KeyError) as exc:
                logger.error("saving diagnoses failed record_id=%s error=%s", self.record_id, exc)
                self._notify("error", "Saving diagnoses failed", str(exc))
        self._emit("DIAGNOSIS_DONE", "DIAGNOSIS_OK", f"count={len(diagnoses)}", duration_ms)
        return diagnoses

    def start_new(self) -> None:
        self._reset_session_state()
        self._notify("info", "New consultation", "Register the next patient.")
        self._emit("SESSION_RESET", "START_NEW", "")

    def close(self, reason: str = "") -> None:
        self._reset_session_state()
        logger.info("workflow closed reason=%s", reason)

    # -- transcription -----------------------------------------------------

    def accept_transcription(self, text: str, speaker: Optional[Speaker] = None) -> Optional[ConsultationMessage]:
        self._require_stage("recording")
        if self.waiter.state == "finalized":
            logger.warning("late transcription dropped chars=%d", len((text or "").strip()))
            return None
        return self.transcript.append(text, speaker)

    async def transcribe_audio(
        self,
        provider: ASRProvider,
        audio: bytes,
        *,
        mime_type: str = "audio/webm",
        language: str = "ko",
        timeout_sec: int = 30,
        speaker: Optional[Speaker] = None,
    ) -> Optional[ConsultationMessage]:
        self._require_stage("recording")
        if self.waiter.state == "finalized":
            raise WorkflowStateError("Session already finalized.")

        generation = self._generation
        self.waiter.transcription_started()
        started = time.perf_counter()
        try:
            try:
                result = await asyncio.to_thread(
                    provider.transcribe_audio,
                    audio,
                    mime_type,
                    language,
                    timeout_sec,
                )
            except ASRError as exc:
                self._notify("error", "Transcription failed", exc.message)
                self._emit("ASR_FAILED", exc.code, f"provider={exc.provider_name} bytes={len(audio)}")
                raise
            except Exception as exc:
                logger.error("transcription failed provider=%s error=%r", provider.name(), exc)
                wrapped = ASRError("ASR_UNEXPECTED", str(exc) or type(exc).__name__, provider.name())
                self._notify("error", "Transcription failed", wrapped.message)
                self._emit("ASR_FAILED", wrapped.code, f"provider={wrapped.provider_name} bytes={len(audio)}")
                raise wrapped from exc
            duration_ms = int((time.perf_counter() - started) * 1000)
            if generation != self._generation or self.stage != "recording":
                return None
            # Append before marking the request finished so the waiter sees
            # the new message rather than an idle pipeline.
            message = self.accept_transcription(result.text, speaker)
            self._emit(
                "ASR_CHUNK_DONE",
                "ASR_OK" if message is not None else "ASR_EMPTY",
                f"provider={provider.name()} bytes={len(audio)} chars={len(result.text)}",
                duration_ms,
            )
            return message
        finally:
            if generation == self._generation:
                self.waiter.transcription_finished()

    async def wait_finalized(self, timeout: Optional[float] = None) -> bool:
        """Wait until the waiter finalizes the transcript; False on timeout."""
        try:
            await asyncio.wait_for(self._finalized_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # -- views -------------------------------------------------------------

    def view(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "waiter_state": self.waiter.state,
            "capture_active": self.waiter.capture_active,
            "transcriptions_in_flight": self.waiter.in_flight,
            "patient": self.patient,
            "transcript": self.transcript.snapshot(),
            "record_id": self.record_id,
            "diagnoses": self.diagnoses,
            "compliance_review": self.compliance_review,
            "compliance_pending": self._compliance_task is not None and not self._compliance_task.done(),
            "persist_error": self.persist_error,
            "notifications": list(self.notifications),
        }

    # -- internals ---------------------------------------------------------

    def _on_finalized(self, snapshot: list[ConsultationMessage]) -> None:
        self._final_snapshot = snapshot
        self._finalized_event.set()
        self._persist_and_advance(snapshot)

    def _persist_and_advance(self, snapshot: list[ConsultationMessage]) -> None:
        patient = self._require_patient()
        started = time.perf_counter()
        try:
            if self.record_id is None:
                record = self._record_store.create_record(self.owner_id, patient, snapshot)
                self.record_id = record.id
            else:
                self._record_store.update_record(self.record_id, conversation=snapshot)
        except (RecordStoreError, KeyError) as exc:
            self.persist_error = str(exc)
            logger.error("persisting consultation failed error=%s", exc)
            self._notify("error", "Saving consultation failed", "The transcript is kept; retry saving.")
            self._emit(
                "PERSIST_FAILED",
                getattr(exc, "code", "PERSIST_FAILED"),
                f"error={type(exc).__name__} messages={len(snapshot)}",
            )
            return

        self.persist_error = None
        self.stage = "post_recording_review"
        self._notify("info", "Consultation saved", f"{len(snapshot)} messages recorded.")
        self._emit(
            "FINALIZE",
            "FINALIZED",
            f"record_id={self.record_id} messages={len(snapshot)}",
            int((time.perf_counter() - started) * 1000),
        )
        self._schedule_compliance(snapshot, patient)

    def _schedule_compliance(self, snapshot: list[ConsultationMessage], patient: PatientInfo) -> None:
        if self._compliance_reviewer is None or not snapshot or self.record_id is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("compliance review skipped: no running event loop")
            return
        self._compliance_task = loop.create_task(
            self._run_compliance(self._generation, self.record_id, snapshot, patient)
        )

    async def _run_compliance(
        self,
        generation: int,
        record_id: str,
        snapshot: list[ConsultationMessage],
        patient: PatientInfo,
    ) -> None:
        reviewer = self._compliance_reviewer
        if reviewer is None:
            return
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(reviewer.review, snapshot, patient),
                timeout=self._compliance_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("compliance review failed record_id=%s error=%r", record_id, exc)
            if generation == self._generation:
                self._emit("COMPLIANCE_FAILED", "COMPLIANCE_FAILED", type(exc).__name__)
            return
        duration_ms = int((time.perf_counter() - started) * 1000)

        try:
            self._record_store.update_record(record_id, compliance_review=result)
        except (RecordStoreError, KeyError) as exc:
            logger.error("saving compliance review failed record_id=%s error=%s", record_id, exc)
            return
        if generation != self._generation:
            return
        self.compliance_review = result
        self._emit("COMPLIANCE_DONE", "COMPLIANCE_OK", f"record_id={record_id}", duration_ms)

    def _reset_session_state(self) -> None:
        self._generation += 1
        task = self._compliance_task
        self._compliance_task = None
        if task is not None and not task.done():
            task.cancel()
        self.waiter.reset()
        self.transcript.clear()
        self._finalized_event.clear()
        self.stage = "registration"
        self.patient = None
        self.record_id = None
        self.diagnoses = None
        self.compliance_review = None
        self.persist_error = None
        self.notifications = []
        self._final_snapshot = None

    def _require_stage(self, stage: Stage) -> None:
        if self.stage != stage:
            raise WorkflowStateError(f"Operation requires stage '{stage}', current stage is '{self.stage}'.")

    def _require_patient(self) -> PatientInfo:
        if self.patient is None:
            raise WorkflowStateError("No patient registered.")
        return self.patient

    def _notify(self, level: NotificationLevel, title: str, detail: str = "") -> None:
        self.notifications.append(Notification(level=level, title=title, detail=detail, ts_iso=_now_iso()))

    def _emit(self, event_type: str, code: str, detail: str, duration_ms: Optional[int] = None) -> None:
        if self._on_event is None:
            return
        self._on_event(event_type, code, detail, duration_ms)
