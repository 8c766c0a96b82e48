import asyncio
import threading
from typing import Any, Optional

import pytest

from meditalk.analysis.llm_client import AnalysisError
from meditalk.consultation.models import Diagnosis, PatientInfo
from meditalk.consultation.workflow import (
    ConsultationWorkflow,
    WorkflowStateError,
    WorkflowValidationError,
)
from meditalk.internal_core.asr import ASRError, ASRProvider, MockASRProvider
from meditalk.internal_core.contracts import TranscriptionResult
from meditalk.internal_core.record_store import InMemoryRecordStore, RecordStoreError

_PATIENT = PatientInfo(name="이서연", age="52", consent=True)


class _FakeDiagnosis:
    def __init__(self, result: Optional[list[Diagnosis]] = None, error: Optional[Exception] = None) -> None:
        self.result = result or []
        self.error = error
        self.calls = 0

    def analyze(self, messages, patient) -> list[Diagnosis]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.result)


class _FakeCompliance:
    def __init__(
        self,
        result: Optional[dict[str, Any]] = None,
        error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
    ) -> None:
        self.result = result if result is not None else {"compliance": {"status": "compliant"}}
        self.error = error
        self.gate = gate
        self.calls = 0

    def review(self, messages, patient) -> dict[str, Any]:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return dict(self.result)


class _FlakyStore(InMemoryRecordStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def create_record(self, owner_id, patient_info, conversation):
        if self.failures > 0:
            self.failures -= 1
            raise RecordStoreError("STORE_WRITE_FAILED", "disk full")
        return super().create_record(owner_id, patient_info, conversation)


class _GatedASR(ASRProvider):
    def __init__(self, text: str) -> None:
        self.text = text
        self.gate = threading.Event()

    def transcribe_audio(self, audio, mime_type="audio/webm", language="ko", timeout_sec=30):
        self.gate.wait(timeout=5)
        return TranscriptionResult(text=self.text, confidence=0.9)

    def name(self) -> str:
        return "gated"


class _FailingASR(ASRProvider):
    def transcribe_audio(self, audio, mime_type="audio/webm", language="ko", timeout_sec=30):
        raise ASRError("OPENAI_HTTP_ERROR", "transcription request failed with status 500", self.name())

    def name(self) -> str:
        return "failing"


def _workflow(
    *,
    store: Optional[InMemoryRecordStore] = None,
    diagnosis: Optional[_FakeDiagnosis] = None,
    compliance: Optional[_FakeCompliance] = None,
    grace_seconds: float = 3.0,
    compliance_timeout_seconds: float = 5.0,
    events: Optional[list[str]] = None,
) -> ConsultationWorkflow:
    def on_event(event_type, code, detail, duration_ms) -> None:
        if events is not None:
            events.append(event_type)

    return ConsultationWorkflow(
        owner_id="dr_choi",
        record_store=store or InMemoryRecordStore(),
        diagnosis_analyzer=diagnosis or _FakeDiagnosis(),
        compliance_reviewer=compliance or _FakeCompliance(),
        grace_seconds=grace_seconds,
        compliance_timeout_seconds=compliance_timeout_seconds,
        on_event=on_event,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def test_register_requires_name_age_and_consent() -> None:
    workflow = _workflow()
    for info in (
        PatientInfo(name="", age="52", consent=True),
        PatientInfo(name="이서연", age="", consent=True),
        PatientInfo(name="이서연", age="52", consent=False),
    ):
        with pytest.raises(WorkflowValidationError):
            workflow.register(info)
        assert workflow.stage == "registration"
        assert workflow.patient is None

    workflow.register(_PATIENT)
    assert workflow.stage == "recording"
    with pytest.raises(WorkflowStateError):
        workflow.register(_PATIENT)


def test_recording_operations_require_recording_stage() -> None:
    workflow = _workflow()
    with pytest.raises(WorkflowStateError):
        workflow.start_recording()
    with pytest.raises(WorkflowStateError):
        workflow.end_session()
    with pytest.raises(WorkflowStateError):
        workflow.accept_transcription("hello")


def test_full_consultation_persists_and_reviews() -> None:
    store = InMemoryRecordStore()
    diagnosis = _FakeDiagnosis(
        result=[
            Diagnosis(disease="긴장성 두통", probability=40),
            Diagnosis(disease="편두통", probability=75),
            Diagnosis(disease="부비동염", probability=20),
            Diagnosis(disease="고혈압", probability=55),
        ]
    )
    compliance = _FakeCompliance(result={"compliance": {"status": "warning"}})
    events: list[str] = []

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(store=store, diagnosis=diagnosis, compliance=compliance, events=events)
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.accept_transcription("어디가 불편하세요?", "doctor")
        workflow.accept_transcription("머리가 지끈지끈 아파요", "patient")
        workflow.stop_recording()

        assert workflow.end_session() is True
        assert workflow.stage == "post_recording_review"
        assert await _wait_for(lambda: workflow.compliance_review is not None)

        diagnoses = await workflow.request_diagnosis()
        assert [item.disease for item in diagnoses] == ["편두통", "고혈압", "긴장성 두통"]
        return workflow

    workflow = asyncio.run(scenario())

    assert workflow.stage == "diagnosis_review"
    record = store.get_record(workflow.record_id or "")
    assert record is not None
    assert [item.content for item in record.conversation] == ["어디가 불편하세요?", "머리가 지끈지끈 아파요"]
    assert record.compliance_review == {"compliance": {"status": "warning"}}
    assert record.diagnoses is not None and len(record.diagnoses) == 3
    assert "FINALIZE" in events
    assert "COMPLIANCE_DONE" in events
    assert "DIAGNOSIS_DONE" in events


def test_diagnosis_failure_substitutes_fallback() -> None:
    store = InMemoryRecordStore()
    diagnosis = _FakeDiagnosis(error=AnalysisError("OPENAI_ERROR", "connection refused"))

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(store=store, diagnosis=diagnosis)
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.accept_transcription("배가 아파요")
        workflow.stop_recording()
        workflow.end_session()
        diagnoses = await workflow.request_diagnosis()
        assert len(diagnoses) == 1
        assert diagnoses[0].probability == 0
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.stage == "diagnosis_review"
    assert workflow.notifications[-1].level == "warning"
    record = store.get_record(workflow.record_id or "")
    assert record is not None and record.diagnoses is None


def test_diagnosis_requires_non_empty_transcript() -> None:
    diagnosis = _FakeDiagnosis()

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(diagnosis=diagnosis)
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.stop_recording()
        workflow.end_session()
        assert workflow.stage == "post_recording_review"
        with pytest.raises(WorkflowValidationError):
            await workflow.request_diagnosis()
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.stage == "post_recording_review"
    assert diagnosis.calls == 0


def test_diagnosis_only_after_recording_review() -> None:
    async def scenario() -> None:
        workflow = _workflow()
        workflow.register(_PATIENT)
        workflow.accept_transcription("a")
        with pytest.raises(WorkflowStateError):
            await workflow.request_diagnosis()

    asyncio.run(scenario())


def test_hanging_compliance_review_never_blocks_transition() -> None:
    gate = threading.Event()
    compliance = _FakeCompliance(gate=gate)
    events: list[str] = []

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(compliance=compliance, compliance_timeout_seconds=0.05, events=events)
        try:
            workflow.register(_PATIENT)
            workflow.start_recording()
            workflow.accept_transcription("숨이 차요")
            workflow.stop_recording()
            assert workflow.end_session() is True
            assert workflow.stage == "post_recording_review"
            assert workflow.view()["compliance_pending"] is True
            assert await _wait_for(lambda: "COMPLIANCE_FAILED" in events)
        finally:
            gate.set()
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.compliance_review is None
    assert workflow.stage == "post_recording_review"


def test_compliance_error_leaves_review_unset() -> None:
    compliance = _FakeCompliance(error=AnalysisError("OPENAI_ERROR", "boom"))
    events: list[str] = []

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(compliance=compliance, events=events)
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.accept_transcription("a")
        workflow.stop_recording()
        workflow.end_session()
        assert await _wait_for(lambda: "COMPLIANCE_FAILED" in events)
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.compliance_review is None
    assert workflow.stage == "post_recording_review"


def test_persist_failure_keeps_transcript_and_retry_succeeds() -> None:
    store = _FlakyStore(failures=1)

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(store=store)
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.accept_transcription("목이 아파요")
        workflow.stop_recording()
        workflow.end_session()

        assert workflow.stage == "recording"
        assert workflow.waiter.state == "finalized"
        assert workflow.persist_error
        assert workflow.notifications[-1].level == "error"
        assert [m.content for m in workflow.transcript.snapshot()] == ["목이 아파요"]

        # Late transcriptions do not change a finalized transcript.
        assert workflow.accept_transcription("late") is None

        workflow.retry_persist()
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.stage == "post_recording_review"
    assert workflow.persist_error is None
    record = store.get_record(workflow.record_id or "")
    assert record is not None
    assert [m.content for m in record.conversation] == ["목이 아파요"]


def test_retry_persist_rejected_without_failure() -> None:
    workflow = _workflow()
    with pytest.raises(WorkflowStateError):
        workflow.retry_persist()


def test_end_waits_for_in_flight_transcription() -> None:
    provider = _GatedASR("마지막 문장입니다")

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow()
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.accept_transcription("첫 문장")

        task = asyncio.create_task(workflow.transcribe_audio(provider, b"chunk", speaker="patient"))
        assert await _wait_for(lambda: workflow.waiter.in_flight == 1)

        assert workflow.end_session() is False
        assert workflow.waiter.state == "awaiting_drain"
        assert workflow.stage == "recording"

        provider.gate.set()
        message = await task
        assert message is not None and message.speaker == "patient"
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.stage == "post_recording_review"
    assert [m.content for m in workflow.transcript.snapshot()] == ["첫 문장", "마지막 문장입니다"]
    assert workflow.waiter.in_flight == 0


def test_grace_timer_finalizes_after_silent_last_chunk() -> None:
    provider = MockASRProvider(scripted=["   "])

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(grace_seconds=0.05)
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.accept_transcription("증상이 좋아졌어요")
        assert workflow.end_session() is False

        message = await workflow.transcribe_audio(provider, b"silence")
        assert message is None
        assert await workflow.wait_finalized(timeout=2.0) is True
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.stage == "post_recording_review"
    assert len(workflow.transcript) == 1


def test_asr_failure_is_reported_and_session_continues() -> None:
    events: list[str] = []

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(events=events)
        workflow.register(_PATIENT)
        workflow.start_recording()
        with pytest.raises(ASRError):
            await workflow.transcribe_audio(_FailingASR(), b"chunk")
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.stage == "recording"
    assert workflow.waiter.in_flight == 0
    assert workflow.notifications[-1].level == "error"
    assert "ASR_FAILED" in events


def test_capture_failure_keeps_stage() -> None:
    events: list[str] = []
    workflow = _workflow(events=events)
    workflow.register(_PATIENT)

    workflow.record_capture_failure("NotAllowedError: permission denied")

    assert workflow.stage == "recording"
    assert workflow.waiter.state == "idle"
    assert workflow.notifications[-1].title == "Microphone unavailable"
    assert events[-1] == "CAPTURE_FAILED"


def test_start_new_clears_session_state() -> None:
    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow(diagnosis=_FakeDiagnosis(result=[Diagnosis(disease="감기", probability=50)]))
        workflow.register(_PATIENT)
        workflow.start_recording()
        workflow.accept_transcription("콧물이 나요")
        workflow.stop_recording()
        workflow.end_session()
        await workflow.request_diagnosis()
        workflow.start_new()
        return workflow

    workflow = asyncio.run(scenario())
    assert workflow.stage == "registration"
    assert workflow.patient is None
    assert workflow.record_id is None
    assert workflow.diagnoses is None
    assert workflow.compliance_review is None
    assert len(workflow.transcript) == 0
    assert workflow.waiter.state == "idle"


def test_start_new_cancels_pending_compliance_review() -> None:
    store = InMemoryRecordStore()
    gate = threading.Event()
    compliance = _FakeCompliance(gate=gate)

    async def scenario() -> tuple[ConsultationWorkflow, str]:
        workflow = _workflow(store=store, compliance=compliance)
        try:
            workflow.register(_PATIENT)
            workflow.start_recording()
            workflow.accept_transcription("a")
            workflow.stop_recording()
            workflow.end_session()
            record_id = workflow.record_id or ""
            await asyncio.sleep(0.01)
            workflow.start_new()
            assert workflow.view()["compliance_pending"] is False
        finally:
            gate.set()
        await asyncio.sleep(0.05)
        return workflow, record_id

    workflow, record_id = asyncio.run(scenario())
    assert workflow.compliance_review is None
    record = store.get_record(record_id)
    assert record is not None and record.compliance_review is None


class _UnreachableASR(ASRProvider):
    def transcribe_audio(self, audio, mime_type="audio/webm", language="ko", timeout_sec=30):
        raise OSError("connection reset")

    def name(self) -> str:
        return "unreachable"


def test_unexpected_asr_error_is_wrapped_and_reported() -> None:
    events: list[str] = []

    async def scenario() -> tuple[ConsultationWorkflow, ASRError]:
        workflow = _workflow(events=events)
        workflow.register(_PATIENT)
        workflow.start_recording()
        with pytest.raises(ASRError) as excinfo:
            await workflow.transcribe_audio(_UnreachableASR(), b"chunk")
        return workflow, excinfo.value

    workflow, error = asyncio.run(scenario())
    assert error.code == "ASR_UNEXPECTED"
    assert error.provider_name == "unreachable"
    assert isinstance(error.__cause__, OSError)
    assert workflow.stage == "recording"
    assert workflow.waiter.in_flight == 0
    assert workflow.notifications[-1].title == "Transcription failed"
    assert events[-1] == "ASR_FAILED"


def test_end_session_before_recording_is_rejected() -> None:
    store = InMemoryRecordStore()
    workflow = _workflow(store=store)
    workflow.register(_PATIENT)

    with pytest.raises(WorkflowStateError):
        workflow.end_session()

    assert workflow.stage == "recording"
    assert workflow.waiter.state == "idle"
    assert workflow.record_id is None
    assert store.list_records("dr_choi") == []


def test_transcript_follows_completion_order() -> None:
    first_sent = _GatedASR("먼저 보낸 조각")
    second_sent = _GatedASR("나중에 보낸 조각")

    async def scenario() -> ConsultationWorkflow:
        workflow = _workflow()
        workflow.register(_PATIENT)
        workflow.start_recording()

        first = asyncio.create_task(workflow.transcribe_audio(first_sent, b"one"))
        second = asyncio.create_task(workflow.transcribe_audio(second_sent, b"two"))
        assert await _wait_for(lambda: workflow.waiter.in_flight == 2)

        second_sent.gate.set()
        await second
        first_sent.gate.set()
        await first
        return workflow

    workflow = asyncio.run(scenario())
    assert [m.content for m in workflow.transcript.snapshot()] == ["나중에 보낸 조각", "먼저 보낸 조각"]
    assert workflow.waiter.in_flight == 0


def test_audit_details_omit_client_text_and_store_errors() -> None:
    details: dict[str, str] = {}

    def on_event(event_type, code, detail, duration_ms) -> None:
        details[event_type] = detail

    workflow = ConsultationWorkflow(
        owner_id="dr_choi",
        record_store=_FlakyStore(failures=1),
        on_event=on_event,
    )
    workflow.register(_PATIENT)
    reason = "NotAllowedError: 이서연 denied microphone"
    workflow.record_capture_failure(reason)
    workflow.start_recording()
    workflow.accept_transcription("가슴이 답답해요")
    workflow.stop_recording()
    workflow.end_session()

    assert details["CAPTURE_FAILED"] == f"detail_chars={len(reason)}"
    assert "disk full" not in details["PERSIST_FAILED"]
    assert details["PERSIST_FAILED"] == "error=RecordStoreError messages=1"
