import dataclasses
import json
from types import SimpleNamespace

import pytest

from meditalk.analysis.chat import FollowUpResponder
from meditalk.analysis.compliance import ComplianceReviewer
from meditalk.analysis.diagnosis import DiagnosisAnalyzer, parse_diagnoses
from meditalk.analysis.llm_client import (
    AnalysisError,
    LlamaCppChatBackend,
    MockChatBackend,
    OpenAIChatBackend,
    build_chat_backend,
    parse_json_object,
    strip_markdown_fences,
)
from meditalk.consultation.models import ConsultationMessage, PatientInfo
from meditalk.internal_core.config import load_config

_PATIENT = PatientInfo(name="정우진", age="61", consent=True)
_MESSAGES = [
    ConsultationMessage(content="가슴이 답답하고 숨이 차요", speaker="patient"),
    ConsultationMessage(content="언제부터 그러셨어요?", speaker="doctor"),
]


def test_strip_markdown_fences_and_parse_json_object() -> None:
    fenced = '```json\n{"a": 1}\n```'
    assert strip_markdown_fences(fenced) == '{"a": 1}'
    assert parse_json_object(fenced) == {"a": 1}
    assert parse_json_object('분석 결과: {"b": 2} 입니다') == {"b": 2}
    assert parse_json_object("not json at all") is None
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("") is None


def test_parse_diagnoses_sorts_and_truncates() -> None:
    raw = json.dumps(
        {
            "diagnoses": [
                {"disease": "협심증", "probability": 45, "symptoms": ["흉부 압박감"], "recommendation": "심전도"},
                {"disease": "역류성 식도염", "probability": "30"},
                {"disease": "천식", "probability": 62.6},
                {"disease": "공황장애", "probability": 10},
            ]
        },
        ensure_ascii=False,
    )
    result = parse_diagnoses(raw)
    assert [(item.disease, item.probability) for item in result] == [
        ("천식", 63),
        ("협심증", 45),
        ("역류성 식도염", 30),
    ]


def test_parse_diagnoses_clamps_probability_and_skips_invalid_items() -> None:
    raw = '{"diagnoses": [{"disease": "a", "probability": 150}, "junk", {"probability": 20}]}'
    result = parse_diagnoses(raw)
    assert [(item.disease, item.probability) for item in result] == [("a", 100)]


def test_parse_diagnoses_falls_back_when_answer_is_not_json() -> None:
    result = parse_diagnoses("죄송하지만 진단할 수 없습니다.")
    assert len(result) == 1
    assert result[0].disease == "추가 검사 필요"
    assert result[0].probability == 80


def test_diagnosis_analyzer_sends_transcript_and_patient() -> None:
    backend = MockChatBackend(
        responses=['```json\n{"diagnoses": [{"disease": "협심증", "probability": 70}]}\n```']
    )
    analyzer = DiagnosisAnalyzer(backend, model="gpt-4.1")

    result = analyzer.analyze(_MESSAGES, _PATIENT)

    assert [item.disease for item in result] == ["협심증"]
    call = backend.calls[0]
    assert call["model"] == "gpt-4.1"
    assert call["json_mode"] is True
    assert "정우진" in call["user"]
    assert "61세" in call["user"]
    assert "가슴이 답답하고 숨이 차요" in call["user"]


def test_diagnosis_analyzer_rejects_empty_transcript() -> None:
    analyzer = DiagnosisAnalyzer(MockChatBackend(), model="gpt-4.1")
    with pytest.raises(AnalysisError) as exc_info:
        analyzer.analyze([], _PATIENT)
    assert exc_info.value.code == "TRANSCRIPT_EMPTY"


def test_compliance_review_enriches_parsed_answer() -> None:
    answer = '```json\n{"compliance": {"status": "compliant", "details": "", "relatedArticles": []}}\n```'
    reviewer = ComplianceReviewer(MockChatBackend(responses=[answer]), model="gpt-4o-mini")

    result = reviewer.review(_MESSAGES, _PATIENT)

    assert result["compliance"]["status"] == "compliant"
    assert result["patientInfo"] == {"name": "정우진", "age": "61"}
    assert result["conversationSummary"]["messageCount"] == 2
    assert result["conversationSummary"]["textLength"] == len(
        "가슴이 답답하고 숨이 차요\n언제부터 그러셨어요?"
    )
    assert result["reviewDate"]


def test_compliance_review_keeps_raw_answer_when_unparseable() -> None:
    reviewer = ComplianceReviewer(MockChatBackend(responses=["검토 결과 특이사항 없음"]), model="gpt-4o-mini")

    result = reviewer.review(_MESSAGES, _PATIENT)

    assert result["rawAnalysis"] == "검토 결과 특이사항 없음"
    assert result["parseError"]
    assert result["conversationSummary"]["messageCount"] == 2


def test_compliance_review_propagates_backend_errors() -> None:
    def responder(system: str, user: str) -> str:
        raise AnalysisError("OPENAI_ERROR", "connection refused")

    reviewer = ComplianceReviewer(MockChatBackend(responder=responder), model="gpt-4o-mini")
    with pytest.raises(AnalysisError):
        reviewer.review(_MESSAGES, _PATIENT)


def test_follow_up_responder() -> None:
    backend = MockChatBackend(responses=["많이 불편하셨겠어요. 언제부터 아프셨나요?"])
    responder = FollowUpResponder(backend, model="gpt-4o-mini")

    assert responder.reply("배가 아파요") == "많이 불편하셨겠어요. 언제부터 아프셨나요?"
    assert backend.calls[0]["user"] == "배가 아파요"

    with pytest.raises(AnalysisError) as exc_info:
        responder.reply("   ")
    assert exc_info.value.code == "TEXT_EMPTY"


def test_openai_chat_backend_uses_client_and_json_mode() -> None:
    captured: dict = {}

    def create(**kwargs):
        captured.update(kwargs)
        message = SimpleNamespace(content='  {"diagnoses": []}  ')
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    backend = OpenAIChatBackend(api_key="", client=client)

    content = backend.complete(
        model="gpt-4.1",
        system="sys",
        user="usr",
        temperature=0.3,
        max_tokens=100,
        json_mode=True,
    )

    assert content == '{"diagnoses": []}'
    assert captured["response_format"] == {"type": "json_object"}
    assert captured["messages"][0] == {"role": "system", "content": "sys"}


def test_openai_chat_backend_rejects_empty_choices_and_missing_key() -> None:
    client = SimpleNamespace(
        chat=SimpleNamespace(completions=SimpleNamespace(create=lambda **kwargs: SimpleNamespace(choices=[])))
    )
    backend = OpenAIChatBackend(api_key="", client=client)
    with pytest.raises(AnalysisError) as exc_info:
        backend.complete(model="m", system="s", user="u", temperature=0.1, max_tokens=10)
    assert exc_info.value.code == "EMPTY_COMPLETION"

    with pytest.raises(AnalysisError) as exc_info:
        OpenAIChatBackend(api_key="").complete(model="m", system="s", user="u", temperature=0.1, max_tokens=10)
    assert exc_info.value.code == "OPENAI_KEY_MISSING"


def test_llama_backend_requires_model_path() -> None:
    backend = LlamaCppChatBackend("")
    with pytest.raises(AnalysisError) as exc_info:
        backend.complete(model="local", system="s", user="u", temperature=0.1, max_tokens=10)
    assert exc_info.value.code == "LLAMA_MODEL_MISSING"


def test_build_chat_backend_switch() -> None:
    cfg = load_config()
    assert isinstance(build_chat_backend(dataclasses.replace(cfg, MEDITALK_LLM_BACKEND="mock")), MockChatBackend)
    assert isinstance(
        build_chat_backend(dataclasses.replace(cfg, MEDITALK_LLM_BACKEND="openai")), OpenAIChatBackend
    )
    assert isinstance(
        build_chat_backend(dataclasses.replace(cfg, MEDITALK_LLM_BACKEND="llama_cpp")), LlamaCppChatBackend
    )
    with pytest.raises(AnalysisError):
        build_chat_backend(dataclasses.replace(cfg, MEDITALK_LLM_BACKEND="unknown"))
