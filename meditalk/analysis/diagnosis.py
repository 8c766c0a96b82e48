from __future__ import annotations

"""
Candidate-diagnosis generation from a consultation transcript.

Output is reference material for the clinician, never a diagnosis of record.
"""

import logging
from typing import Sequence

from pydantic import ValidationError

from meditalk.analysis.llm_client import AnalysisError, ChatBackend, parse_json_object
from meditalk.consultation.models import ConsultationMessage, Diagnosis, PatientInfo, sort_diagnoses

logger = logging.getLogger(__name__)

MAX_DIAGNOSES = 3

_SYSTEM_PROMPT = (
    "당신은 경험이 풍부한 의료 전문가입니다. 환자와의 대화에서 드러난 증상을 바탕으로 "
    "가능한 진단을 제시하되, 실제 진료는 반드시 전문의 상담이 필요하다는 점을 강조하세요."
)


def build_diagnosis_prompt(transcript_text: str, patient: PatientInfo) -> str:
    return (
        "다음 환자의 진료 대화를 분석하여 예상 병명 3개를 제시해주세요.\n\n"
        "환자 정보:\n"
        f"- 이름: {patient.name}\n"
        f"- 나이: {patient.age}세\n\n"
        "대화 기록:\n"
        f"{transcript_text}\n\n"
        "아래 JSON 형식으로만 답해주세요:\n"
        '{"diagnoses": [{"disease": "병명", "probability": 1-100 사이 정수, '
        '"symptoms": ["증상"], "recommendation": "권장 사항"}]}\n\n'
        "- 확률이 높은 순서로 정렬\n"
        "- 정확한 의학 용어 사용\n"
        "- 증상은 대화에서 언급된 내용만 사용\n"
        "- 권장 사항은 구체적이고 실용적으로 작성\n"
    )


def unparseable_answer_fallback() -> list[Diagnosis]:
    return [
        Diagnosis(
            disease="추가 검사 필요",
            probability=80,
            symptoms=["명확한 진단을 위한 추가 정보 필요"],
            recommendation="전문의와 직접 상담하여 정확한 진단을 받으시기 바랍니다.",
        )
    ]


def unavailable_fallback() -> Diagnosis:
    return Diagnosis(
        disease="진단 분석 불가",
        probability=0,
        symptoms=[],
        recommendation="AI 진단 분석을 사용할 수 없습니다. 전문의와 상담하세요.",
    )


class DiagnosisAnalyzer:
    def __init__(
        self,
        backend: ChatBackend,
        *,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> None:
        self._backend = backend
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    def analyze(self, messages: Sequence[ConsultationMessage], patient: PatientInfo) -> list[Diagnosis]:
        transcript_text = "\n".join(item.content for item in messages).strip()
        if not transcript_text:
            raise AnalysisError("TRANSCRIPT_EMPTY", "No conversation to analyze.")

        logger.info(
            "diagnosis analysis started messages=%d chars=%d",
            len(messages),
            len(transcript_text),
        )
        raw = self._backend.complete(
            model=self._model,
            system=_SYSTEM_PROMPT,
            user=build_diagnosis_prompt(transcript_text, patient),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            json_mode=True,
        )
        return parse_diagnoses(raw)


def parse_diagnoses(raw: str) -> list[Diagnosis]:
    data = parse_json_object(raw)
    items = data.get("diagnoses") if data else None
    if not isinstance(items, list):
        logger.warning("diagnosis answer was not valid JSON chars=%d", len(raw or ""))
        return unparseable_answer_fallback()

    diagnoses: list[Diagnosis] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            diagnoses.append(Diagnosis.model_validate(item))
        except ValidationError:
            continue
    if not diagnoses:
        return unparseable_answer_fallback()
    return sort_diagnoses(diagnoses, limit=MAX_DIAGNOSES)
