from __future__ import annotations

"""
Review a consultation transcript against Korean medical-practice regulations.

The result is stored as-is on the consultation record; when the model
answer cannot be parsed the raw text is kept instead of failing.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Sequence

from meditalk.analysis.llm_client import AnalysisError, ChatBackend, parse_json_object
from meditalk.consultation.models import ConsultationMessage, PatientInfo

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "당신은 한국 의료법 전문가입니다. 의료진과 환자 간의 대화를 분석하여 "
    "법적 준수 사항을 검토합니다."
)


def build_compliance_prompt(transcript_text: str, patient: PatientInfo) -> str:
    return (
        "다음은 의료진과 환자 간의 대화 기록입니다. 한국 의료법 관점에서 검토해 주세요.\n\n"
        "환자 정보:\n"
        f"- 이름: {patient.name}\n"
        f"- 나이: {patient.age}세\n\n"
        "대화 내용:\n"
        f"{transcript_text}\n\n"
        "의료 행위, 의료법 준수 여부, 잠재적 법적 위험, 권장 사항, 의무기록 작성 시 주의사항을 "
        "분석하고 관련 조항(예: 의료법 제12조 제1항)을 반드시 명시해 주세요.\n\n"
        "JSON 형식:\n"
        "{\n"
        '  "medicalActs": [{"act": "", "relatedArticles": []}],\n'
        '  "compliance": {"status": "compliant|warning|violation", "details": "", "relatedArticles": []},\n'
        '  "risks": [{"risk": "", "relatedArticles": []}],\n'
        '  "recommendations": [{"recommendation": "", "relatedArticles": []}],\n'
        '  "recordingNotes": [{"note": "", "relatedArticles": []}]\n'
        "}\n"
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ComplianceReviewer:
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

    def review(self, messages: Sequence[ConsultationMessage], patient: PatientInfo) -> dict[str, Any]:
        transcript_text = "\n".join(item.content for item in messages)
        if not transcript_text.strip():
            raise AnalysisError("TRANSCRIPT_EMPTY", "No conversation to review.")

        logger.info("compliance review started messages=%d chars=%d", len(messages), len(transcript_text))
        raw = self._backend.complete(
            model=self._model,
            system=_SYSTEM_PROMPT,
            user=build_compliance_prompt(transcript_text, patient),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )

        parsed = parse_json_object(raw)
        if parsed is None:
            logger.warning("compliance answer was not valid JSON chars=%d", len(raw))
            result: dict[str, Any] = {
                "rawAnalysis": raw,
                "parseError": "response is not a JSON object",
                "timestamp": _now_iso(),
            }
        else:
            result = dict(parsed)

        result.update(
            {
                "reviewDate": _now_iso(),
                "patientInfo": {"name": patient.name, "age": patient.age},
                "conversationSummary": {
                    "messageCount": len(messages),
                    "textLength": len(transcript_text),
                },
            }
        )
        return result
