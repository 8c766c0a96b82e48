from __future__ import annotations

from meditalk.analysis.llm_client import AnalysisError, ChatBackend

_SYSTEM_PROMPT = """당신은 친절한 의료진입니다. 환자의 말을 듣고 다음과 같이 응답하세요:

1. 환자의 증상에 공감하며 친근하게 응답
2. 관련 증상이나 궁금한 점을 한 가지 질문
3. 간단한 조언이나 주의사항 제공
4. 진단은 하지 말고 증상 청취에 집중
5. 자연스러운 한국어로 50-100자 정도의 간결한 응답"""


class FollowUpResponder:
    def __init__(self, backend: ChatBackend, *, model: str, max_tokens: int = 200) -> None:
        self._backend = backend
        self._model = model
        self._max_tokens = max_tokens

    def reply(self, text: str) -> str:
        utterance = (text or "").strip()
        if not utterance:
            raise AnalysisError("TEXT_EMPTY", "No text provided.")
        return self._backend.complete(
            model=self._model,
            system=_SYSTEM_PROMPT,
            user=utterance,
            temperature=0.7,
            max_tokens=self._max_tokens,
        )
