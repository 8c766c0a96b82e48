from __future__ import annotations

"""
Ordered, timestamped transcript log for one live consultation.

Design intent:
- Append in transcription completion order, never in send order.
- Hand out snapshots by value so finalized transcripts cannot drift.
"""

from typing import Callable, Optional

from meditalk.consultation.models import ConsultationMessage, Speaker

MessageListener = Callable[[ConsultationMessage], None]


class TranscriptAccumulator:
    def __init__(self) -> None:
        self._messages: list[ConsultationMessage] = []
        self._listeners: list[MessageListener] = []

    def __len__(self) -> int:
        return len(self._messages)

    def subscribe(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def append(self, text: str, speaker: Optional[Speaker] = None) -> Optional[ConsultationMessage]:
        content = (text or "").strip()
        if not content:
            return None
        message = ConsultationMessage(content=content, speaker=speaker)
        self._messages.append(message)
        for listener in list(self._listeners):
            listener(message)
        return message

    def snapshot(self) -> list[ConsultationMessage]:
        return list(self._messages)

    def text(self) -> str:
        return "\n".join(item.content for item in self._messages)

    def clear(self) -> None:
        self._messages = []
