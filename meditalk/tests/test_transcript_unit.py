from meditalk.consultation.models import ConsultationMessage
from meditalk.consultation.transcript import TranscriptAccumulator


def test_append_builds_message_with_id_and_timestamp() -> None:
    transcript = TranscriptAccumulator()
    message = transcript.append("  머리가 아파요  ", speaker="patient")

    assert message is not None
    assert message.content == "머리가 아파요"
    assert message.speaker == "patient"
    assert message.id
    assert message.timestamp.tzinfo is not None
    assert len(transcript) == 1


def test_append_ignores_blank_text() -> None:
    transcript = TranscriptAccumulator()
    assert transcript.append("") is None
    assert transcript.append("   \n\t") is None
    assert len(transcript) == 0


def test_ids_are_unique() -> None:
    transcript = TranscriptAccumulator()
    first = transcript.append("one")
    second = transcript.append("two")
    assert first is not None and second is not None
    assert first.id != second.id


def test_snapshot_is_not_affected_by_later_appends() -> None:
    transcript = TranscriptAccumulator()
    transcript.append("first")
    snapshot = transcript.snapshot()
    transcript.append("second")

    assert [item.content for item in snapshot] == ["first"]
    assert [item.content for item in transcript.snapshot()] == ["first", "second"]


def test_listeners_receive_each_appended_message() -> None:
    transcript = TranscriptAccumulator()
    seen: list[ConsultationMessage] = []
    transcript.subscribe(seen.append)

    transcript.append("hello")
    transcript.append("   ")
    transcript.append("world")

    assert [item.content for item in seen] == ["hello", "world"]


def test_text_joins_contents_and_clear_empties_log() -> None:
    transcript = TranscriptAccumulator()
    transcript.append("a")
    transcript.append("b")
    assert transcript.text() == "a\nb"

    transcript.clear()
    assert len(transcript) == 0
    assert transcript.snapshot() == []
