from __future__ import annotations

"""
Collapse near-duplicate consultation records for patient history display.

Records with the same patient identity created inside the same fixed
time bucket are treated as one encounter saved more than once; only the
latest save survives.
"""

import math
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from meditalk.consultation.models import ConsultationRecord

DEFAULT_WINDOW_SECONDS = 10 * 60


def _epoch_seconds(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _bucket_key(record: ConsultationRecord, window_seconds: float) -> tuple[str, str, int]:
    bucket = int(math.floor(_epoch_seconds(record.created_at) / window_seconds))
    return (record.patient_name, record.patient_age, bucket)


def dedupe_patient_records(
    records: Sequence[ConsultationRecord],
    patient_name: str,
    patient_age: Optional[str] = None,
    *,
    window_seconds: float = DEFAULT_WINDOW_SECONDS,
) -> list[ConsultationRecord]:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")

    matching = [item for item in records if item.patient_name == patient_name]
    if not matching:
        return []

    pinned_age = matching[0].patient_age if patient_age is None else str(patient_age)
    matching = [item for item in matching if item.patient_age == pinned_age]

    latest: dict[tuple[str, str, int], ConsultationRecord] = {}
    for record in matching:
        key = _bucket_key(record, window_seconds)
        current = latest.get(key)
        if current is None or _epoch_seconds(record.created_at) > _epoch_seconds(current.created_at):
            latest[key] = record

    return sorted(latest.values(), key=lambda item: _epoch_seconds(item.created_at), reverse=True)


def exclude_record(records: Iterable[ConsultationRecord], record_id: Optional[str]) -> list[ConsultationRecord]:
    if not record_id:
        return list(records)
    return [item for item in records if item.id != record_id]
