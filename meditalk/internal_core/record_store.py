from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Sequence

from meditalk.consultation.models import (
    ConsultationMessage,
    ConsultationRecord,
    PatientInfo,
    utc_now,
)
from meditalk.internal_core.audio_utils import safe_unlink

logger = logging.getLogger(__name__)

_PATCHABLE_FIELDS = {"conversation", "diagnoses", "compliance_review"}


class RecordStoreError(RuntimeError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class InMemoryRecordStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self._records: Dict[str, ConsultationRecord] = {}

    def create_record(
        self,
        owner_id: str,
        patient_info: PatientInfo,
        conversation: Sequence[ConsultationMessage],
    ) -> ConsultationRecord:
        if not owner_id:
            raise RecordStoreError("OWNER_MISSING", "owner_id is required")
        now = utc_now()
        record = ConsultationRecord(
            owner_id=owner_id,
            patient_name=patient_info.name,
            patient_age=patient_info.age,
            conversation=list(conversation),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._records[record.id] = record
            try:
                self._commit()
            except RecordStoreError:
                self._records.pop(record.id, None)
                raise
        return record.model_copy(deep=True)

    def update_record(self, record_id: str, **patch: Any) -> ConsultationRecord:
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise RecordStoreError("PATCH_INVALID", f"Unsupported fields: {sorted(unknown)}")

        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise KeyError(f"Unknown record_id: {record_id}")

            if "conversation" in patch:
                incoming = list(patch["conversation"] or [])
                existing = current.conversation
                # Messages already persisted stay exactly as they were.
                if incoming[: len(existing)] != existing:
                    raise RecordStoreError(
                        "CONVERSATION_REWRITE",
                        "conversation updates may only append messages",
                    )
                patch["conversation"] = incoming

            updated = current.model_copy(update={**patch, "updated_at": utc_now()}, deep=True)
            self._records[record_id] = updated
            try:
                self._commit()
            except RecordStoreError:
                self._records[record_id] = current
                raise
        return updated.model_copy(deep=True)

    def get_record(self, record_id: str) -> Optional[ConsultationRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def list_records(self, owner_id: str) -> List[ConsultationRecord]:
        with self._lock:
            items = [
                item.model_copy(deep=True)
                for item in self._records.values()
                if item.owner_id == owner_id
            ]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    def _commit(self) -> None:
        return None


class JsonFileRecordStore(InMemoryRecordStore):
    """Record store that rewrites one JSON file after every change."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RecordStoreError("STORE_UNREADABLE", f"Cannot read {self._path}: {exc}") from exc
        records = raw.get("records", []) if isinstance(raw, dict) else []
        for item in records:
            record = ConsultationRecord.model_validate(item)
            self._records[record.id] = record
        logger.info("record store loaded path=%s records=%d", self._path, len(self._records))

    def _commit(self) -> None:
        payload = {
            "records": [
                item.model_dump(mode="json", by_alias=True) for item in self._records.values()
            ]
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".records_", suffix=".json", dir=str(self._path.parent))
        except OSError as exc:
            raise RecordStoreError("STORE_WRITE_FAILED", f"Cannot write {self._path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            safe_unlink(Path(tmp_name))
            raise RecordStoreError("STORE_WRITE_FAILED", f"Cannot write {self._path}: {exc}") from exc


RecordStore = InMemoryRecordStore
