from __future__ import annotations

"""
Typed consultation data contracts shared by the workflow, store and API.

Design intent:
- Keep transcript messages immutable once accepted.
- Serialize with camelCase aliases for the browser client.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Speaker = Literal["doctor", "patient"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class ConsultationMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id, min_length=1)
    content: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=utc_now)
    speaker: Optional[Speaker] = None


class PatientInfo(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = ""
    age: str = ""
    consent: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("age", mode="before")
    @classmethod
    def _age_as_string(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    def is_complete(self) -> bool:
        return bool(self.name) and bool(self.age) and self.consent is True


class Diagnosis(BaseModel):
    model_config = ConfigDict(extra="forbid")

    disease: str
    probability: int = Field(ge=0, le=100)
    symptoms: list[str] = Field(default_factory=list)
    recommendation: str = ""

    @field_validator("probability", mode="before")
    @classmethod
    def _clamp_probability(cls, value: Any) -> int:
        try:
            number = int(round(float(value)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, number))


def sort_diagnoses(items: list[Diagnosis], limit: int = 3) -> list[Diagnosis]:
    ordered = sorted(items, key=lambda item: item.probability, reverse=True)
    return ordered[:limit]


class ConsultationRecord(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str = Field(default_factory=new_id)
    owner_id: str
    patient_name: str
    patient_age: str
    conversation: list[ConsultationMessage] = Field(default_factory=list)
    diagnoses: Optional[list[Diagnosis]] = None
    compliance_review: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
