"""Structured symptom analysis report returned by the AI collaborator."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UrgencyLevel = Literal["low", "moderate", "high"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Medication(_CamelModel):
    name: str
    description: str
    dosage: Optional[str] = None
    side_effects: Optional[List[str]] = None


class Supplement(_CamelModel):
    name: str
    description: str
    dosage: Optional[str] = None
    benefits: Optional[List[str]] = None


class Condition(_CamelModel):
    name: str
    description: str
    symptoms: List[str]
    causes: List[str] = Field(default_factory=list)
    urgency_level: UrgencyLevel
    medications: Optional[List[Medication]] = None
    supplements: Optional[List[Supplement]] = None


class Recommendation(_CamelModel):
    title: str
    description: str
    icon: str
    is_emergency: Optional[bool] = None


class AnalysisReport(_CamelModel):
    user_symptoms: str
    conditions: List[Condition]
    urgency_level: UrgencyLevel
    urgency_text: str
    recommendations: List[Recommendation]
