"""Pydantic schemas for the symptom analysis endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SymptomInput(BaseModel):
    symptoms: str = Field(min_length=3, description="Free-text description of the symptoms.")


class UsageResponse(BaseModel):
    is_premium: bool
    count: int
    limit: int
    remaining: Optional[int]
    window_resets_at: Optional[datetime]
