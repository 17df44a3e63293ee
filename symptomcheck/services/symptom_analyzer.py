from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from ..domain.models.analysis import AnalysisReport

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """You are a healthcare AI assistant. Analyse the symptoms the user describes and
respond strictly in JSON with this structure:
{
  "userSymptoms": "the symptoms provided by the user",
  "conditions": [
    {
      "name": "Condition name",
      "description": "Brief description of the condition",
      "symptoms": ["symptom1", "symptom2"],
      "causes": ["cause1", "cause2"],
      "urgencyLevel": "low | moderate | high",
      "medications": [{"name": "", "description": "", "dosage": "", "sideEffects": [""]}],
      "supplements": [{"name": "", "description": "", "dosage": "", "benefits": [""]}]
    }
  ],
  "urgencyLevel": "low | moderate | high",
  "urgencyText": "Text explaining the urgency level",
  "recommendations": [
    {"title": "", "description": "", "icon": "lucide icon name", "isEmergency": false}
  ]
}

Guidelines:
- Return exactly 3 possible conditions, each with 4-6 common symptoms and 2-4 causes or risk factors.
- urgencyLevel is "low" (monitor at home), "moderate" (see a doctor soon) or "high" (emergency).
- Provide 3-5 actionable recommendations; mark potentially life-threatening cases with isEmergency true.
- Include 1-3 commonly prescribed medications and 1-3 supplements per condition.
- Use only Lucide icon names such as "stethoscope", "thermometer" or "clipboard".
- Always advise consulting a healthcare professional.
"""


class AnalysisFailedError(RuntimeError):
    """The model call failed or returned a report that does not match the schema."""


class OpenAISymptomAnalyzer:
    """Wrapper around OpenAI chat completions producing an :class:`AnalysisReport`."""

    def __init__(self, api_key: Optional[str], model: str, *, client: Optional[Any] = None) -> None:
        self._model = model
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key)
        else:
            self._client = None

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def analyze(self, symptoms: str) -> Dict[str, Any]:
        if not symptoms or not symptoms.strip():
            raise ValueError("Cannot analyse an empty symptom description.")
        if not self._client:
            raise RuntimeError("OpenAI API key is not configured.")

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": symptoms.strip()},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
            )
        except Exception as exc:  # pragma: no cover - depends on external API
            logger.exception("OpenAI API error while analysing symptoms.")
            raise AnalysisFailedError(f"OpenAI request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AnalysisFailedError("OpenAI returned an empty analysis.")
        try:
            report = AnalysisReport.model_validate(json.loads(content))
        except (ValueError, ValidationError) as exc:
            logger.warning("Discarding malformed analysis: %s", exc)
            raise AnalysisFailedError("OpenAI returned a malformed analysis.") from exc
        return report.model_dump(by_alias=True, exclude_none=True)
