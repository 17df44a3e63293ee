from __future__ import annotations

from typing import Any, Dict, Protocol


class SymptomAnalyzer(Protocol):
    """External AI collaborator turning free-text symptoms into a structured report."""

    @property
    def configured(self) -> bool:
        ...

    async def analyze(self, symptoms: str) -> Dict[str, Any]:
        ...
