"""Symptom analysis behind the free-tier quota gate."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool

from ....core.dependencies import (
    get_reconciliation_service,
    get_symptom_analyzer,
    get_usage_quota_service,
)
from ....domain.errors import UnknownUserError
from ....domain.ports.analysis import SymptomAnalyzer
from ....services.reconciliation_service import ReconciliationService
from ....services.symptom_analyzer import AnalysisFailedError
from ....services.usage_quota import QuotaDecision, UsageQuotaService
from ..dependencies import require_user_id
from ..schemas.analysis_schemas import SymptomInput, UsageResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["analysis"])


def _usage_response(decision: QuotaDecision) -> UsageResponse:
    return UsageResponse(
        is_premium=decision.is_premium,
        count=decision.count,
        limit=decision.limit,
        remaining=decision.remaining,
        window_resets_at=decision.window_resets_at,
    )


@router.get("/usage", response_model=UsageResponse)
def get_usage(
    user_id: int = Depends(require_user_id),
    quota: UsageQuotaService = Depends(get_usage_quota_service),
) -> UsageResponse:
    try:
        return _usage_response(quota.get_usage(user_id))
    except UnknownUserError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/analyze-symptoms")
async def analyze_symptoms(
    payload: SymptomInput,
    user_id: int = Depends(require_user_id),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
    quota: UsageQuotaService = Depends(get_usage_quota_service),
    analyzer: SymptomAnalyzer = Depends(get_symptom_analyzer),
) -> Dict[str, Any]:
    if not analyzer.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Symptom analysis is unavailable."
        )
    now = datetime.now(timezone.utc)
    try:
        user = await run_in_threadpool(reconciliation.ensure_fresh, user_id, now)
        decision = await run_in_threadpool(quota.check_and_consume, user, now)
    except UnknownUserError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": "quota_exhausted",
                "message": "Free analysis limit reached. Upgrade to premium to continue.",
                "limit": decision.limit,
                "window_resets_at": (
                    decision.window_resets_at.isoformat() if decision.window_resets_at else None
                ),
            },
        )

    try:
        report = await analyzer.analyze(payload.symptoms)
    except AnalysisFailedError as exc:
        await run_in_threadpool(quota.refund, user_id, decision)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except ValueError as exc:
        await run_in_threadpool(quota.refund, user_id, decision)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return {"analysis": report, "usage": _usage_response(decision).model_dump(mode="json")}
