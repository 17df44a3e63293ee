"""Provider webhook receiver."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from ....core.dependencies import get_webhook_ingestion_service
from ....domain.errors import (
    EventInFlightError,
    InvalidSignatureError,
    MalformedEventError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    StoreError,
)
from ....domain.models import PaymentProvider
from ....services.webhook_ingestion import WebhookIngestionService
from ..schemas.webhook_schemas import WebhookAckResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookAckResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    service: WebhookIngestionService = Depends(get_webhook_ingestion_service),
) -> WebhookAckResponse:
    """Verify and apply one provider delivery; non-2xx answers make the provider redeliver."""
    try:
        provider_key = PaymentProvider(provider)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider.") from exc
    if provider_key == PaymentProvider.NONE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider.")

    raw_body = await request.body()
    try:
        ack = await run_in_threadpool(service.ingest, provider_key, raw_body, dict(request.headers))
    except (InvalidSignatureError, MalformedEventError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except EventInFlightError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (ProviderNotConfiguredError, ProviderUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except StoreError as exc:
        logger.error("Store failure while ingesting %s webhook: %s", provider, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not record event."
        ) from exc

    return WebhookAckResponse(
        event_id=ack.event_id,
        duplicate=ack.duplicate,
        ignored=ack.ignored,
        user_id=ack.user_id,
    )
