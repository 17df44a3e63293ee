"""Subscription status and command endpoints for the signed-in user."""

from fastapi import APIRouter, Depends, HTTPException, status

from ....core.dependencies import get_reconciliation_service
from ....domain.errors import (
    AlreadyEndedError,
    BillingError,
    CommandFailedError,
    InvalidSubscriptionStateError,
    NoActiveSubscriptionError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    UnknownUserError,
)
from ....services.reconciliation_service import ReconciliationService
from ..dependencies import require_user_id
from ..schemas.subscription_schemas import (
    CheckoutRequest,
    CheckoutResponse,
    ConfirmCheckoutRequest,
    PaymentMethodUpdateResponse,
    SubscriptionStatusResponse,
)

router = APIRouter(prefix="/subscription", tags=["subscription"])


def _to_http(exc: BillingError) -> HTTPException:
    if isinstance(exc, UnknownUserError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, NoActiveSubscriptionError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AlreadyEndedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "already_ended", "message": str(exc)},
        )
    if isinstance(exc, InvalidSubscriptionStateError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "invalid_state", "message": str(exc)},
        )
    if isinstance(exc, (CommandFailedError, ProviderUnavailableError, ProviderNotConfiguredError)):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "retryable", "message": str(exc)},
        )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("", response_model=SubscriptionStatusResponse)
def get_subscription(
    user_id: int = Depends(require_user_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> SubscriptionStatusResponse:
    """Reconcile with the provider and return the current state."""
    try:
        return SubscriptionStatusResponse.from_status(service.get_status(user_id))
    except BillingError as exc:
        raise _to_http(exc) from exc


@router.post("/cancel", response_model=SubscriptionStatusResponse)
def cancel_subscription(
    user_id: int = Depends(require_user_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> SubscriptionStatusResponse:
    try:
        return SubscriptionStatusResponse.from_status(service.cancel(user_id))
    except BillingError as exc:
        raise _to_http(exc) from exc


@router.post("/reactivate", response_model=SubscriptionStatusResponse)
def reactivate_subscription(
    user_id: int = Depends(require_user_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> SubscriptionStatusResponse:
    try:
        return SubscriptionStatusResponse.from_status(service.reactivate(user_id))
    except BillingError as exc:
        raise _to_http(exc) from exc


@router.get("/payment-method-update", response_model=PaymentMethodUpdateResponse)
def payment_method_update(
    user_id: int = Depends(require_user_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> PaymentMethodUpdateResponse:
    """Return the provider-hosted page where the payment method can be changed."""
    try:
        return PaymentMethodUpdateResponse(url=service.payment_method_update_url(user_id))
    except BillingError as exc:
        raise _to_http(exc) from exc


@router.post("/checkout", response_model=CheckoutResponse)
def start_checkout(
    payload: CheckoutRequest,
    user_id: int = Depends(require_user_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> CheckoutResponse:
    try:
        handle = service.start_checkout(user_id, payload.provider)
    except BillingError as exc:
        raise _to_http(exc) from exc
    return CheckoutResponse(session_id=handle.session_id, url=handle.url, provider=payload.provider)


@router.post("/checkout/confirm", response_model=SubscriptionStatusResponse)
def confirm_checkout(
    payload: ConfirmCheckoutRequest,
    user_id: int = Depends(require_user_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> SubscriptionStatusResponse:
    """Link the subscription returned by the provider's approval redirect."""
    try:
        result = service.confirm_checkout(user_id, payload.provider_subscription_id)
    except BillingError as exc:
        raise _to_http(exc) from exc
    return SubscriptionStatusResponse.from_status(result)
