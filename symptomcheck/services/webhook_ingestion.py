"""Verified, deduplicated webhook processing.

Each delivery is claimed by ``(provider, event_id)`` before any work happens.
The claim is only marked processed after the user record has been written;
on failure it is released so the provider's redelivery runs the event again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Mapping, Optional

from ..domain.errors import (
    CustomerDeletedError,
    EventInFlightError,
    InvalidSignatureError,
    MalformedEventError,
    ProviderUnavailableError,
    StoreError,
    SubscriptionNotFoundError,
    TerminalAdapterError,
    TransientAdapterError,
)
from ..domain.models import ClaimOutcome, EventKind, PaymentProvider, ProviderEvent, User
from ..domain.models.subscription import is_pending_reference
from ..domain.models.webhook_event import SUBSCRIPTION_SHAPED_EVENTS
from ..domain.ports.payments import PaymentProviderAdapter
from ..domain.ports.persistence import SubscriptionStore, WebhookEventStore
from ..infrastructure.providers.registry import ProviderRegistry
from .reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


class _Outcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    UNKNOWN_SUBSCRIBER = "unknown_subscriber"


@dataclass(frozen=True, slots=True)
class IngestAck:
    event_id: str
    duplicate: bool = False
    ignored: bool = False
    user_id: Optional[int] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookIngestionService:
    """Turns provider webhook deliveries into resolver runs, at most once per event id."""

    def __init__(
        self,
        events: WebhookEventStore,
        store: SubscriptionStore,
        providers: ProviderRegistry,
        reconciliation: ReconciliationService,
        *,
        lease_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._events = events
        self._store = store
        self._providers = providers
        self._reconciliation = reconciliation
        self._lease_seconds = lease_seconds
        self._clock = clock

    def ingest(
        self, provider: PaymentProvider | str, raw_body: bytes, headers: Mapping[str, str]
    ) -> IngestAck:
        """
        Verify, deduplicate and apply one webhook delivery.

        Args:
            provider: Provider the delivery was addressed to
            raw_body: Unmodified request body, as signed by the provider
            headers: Request headers; names are matched case-insensitively

        Returns:
            IngestAck describing whether the event was new, a duplicate or ignored

        Raises:
            ProviderNotConfiguredError: If ``provider`` is unknown or unavailable
            InvalidSignatureError: If the signature did not verify
            MalformedEventError: If the body is not a usable event
            EventInFlightError: If another delivery currently holds the claim
            ProviderUnavailableError: If a provider call needed to apply the event failed
            StoreError: If persistence failed
        """
        adapter = self._providers.adapter_for(provider)
        lowered = {key.lower(): value for key, value in headers.items()}
        event = self._parse(adapter, raw_body, lowered)

        now = self._clock()
        outcome = self._events.claim_event(
            event.provider, event.event_id, event.event_type, now, self._lease_seconds
        )
        if outcome == ClaimOutcome.ALREADY_PROCESSED:
            logger.info("Duplicate %s event %s acknowledged", event.provider.value, event.event_id)
            return IngestAck(event_id=event.event_id, duplicate=True)
        if outcome == ClaimOutcome.IN_FLIGHT:
            raise EventInFlightError(f"Event {event.event_id} is already being processed")

        try:
            result, user_id = self._process(adapter, event, now)
        except Exception:
            self._release(event)
            raise

        if result == _Outcome.UNKNOWN_SUBSCRIBER:
            # Left unrecorded so a redelivery after checkout links the ids can apply it.
            self._release(event)
        else:
            self._events.complete_event(event.provider, event.event_id, self._clock())
        return IngestAck(
            event_id=event.event_id,
            ignored=result != _Outcome.APPLIED,
            user_id=user_id,
        )

    def _parse(
        self, adapter: PaymentProviderAdapter, raw_body: bytes, headers: Mapping[str, str]
    ) -> ProviderEvent:
        try:
            return adapter.parse_event(raw_body, headers)
        except InvalidSignatureError as exc:
            logger.warning("Rejected %s webhook: %s", adapter.provider.value, exc)
            raise
        except MalformedEventError as exc:
            logger.warning("Malformed %s webhook: %s", adapter.provider.value, exc)
            raise
        except TransientAdapterError as exc:
            raise ProviderUnavailableError(f"Signature verification unavailable: {exc}") from exc
        except TerminalAdapterError as exc:
            logger.warning("Rejected %s webhook: %s", adapter.provider.value, exc)
            raise InvalidSignatureError("Signature verification was refused") from exc

    def _process(
        self, adapter: PaymentProviderAdapter, event: ProviderEvent, now: datetime
    ) -> tuple[_Outcome, Optional[int]]:
        if event.kind == EventKind.UNRECOGNIZED:
            logger.debug("Ignoring %s event type %s", event.provider.value, event.event_type)
            return _Outcome.IGNORED, None

        user = self._find_subscriber(event)
        if user is None:
            logger.warning(
                "No subscriber for %s event %s (subscription=%s, customer=%s)",
                event.provider.value,
                event.event_id,
                event.subscription_id,
                event.customer_id,
            )
            return _Outcome.UNKNOWN_SUBSCRIBER, None

        if event.kind in SUBSCRIPTION_SHAPED_EVENTS and event.subscription_view is not None:
            view = event.subscription_view
            guard_regression = True
        else:
            subscription_id = event.subscription_id
            if not subscription_id and user.has_live_subscription():
                subscription_id = user.provider_subscription_id
            if not subscription_id:
                logger.info("Event %s carries no subscription; nothing to apply", event.event_id)
                return _Outcome.IGNORED, user.id
            try:
                view = adapter.fetch_subscription(subscription_id)
            except TransientAdapterError as exc:
                raise ProviderUnavailableError(str(exc)) from exc
            except (SubscriptionNotFoundError, CustomerDeletedError) as exc:
                if subscription_id == user.provider_subscription_id:
                    self._reconciliation.apply_terminal_error(user, exc, now)
                    return _Outcome.APPLIED, user.id
                return _Outcome.IGNORED, user.id
            guard_regression = False

        current = user.provider_subscription_id
        if current and not is_pending_reference(current) and current != view.provider_subscription_id:
            logger.info(
                "Event %s concerns subscription %s, user %s now holds %s; ignoring",
                event.event_id,
                view.provider_subscription_id,
                user.id,
                current,
            )
            return _Outcome.IGNORED, user.id
        if is_pending_reference(current) and view.is_terminal:
            return _Outcome.IGNORED, user.id

        self._reconciliation.apply_view(
            user, view, now, guard_regression=guard_regression, provider=event.provider
        )
        return _Outcome.APPLIED, user.id

    def _find_subscriber(self, event: ProviderEvent) -> Optional[User]:
        if event.subscription_id:
            user = self._store.find_by_provider_subscription(event.provider, event.subscription_id)
            if user is not None:
                return user
        if event.customer_id:
            user = self._store.find_by_provider_customer(event.provider, event.customer_id)
            if user is not None:
                return user
        if event.user_reference:
            try:
                user_id = int(event.user_reference)
            except ValueError:
                return None
            user = self._store.get(user_id)
            if user is not None and user.payment_provider in (PaymentProvider.NONE, event.provider):
                return user
        return None

    def _release(self, event: ProviderEvent) -> None:
        try:
            self._events.release_event(event.provider, event.event_id)
        except StoreError as exc:
            # The lease expires on its own; redelivery can reclaim after it.
            logger.error("Could not release claim on event %s: %s", event.event_id, exc)
