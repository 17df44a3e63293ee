"""Pull-side reconciliation and the subscription commands built on it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..domain.errors import (
    AdapterError,
    AlreadyEndedError,
    CommandFailedError,
    CustomerDeletedError,
    InvalidSubscriptionStateError,
    NoActiveSubscriptionError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    SubscriptionNotFoundError,
    TransientAdapterError,
    UnknownUserError,
)
from ..domain.models import (
    CanonicalStatus,
    PaymentProvider,
    ProviderSubscriptionView,
    SessionHandle,
    SubscriptionStatus,
    User,
)
from ..domain.models.subscription import is_pending_reference
from ..domain.ports.payments import PaymentProviderAdapter
from ..domain.ports.persistence import SubscriptionStore
from ..infrastructure.providers.registry import ProviderRegistry
from .status_resolver import resolve, to_fields

logger = logging.getLogger(__name__)

_CANCELLABLE = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
_SWITCHABLE = (SubscriptionStatus.INACTIVE, SubscriptionStatus.CANCELED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SweepResult:
    checked: int
    reconciled: int
    failed: int


class ReconciliationService:
    """Keeps the stored subscription tuple aligned with the provider's view."""

    def __init__(
        self,
        store: SubscriptionStore,
        providers: ProviderRegistry,
        *,
        staleness_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._providers = providers
        self._staleness_seconds = staleness_seconds
        self._clock = clock

    # Shared write path ----------------------------------------------------------
    def apply_view(
        self,
        user: User,
        view: ProviderSubscriptionView,
        now: datetime,
        *,
        guard_regression: bool,
        provider: Optional[PaymentProvider] = None,
    ) -> User:
        """Resolve ``view`` against the stored record and persist the result.

        Persistence is unconditional so ``last_reconciled_at`` always moves.
        """
        resolution = resolve(view, now, user, guard_regression=guard_regression)
        fields = to_fields(resolution, now)
        if user.provider_subscription_id != view.provider_subscription_id:
            fields["provider_subscription_id"] = view.provider_subscription_id
        if view.customer_id and user.provider_customer_id != view.customer_id:
            fields["provider_customer_id"] = view.customer_id
        if provider is not None and user.payment_provider != provider:
            fields["payment_provider"] = provider
        if resolution.changed:
            logger.info(
                "User %s subscription %s -> %s (premium=%s, access_until=%s)",
                user.id,
                view.provider_subscription_id,
                resolution.status.value,
                resolution.is_premium,
                resolution.access_until.isoformat() if resolution.access_until else None,
            )
        return self._store.update(user.id, fields)

    def apply_terminal_error(self, user: User, exc: AdapterError, now: datetime) -> User:
        """Force the local state a terminal provider answer implies."""
        fields: Dict[str, Any] = {"cancel_at_period_end": False, "last_reconciled_at": now}
        if isinstance(exc, CustomerDeletedError):
            fields.update(
                subscription_status=SubscriptionStatus.INACTIVE,
                is_premium=False,
                access_until=None,
                provider_customer_id=None,
                provider_subscription_id=None,
            )
            logger.warning("Provider customer for user %s was deleted; marking inactive", user.id)
        else:
            # The paid period already granted is still honoured.
            fields.update(
                subscription_status=SubscriptionStatus.CANCELED,
                is_premium=user.access_until is not None and user.access_until > now,
            )
            logger.warning(
                "Subscription %s for user %s no longer exists; marking canceled",
                user.provider_subscription_id,
                user.id,
            )
        return self._store.update(user.id, fields)

    # Queries --------------------------------------------------------------------
    def reconcile(self, user_id: int) -> CanonicalStatus:
        """
        Fetch the provider's current view for ``user_id`` and persist it.

        Raises:
            UnknownUserError: If the user does not exist
            ProviderNotConfiguredError: If the user's provider is unavailable
            ProviderUnavailableError: If the provider could not be reached;
                carries the last persisted status
        """
        user = self._require_user(user_id)
        now = self._clock()
        if not user.provider_subscription_id:
            return CanonicalStatus(
                status=SubscriptionStatus.INACTIVE,
                is_premium=False,
                access_until=None,
                plan_name=user.plan_name,
                payment_provider=user.payment_provider,
            )
        if is_pending_reference(user.provider_subscription_id):
            # Checkout has not produced a subscription yet.
            return user.canonical_status(now)

        adapter = self._adapter(user)
        try:
            view = adapter.fetch_subscription(user.provider_subscription_id)
        except TransientAdapterError as exc:
            logger.warning("Provider unavailable while reconciling user %s: %s", user.id, exc)
            raise ProviderUnavailableError(
                str(exc), last_known=user.canonical_status(now, stale=True)
            ) from exc
        except (SubscriptionNotFoundError, CustomerDeletedError) as exc:
            return self.apply_terminal_error(user, exc, now).canonical_status(now)

        updated = self.apply_view(user, view, now, guard_regression=False)
        return updated.canonical_status(now)

    def get_status(self, user_id: int) -> CanonicalStatus:
        """Reconcile, degrading to the last stored status when the provider is down."""
        try:
            return self.reconcile(user_id)
        except ProviderUnavailableError as exc:
            if exc.last_known is None:
                raise
            return exc.last_known
        except ProviderNotConfiguredError as exc:
            logger.warning("Serving stored status for user %s: %s", user_id, exc)
            user = self._require_user(user_id)
            return user.canonical_status(self._clock(), stale=True)

    def ensure_fresh(self, user_id: int, now: Optional[datetime] = None) -> User:
        """Return the user record, reconciling first when it is older than the threshold."""
        now = now or self._clock()
        user = self._require_user(user_id)
        if not user.has_live_subscription() or not user.is_stale(now, self._staleness_seconds):
            return user
        try:
            self.reconcile(user_id)
        except (ProviderUnavailableError, ProviderNotConfiguredError) as exc:
            logger.info("Gating user %s on stored status: %s", user_id, exc)
            return user
        return self._require_user(user_id)

    def reconcile_stale(self, limit: int = 100) -> SweepResult:
        now = self._clock()
        cutoff = now - timedelta(seconds=self._staleness_seconds)
        users = self._store.list_stale(cutoff, limit)
        reconciled = failed = 0
        for user in users:
            try:
                self.reconcile(user.id)
            except (ProviderUnavailableError, ProviderNotConfiguredError, AdapterError) as exc:
                failed += 1
                logger.warning("Stale sweep skipped user %s: %s", user.id, exc)
            else:
                reconciled += 1
        logger.info("Stale sweep: %d checked, %d reconciled, %d failed", len(users), reconciled, failed)
        return SweepResult(checked=len(users), reconciled=reconciled, failed=failed)

    # Commands -------------------------------------------------------------------
    def cancel(self, user_id: int) -> CanonicalStatus:
        """
        Stop renewal at the end of the paid period.

        Cancelling an already-canceled subscription returns the current state
        unless the provider reports it fully ended.

        Raises:
            NoActiveSubscriptionError: If there is nothing to cancel
            AlreadyEndedError: If the provider reports the subscription as ended
            CommandFailedError: If the provider call failed and may be retried
        """
        user = self._require_user(user_id)
        if not user.has_live_subscription():
            raise NoActiveSubscriptionError("No active subscription to cancel")
        adapter = self._adapter(user)
        now = self._clock()

        if user.subscription_status == SubscriptionStatus.CANCELED:
            view = self._fetch_for_command(adapter, user, now)
            if view.is_terminal:
                self.apply_view(user, view, now, guard_regression=False)
                raise AlreadyEndedError("Subscription has already ended")
            if view.cancel_at_period_end:
                return self.apply_view(user, view, now, guard_regression=False).canonical_status(now)
        elif user.subscription_status not in _CANCELLABLE:
            raise NoActiveSubscriptionError(
                f"Subscription is {user.subscription_status.value} and cannot be canceled"
            )

        try:
            adapter.cancel_at_period_end(user.provider_subscription_id)
        except SubscriptionNotFoundError as exc:
            self.apply_terminal_error(user, exc, now)
            raise AlreadyEndedError("Subscription has already ended") from exc
        except AdapterError as exc:
            logger.error("Cancel failed for user %s: %s", user.id, exc)
            raise CommandFailedError("Could not cancel the subscription, please retry") from exc
        logger.info("User %s canceled subscription %s", user.id, user.provider_subscription_id)
        return self._reconcile_after_command(user_id)

    def reactivate(self, user_id: int) -> CanonicalStatus:
        """
        Withdraw a pending cancellation before the period boundary.

        Raises:
            NoActiveSubscriptionError: If the user has no subscription
            InvalidSubscriptionStateError: If the local status is not canceled
            AlreadyEndedError: If the provider already ended the subscription
            CommandFailedError: If the provider call failed and may be retried
        """
        user = self._require_user(user_id)
        if not user.has_live_subscription():
            raise NoActiveSubscriptionError("No subscription to reactivate")
        if user.subscription_status != SubscriptionStatus.CANCELED:
            raise InvalidSubscriptionStateError(
                f"Only canceled subscriptions can be reactivated (status is "
                f"{user.subscription_status.value})"
            )
        adapter = self._adapter(user)
        now = self._clock()

        view = self._fetch_for_command(adapter, user, now)
        if view.is_terminal:
            self.apply_view(user, view, now, guard_regression=False)
            raise AlreadyEndedError("Subscription has already ended; start a new checkout")

        try:
            adapter.clear_cancellation(user.provider_subscription_id)
        except SubscriptionNotFoundError as exc:
            self.apply_terminal_error(user, exc, now)
            raise AlreadyEndedError("Subscription has already ended") from exc
        except AdapterError as exc:
            logger.error("Reactivate failed for user %s: %s", user.id, exc)
            raise CommandFailedError("Could not reactivate the subscription, please retry") from exc
        logger.info("User %s reactivated subscription %s", user.id, user.provider_subscription_id)
        return self._reconcile_after_command(user_id)

    def start_checkout(self, user_id: int, provider: PaymentProvider | str) -> SessionHandle:
        """
        Open a provider checkout and record the pending subscription reference.

        Raises:
            ProviderNotConfiguredError: If ``provider`` is unknown or unavailable
            InvalidSubscriptionStateError: If the user still holds a subscription
            CommandFailedError: If the provider refused or could not be reached
        """
        user = self._require_user(user_id)
        adapter = self._providers.adapter_for(provider)
        now = self._clock()

        if user.has_live_subscription() and user.has_premium_access(now):
            raise InvalidSubscriptionStateError("User already has a subscription")
        if user.payment_provider not in (PaymentProvider.NONE, adapter.provider):
            if user.has_premium_access(now) or user.subscription_status not in _SWITCHABLE:
                raise InvalidSubscriptionStateError(
                    f"Subscription is managed by {user.payment_provider.value}; "
                    "it must end before switching providers"
                )

        try:
            handle = adapter.create_checkout_session(user)
        except AdapterError as exc:
            logger.error("Checkout failed for user %s via %s: %s", user.id, adapter.provider.value, exc)
            raise CommandFailedError("Could not start checkout, please retry") from exc

        fields: Dict[str, Any] = {
            "payment_provider": adapter.provider,
            "provider_subscription_id": handle.subscription_reference,
        }
        if handle.customer_id:
            fields["provider_customer_id"] = handle.customer_id
        elif user.payment_provider != adapter.provider:
            fields["provider_customer_id"] = None
        self._store.update(user.id, fields)
        return handle

    def confirm_checkout(self, user_id: int, provider_subscription_id: str) -> CanonicalStatus:
        """Link the subscription a completed checkout created and resolve it immediately."""
        user = self._require_user(user_id)
        if user.payment_provider == PaymentProvider.NONE:
            raise NoActiveSubscriptionError("No checkout was started for this user")
        adapter = self._adapter(user)
        now = self._clock()
        try:
            view = adapter.fetch_subscription(provider_subscription_id)
        except TransientAdapterError as exc:
            raise ProviderUnavailableError(
                str(exc), last_known=user.canonical_status(now, stale=True)
            ) from exc
        except SubscriptionNotFoundError as exc:
            raise NoActiveSubscriptionError(f"Unknown subscription {provider_subscription_id}") from exc
        except AdapterError as exc:
            raise CommandFailedError("Could not confirm the subscription, please retry") from exc

        owned_by_user = view.user_reference == str(user.id) or (
            view.customer_id is not None and view.customer_id == user.provider_customer_id
        )
        if not owned_by_user:
            raise InvalidSubscriptionStateError("Subscription does not belong to this user")
        return self.apply_view(user, view, now, guard_regression=False).canonical_status(now)

    def payment_method_update_url(self, user_id: int) -> str:
        user = self._require_user(user_id)
        if user.payment_provider == PaymentProvider.NONE or not user.has_live_subscription():
            raise NoActiveSubscriptionError("No subscription to update")
        adapter = self._adapter(user)
        try:
            return adapter.update_payment_method(user.provider_customer_id or "")
        except CustomerDeletedError as exc:
            self.apply_terminal_error(user, exc, self._clock())
            raise NoActiveSubscriptionError("Billing account no longer exists") from exc
        except TransientAdapterError as exc:
            raise ProviderUnavailableError(str(exc)) from exc
        except AdapterError as exc:
            raise CommandFailedError("Could not open the billing portal, please retry") from exc

    # Helpers ----------------------------------------------------------------------
    def _require_user(self, user_id: int) -> User:
        user = self._store.get(user_id)
        if user is None:
            raise UnknownUserError(f"User {user_id} not found")
        return user

    def _adapter(self, user: User) -> PaymentProviderAdapter:
        return self._providers.adapter_for(user.payment_provider)

    def _fetch_for_command(
        self, adapter: PaymentProviderAdapter, user: User, now: datetime
    ) -> ProviderSubscriptionView:
        try:
            return adapter.fetch_subscription(user.provider_subscription_id)
        except SubscriptionNotFoundError as exc:
            self.apply_terminal_error(user, exc, now)
            raise AlreadyEndedError("Subscription has already ended") from exc
        except AdapterError as exc:
            raise CommandFailedError("Could not reach the payment provider, please retry") from exc

    def _reconcile_after_command(self, user_id: int) -> CanonicalStatus:
        # The command already succeeded at the provider; a failed follow-up
        # read is reported as stale rather than as a failed command.
        try:
            return self.reconcile(user_id)
        except ProviderUnavailableError as exc:
            if exc.last_known is None:
                raise
            return exc.last_known
