"""Exception taxonomy for the billing engine.

Routers translate these into HTTP responses; services never inspect
provider-specific error shapes, only the classes below.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models.subscription import CanonicalStatus


class BillingError(Exception):
    """Base class for every error raised by the billing engine."""


class ProviderNotConfiguredError(BillingError):
    """The requested payment provider is missing credentials or is unknown."""


class UnknownUserError(BillingError):
    """No user record exists for the given identifier."""


class StoreError(BillingError):
    """The persistence layer failed to read or write."""


# Webhook ingestion ---------------------------------------------------------


class IngestError(BillingError):
    """Base class for webhook ingestion failures."""


class InvalidSignatureError(IngestError):
    """Webhook signature did not verify against the shared secret."""


class MalformedEventError(IngestError):
    """Webhook body could not be parsed into a provider event."""


class EventInFlightError(IngestError):
    """Another delivery of the same event currently holds the claim."""


# Provider adapters ---------------------------------------------------------


class AdapterError(BillingError):
    """Base class for classified provider errors."""


class TransientAdapterError(AdapterError):
    """Timeouts, connection failures, rate limits and provider 5xx responses."""


class TerminalAdapterError(AdapterError):
    """Provider rejected the request permanently; never retried."""


class SubscriptionNotFoundError(TerminalAdapterError):
    pass


class CustomerDeletedError(TerminalAdapterError):
    pass


# Reconciliation and commands ----------------------------------------------


class ReconcileError(BillingError):
    """Base class for reconciliation and subscription command failures."""


class ProviderUnavailableError(ReconcileError):
    """Provider could not be reached; carries the last persisted status."""

    def __init__(self, message: str, last_known: Optional["CanonicalStatus"] = None) -> None:
        super().__init__(message)
        self.last_known = last_known


class NoActiveSubscriptionError(ReconcileError):
    pass


class AlreadyEndedError(ReconcileError):
    """The provider reports the subscription as fully ended."""


class InvalidSubscriptionStateError(ReconcileError):
    pass


class CommandFailedError(ReconcileError):
    """A cancel or reactivate command failed at the provider and may be retried."""
