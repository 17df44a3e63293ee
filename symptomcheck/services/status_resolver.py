"""Pure mapping from a provider subscription view to the canonical local status.

Both the webhook path and the reconciliation path persist through
:func:`resolve`, so two writers holding the same provider state always store
the same tuple regardless of which one lands last.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..domain.models import BillingInterval, ProviderSubscriptionView, SubscriptionStatus, User
from ..domain.models.subscription import (
    RAW_ACTIVE,
    RAW_CANCELED,
    RAW_INCOMPLETE,
    RAW_INCOMPLETE_EXPIRED,
    RAW_PAST_DUE,
    RAW_TRIALING,
    RAW_UNPAID,
)

logger = logging.getLogger(__name__)

# Higher rank means further along the path to a fully ended subscription.
_TERMINAL_RANK = {
    SubscriptionStatus.INACTIVE: 0,
    SubscriptionStatus.INCOMPLETE: 0,
    SubscriptionStatus.ACTIVE: 1,
    SubscriptionStatus.PAST_DUE: 2,
    SubscriptionStatus.UNPAID: 3,
    SubscriptionStatus.CANCELED: 4,
}


@dataclass(frozen=True, slots=True)
class RegressionWarning:
    """An ``access_until`` that would move backward without a more terminal status."""

    stored_access_until: datetime
    proposed_access_until: Optional[datetime]
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    applied: bool


@dataclass(frozen=True, slots=True)
class Resolution:
    status: SubscriptionStatus
    is_premium: bool
    access_until: Optional[datetime]
    plan_name: Optional[str]
    cancel_at_period_end: bool
    changed: bool
    regression: Optional[RegressionWarning] = None


def add_interval(anchor: datetime, interval: BillingInterval) -> datetime:
    """Return ``anchor`` moved one billing interval ahead, clamping to month ends."""
    if interval == BillingInterval.DAY:
        return anchor + timedelta(days=1)
    if interval == BillingInterval.WEEK:
        return anchor + timedelta(weeks=1)
    months = 12 if interval == BillingInterval.YEAR else 1
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def canonical_status(raw_status: str, cancel_at_period_end: bool) -> SubscriptionStatus:
    if raw_status in (RAW_ACTIVE, RAW_TRIALING):
        return SubscriptionStatus.CANCELED if cancel_at_period_end else SubscriptionStatus.ACTIVE
    if raw_status == RAW_PAST_DUE:
        return SubscriptionStatus.PAST_DUE
    if raw_status in (RAW_INCOMPLETE, RAW_INCOMPLETE_EXPIRED):
        return SubscriptionStatus.INCOMPLETE
    if raw_status == RAW_CANCELED:
        return SubscriptionStatus.CANCELED
    if raw_status == RAW_UNPAID:
        return SubscriptionStatus.UNPAID
    # paused and anything the adapters did not recognise grant nothing.
    return SubscriptionStatus.INACTIVE


def _estimate_access_until(view: ProviderSubscriptionView) -> Optional[datetime]:
    if view.current_period_end is not None:
        return view.current_period_end
    if view.billing_cycle_anchor is not None:
        return add_interval(view.billing_cycle_anchor, view.billing_interval)
    return None


def resolve(
    view: ProviderSubscriptionView,
    now: datetime,
    previous: Optional[User] = None,
    *,
    guard_regression: bool = True,
) -> Resolution:
    """
    Derive the canonical status tuple for ``view`` at ``now``.

    Args:
        view: Provider subscription normalised by an adapter
        now: Evaluation instant
        previous: Stored user record, consulted for change detection and the
            ``access_until`` regression check only
        guard_regression: When True a backward ``access_until`` is flagged and
            the stored value kept; when False it is flagged and applied

    Returns:
        Resolution carrying the tuple to persist
    """
    status = canonical_status(view.raw_status, view.cancel_at_period_end)
    access_until = _estimate_access_until(view)

    plan_name = view.plan_name or None
    if plan_name is None and previous is not None:
        plan_name = previous.plan_name

    regression: Optional[RegressionWarning] = None
    stored = previous.access_until if previous is not None else None
    if previous is not None and stored is not None:
        moved_back = access_until is None or access_until < stored
        more_terminal = _TERMINAL_RANK[status] > _TERMINAL_RANK[previous.subscription_status]
        if moved_back and not more_terminal:
            regression = RegressionWarning(
                stored_access_until=stored,
                proposed_access_until=access_until,
                previous_status=previous.subscription_status,
                new_status=status,
                applied=not guard_regression,
            )
            logger.warning(
                "access_until regression for user %s subscription %s: %s -> %s (%s)",
                previous.id,
                view.provider_subscription_id,
                stored.isoformat(),
                access_until.isoformat() if access_until else None,
                "applied" if regression.applied else "kept stored value",
            )
            if guard_regression:
                access_until = stored

    is_premium = status == SubscriptionStatus.ACTIVE or (
        access_until is not None and access_until > now
    )

    changed = previous is None or (
        previous.subscription_status != status
        or previous.is_premium != is_premium
        or previous.access_until != access_until
        or previous.plan_name != plan_name
        or previous.cancel_at_period_end != view.cancel_at_period_end
    )
    return Resolution(
        status=status,
        is_premium=is_premium,
        access_until=access_until,
        plan_name=plan_name,
        cancel_at_period_end=view.cancel_at_period_end,
        changed=changed,
        regression=regression,
    )


def to_fields(resolution: Resolution, now: datetime) -> Dict[str, Any]:
    """Columns written for every resolver run, changed or not."""
    return {
        "subscription_status": resolution.status,
        "is_premium": resolution.is_premium,
        "access_until": resolution.access_until,
        "plan_name": resolution.plan_name,
        "cancel_at_period_end": resolution.cancel_at_period_end,
        "last_reconciled_at": now,
    }
