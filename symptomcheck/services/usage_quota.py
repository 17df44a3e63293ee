"""Free-tier rolling-window quota for symptom analyses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..domain.errors import UnknownUserError
from ..domain.models import User
from ..domain.ports.persistence import SubscriptionStore, UsageStore

logger = logging.getLogger(__name__)

WINDOW_DAYS = 30


@dataclass(frozen=True, slots=True)
class QuotaDecision:
    allowed: bool
    is_premium: bool
    count: int
    limit: int
    window_resets_at: Optional[datetime]

    @property
    def remaining(self) -> Optional[int]:
        if self.is_premium:
            return None
        return max(self.limit - self.count, 0)


class UsageQuotaService:
    """Counts free analyses per 30 day window; premium users bypass the counter."""

    def __init__(
        self,
        usage: UsageStore,
        store: SubscriptionStore,
        *,
        free_limit: int = 3,
        window_days: int = WINDOW_DAYS,
    ) -> None:
        self._usage = usage
        self._store = store
        self._free_limit = free_limit
        self._window_days = window_days

    def increment(self, user_id: int, now: datetime) -> int:
        return self._usage.increment_usage(user_id, now, self._window_days).analysis_count

    def check_and_consume(self, user: User, now: Optional[datetime] = None) -> QuotaDecision:
        """
        Decide whether ``user`` may run one more analysis, consuming a free slot if so.

        Args:
            user: Snapshot the premium check is made against
            now: Evaluation instant, defaults to the current time

        Returns:
            QuotaDecision for this request
        """
        now = now or datetime.now(timezone.utc)
        if user.has_premium_access(now):
            return QuotaDecision(
                allowed=True,
                is_premium=True,
                count=user.analysis_count,
                limit=self._free_limit,
                window_resets_at=None,
            )
        updated = self._usage.increment_usage(user.id, now, self._window_days)
        decision = QuotaDecision(
            allowed=updated.analysis_count <= self._free_limit,
            is_premium=False,
            count=updated.analysis_count,
            limit=self._free_limit,
            window_resets_at=self._resets_at(updated),
        )
        if not decision.allowed:
            logger.info("User %s exhausted the free quota (%d)", user.id, updated.analysis_count)
        return decision

    def refund(self, user_id: int, decision: QuotaDecision) -> None:
        """Return the free slot ``decision`` consumed when the analysis did not run."""
        if decision.is_premium or not decision.allowed or decision.window_resets_at is None:
            return
        window_start = decision.window_resets_at - timedelta(days=self._window_days)
        self._usage.refund_usage(user_id, window_start)
        logger.info("Refunded one analysis to user %s", user_id)

    def get_usage(self, user_id: int, now: Optional[datetime] = None) -> QuotaDecision:
        now = now or datetime.now(timezone.utc)
        user = self._store.get(user_id)
        if user is None:
            raise UnknownUserError(f"User {user_id} not found")
        if user.has_premium_access(now):
            return QuotaDecision(True, True, user.analysis_count, self._free_limit, None)
        count = user.analysis_count
        resets_at = self._resets_at(user)
        if resets_at is None or now >= resets_at:
            count, resets_at = 0, None
        return QuotaDecision(
            allowed=count < self._free_limit,
            is_premium=False,
            count=count,
            limit=self._free_limit,
            window_resets_at=resets_at,
        )

    def _resets_at(self, user: User) -> Optional[datetime]:
        if user.analysis_window_start is None:
            return None
        return user.analysis_window_start + timedelta(days=self._window_days)
