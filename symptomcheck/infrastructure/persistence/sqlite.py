import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional

from ...domain.errors import StoreError, UnknownUserError
from ...domain.models import ClaimOutcome, PaymentProvider, SubscriptionStatus, User
from ...domain.ports.persistence import PersistenceGateway

_USER_COLUMNS = {
    "email": "email",
    "payment_provider": "payment_provider",
    "provider_customer_id": "provider_customer_id",
    "provider_subscription_id": "provider_subscription_id",
    "subscription_status": "subscription_status",
    "is_premium": "is_premium",
    "access_until": "access_until",
    "plan_name": "plan_name",
    "cancel_at_period_end": "cancel_at_period_end",
    "last_reconciled_at": "last_reconciled_at",
    "analysis_count": "analysis_count",
    "analysis_window_start": "analysis_window_start",
}

_STATUS_PROCESSING = "processing"
_STATUS_PROCESSED = "processed"


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY,
                    email TEXT,
                    payment_provider TEXT NOT NULL DEFAULT 'none',
                    provider_customer_id TEXT,
                    provider_subscription_id TEXT,
                    subscription_status TEXT NOT NULL DEFAULT 'inactive',
                    is_premium INTEGER NOT NULL DEFAULT 0,
                    access_until TEXT,
                    plan_name TEXT,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    last_reconciled_at TEXT,
                    analysis_count INTEGER NOT NULL DEFAULT 0,
                    analysis_window_start TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_provider_subscription
                    ON users(payment_provider, provider_subscription_id);

                CREATE INDEX IF NOT EXISTS idx_users_provider_customer
                    ON users(payment_provider, provider_customer_id);

                CREATE TABLE IF NOT EXISTS webhook_events (
                    provider TEXT NOT NULL,
                    provider_event_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    claimed_at TEXT NOT NULL,
                    processed_at TEXT,
                    PRIMARY KEY (provider, provider_event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_webhook_events_event_id
                    ON webhook_events(provider_event_id);
                """
            )

    def close(self) -> None:
        self._conn.close()

    # User records -------------------------------------------------------------
    def create_user(self, user_id: int, email: Optional[str] = None) -> User:
        """Insert an inert record; called by the identity subsystem at sign-up."""
        now = self._now()
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO users (id, email, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, email, now, now),
                )
                cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to create user {user_id}: {exc}") from exc
        return self._row_to_user(row)

    def get(self, user_id: int) -> Optional[User]:
        try:
            with self._lock:
                cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to read user {user_id}: {exc}") from exc
        return self._row_to_user(row) if row else None

    def update(self, user_id: int, fields: Mapping[str, Any]) -> User:
        updates = []
        params: List[Any] = []
        for key, value in fields.items():
            column = _USER_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Unknown user field: {key}")
            updates.append(f"{column} = ?")
            params.append(self._to_db(value))
        updates.append("updated_at = ?")
        params.append(self._now())
        params.append(user_id)
        statement = f"UPDATE users SET {', '.join(updates)} WHERE id = ?"
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(statement, params)
                if cur.rowcount == 0:
                    raise UnknownUserError(f"User {user_id} not found")
                cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to update user {user_id}: {exc}") from exc
        return self._row_to_user(row)

    def find_by_provider_subscription(
        self, provider: PaymentProvider, provider_subscription_id: str
    ) -> Optional[User]:
        return self._find_one(
            "SELECT * FROM users WHERE payment_provider = ? AND provider_subscription_id = ?",
            (provider.value, provider_subscription_id),
        )

    def find_by_provider_customer(
        self, provider: PaymentProvider, provider_customer_id: str
    ) -> Optional[User]:
        return self._find_one(
            """
            SELECT * FROM users
            WHERE payment_provider = ? AND provider_customer_id = ?
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            (provider.value, provider_customer_id),
        )

    def list_stale(self, reconciled_before: datetime, limit: int) -> List[User]:
        try:
            with self._lock:
                cur = self._conn.execute(
                    """
                    SELECT * FROM users
                    WHERE provider_subscription_id IS NOT NULL
                      AND provider_subscription_id != ''
                      AND provider_subscription_id NOT LIKE 'pending:%'
                      AND (last_reconciled_at IS NULL OR last_reconciled_at < ?)
                    ORDER BY last_reconciled_at IS NOT NULL, last_reconciled_at
                    LIMIT ?
                    """,
                    (self._format_datetime(reconciled_before), limit),
                )
                rows = cur.fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to list stale users: {exc}") from exc
        return [self._row_to_user(row) for row in rows]

    def _find_one(self, query: str, params: tuple) -> Optional[User]:
        try:
            with self._lock:
                cur = self._conn.execute(query, params)
                row = cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"User lookup failed: {exc}") from exc
        return self._row_to_user(row) if row else None

    # UsageStore API ---------------------------------------------------------
    def increment_usage(self, user_id: int, now: datetime, window_days: int) -> User:
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "SELECT analysis_count, analysis_window_start FROM users WHERE id = ?",
                    (user_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise UnknownUserError(f"User {user_id} not found")
                window_start = (
                    self._parse_datetime(row["analysis_window_start"])
                    if row["analysis_window_start"]
                    else None
                )
                if window_start is None or now - window_start >= timedelta(days=window_days):
                    count, window_start = 1, now
                else:
                    count = row["analysis_count"] + 1
                self._conn.execute(
                    """
                    UPDATE users
                    SET analysis_count = ?, analysis_window_start = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (count, self._format_datetime(window_start), self._now(), user_id),
                )
                cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                updated = cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to increment usage for user {user_id}: {exc}") from exc
        return self._row_to_user(updated)

    def refund_usage(self, user_id: int, window_start: datetime) -> None:
        """Give back one analysis, unless the window has rolled over since it was counted."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    UPDATE users
                    SET analysis_count = analysis_count - 1, updated_at = ?
                    WHERE id = ? AND analysis_count > 0 AND analysis_window_start = ?
                    """,
                    (self._now(), user_id, self._format_datetime(window_start)),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to refund usage for user {user_id}: {exc}") from exc

    # WebhookEventStore API --------------------------------------------------
    def claim_event(
        self,
        provider: PaymentProvider,
        event_id: str,
        event_type: str,
        now: datetime,
        lease_seconds: int,
    ) -> ClaimOutcome:
        claimed_at = self._format_datetime(now)
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    """
                    INSERT OR IGNORE INTO webhook_events (
                        provider, provider_event_id, event_type, status, claimed_at
                    )
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (provider.value, event_id, event_type, _STATUS_PROCESSING, claimed_at),
                )
                if cur.rowcount == 1:
                    return ClaimOutcome.CLAIMED
                cur = self._conn.execute(
                    """
                    SELECT status, claimed_at FROM webhook_events
                    WHERE provider = ? AND provider_event_id = ?
                    """,
                    (provider.value, event_id),
                )
                row = cur.fetchone()
                if row["status"] == _STATUS_PROCESSED:
                    return ClaimOutcome.ALREADY_PROCESSED
                previous_claim = self._parse_datetime(row["claimed_at"])
                if now - previous_claim < timedelta(seconds=lease_seconds):
                    return ClaimOutcome.IN_FLIGHT
                # Lease expired: take over only if nobody else did in between.
                cur = self._conn.execute(
                    """
                    UPDATE webhook_events SET claimed_at = ?
                    WHERE provider = ? AND provider_event_id = ?
                      AND status = ? AND claimed_at = ?
                    """,
                    (claimed_at, provider.value, event_id, _STATUS_PROCESSING, row["claimed_at"]),
                )
                return ClaimOutcome.CLAIMED if cur.rowcount == 1 else ClaimOutcome.IN_FLIGHT
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to claim webhook event {event_id}: {exc}") from exc

    def complete_event(self, provider: PaymentProvider, event_id: str, now: datetime) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    UPDATE webhook_events SET status = ?, processed_at = ?
                    WHERE provider = ? AND provider_event_id = ?
                    """,
                    (_STATUS_PROCESSED, self._format_datetime(now), provider.value, event_id),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to mark webhook event {event_id} processed: {exc}") from exc

    def release_event(self, provider: PaymentProvider, event_id: str) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    DELETE FROM webhook_events
                    WHERE provider = ? AND provider_event_id = ? AND status = ?
                    """,
                    (provider.value, event_id, _STATUS_PROCESSING),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to release webhook event {event_id}: {exc}") from exc

    # Helpers ----------------------------------------------------------------
    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).replace(microsecond=0).isoformat()

    @staticmethod
    def _format_datetime(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    @classmethod
    def _to_db(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, datetime):
            return cls._format_datetime(value)
        return value

    @staticmethod
    def _parse_datetime(value: str) -> datetime:
        try:
            result = datetime.fromisoformat(value)
        except ValueError:
            result = datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
        if result.tzinfo is None:
            return result.replace(tzinfo=timezone.utc)
        return result.astimezone(timezone.utc)

    def _optional_datetime(self, value: Optional[str]) -> Optional[datetime]:
        return self._parse_datetime(value) if value else None

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            payment_provider=PaymentProvider(row["payment_provider"]),
            provider_customer_id=row["provider_customer_id"],
            provider_subscription_id=row["provider_subscription_id"],
            subscription_status=SubscriptionStatus(row["subscription_status"]),
            is_premium=bool(row["is_premium"]),
            access_until=self._optional_datetime(row["access_until"]),
            plan_name=row["plan_name"],
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            last_reconciled_at=self._optional_datetime(row["last_reconciled_at"]),
            analysis_count=row["analysis_count"],
            analysis_window_start=self._optional_datetime(row["analysis_window_start"]),
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )
