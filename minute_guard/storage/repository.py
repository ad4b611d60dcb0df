"""
Repository pattern for data access.

All mutations of usage periods, transactions and alerts are expressed as
conditional statements (version compare-and-swap or uniqueness-guarded
inserts), so correctness holds across processes sharing one database.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, List, Optional, Sequence

from minute_guard.core.errors import VersionConflict

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import (
    Alert,
    InAppNotification,
    InsertOutcome,
    UsageDelta,
    UsagePeriod,
    UsageTransaction,
)

# Sentinel for ``advance_ratchet_if_below``: skip the expected-value check.
ANY_THRESHOLD = -1

_PERIOD_COLUMNS = """
    id, tenant_id, period_start, period_end, included_minutes_used,
    overage_minutes_used, overage_charge, last_alerted_threshold,
    last_alert_sent_at, blocked, blocked_reason, call_count, version, invoice_ref
"""

_TRANSACTION_COLUMNS = """
    id, tenant_id, source_id, period_id, seconds_used, minutes_used,
    included_minutes, overage_minutes, charge, included_total, overage_total,
    overage_charge_total, usage_percent, crossed_limit, recorded_at, metadata
"""

_ALERT_COLUMNS = """
    id, tenant_id, threshold, severity, title, message, period_start,
    usage_percent, minutes_used, included_minutes, overage_minutes,
    overage_charge, created_at, channels_attempted, channels_confirmed,
    acknowledged, acknowledged_at, acknowledged_by
"""


def _ts(value: datetime) -> str:
    # Fixed-width UTC timestamps so string comparison in SQL matches time order.
    # Naive values are taken to be UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_period(row) -> UsagePeriod:
    return UsagePeriod(
        id=row[0],
        tenant_id=row[1],
        period_start=datetime.fromisoformat(row[2]),
        period_end=datetime.fromisoformat(row[3]),
        included_minutes_used=Decimal(row[4]),
        overage_minutes_used=Decimal(row[5]),
        overage_charge=row[6],
        last_alerted_threshold=row[7],
        last_alert_sent_at=_parse_ts(row[8]),
        blocked=bool(row[9]),
        blocked_reason=row[10],
        call_count=row[11],
        version=row[12],
        invoice_ref=row[13],
    )


def _row_to_transaction(row) -> UsageTransaction:
    return UsageTransaction(
        id=row[0],
        tenant_id=row[1],
        source_id=row[2],
        period_id=row[3],
        seconds_used=row[4],
        minutes_used=Decimal(row[5]),
        included_minutes=Decimal(row[6]),
        overage_minutes=Decimal(row[7]),
        charge=row[8],
        included_total=Decimal(row[9]),
        overage_total=Decimal(row[10]),
        overage_charge_total=row[11],
        usage_percent=Decimal(row[12]),
        crossed_limit=bool(row[13]),
        recorded_at=datetime.fromisoformat(row[14]),
        metadata=json.loads(row[15]) if row[15] else {},
    )


def _row_to_alert(row) -> Alert:
    return Alert(
        id=row[0],
        tenant_id=row[1],
        threshold=row[2],
        severity=row[3],
        title=row[4],
        message=row[5],
        period_start=datetime.fromisoformat(row[6]),
        usage_percent=Decimal(row[7]),
        minutes_used=Decimal(row[8]),
        included_minutes=row[9],
        overage_minutes=Decimal(row[10]),
        overage_charge=row[11],
        created_at=datetime.fromisoformat(row[12]),
        channels_attempted=tuple(json.loads(row[13] or "[]")),
        channels_confirmed=tuple(json.loads(row[14] or "[]")),
        acknowledged=bool(row[15]),
        acknowledged_at=_parse_ts(row[16]),
        acknowledged_by=row[17],
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the metering tables if they don't exist.

    ``usage_transaction`` is an append-only ledger: no UPDATE or DELETE is
    ever issued against it. The UNIQUE constraints are the idempotency and
    alert-deduplication boundaries.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        # WAL lets readers proceed while a writer holds the lock.
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_period (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                included_minutes_used TEXT NOT NULL DEFAULT '0',
                overage_minutes_used TEXT NOT NULL DEFAULT '0',
                overage_charge INTEGER NOT NULL DEFAULT 0 CHECK (overage_charge >= 0),
                last_alerted_threshold INTEGER,
                last_alert_sent_at TEXT,
                blocked INTEGER NOT NULL DEFAULT 0,
                blocked_reason TEXT,
                call_count INTEGER NOT NULL DEFAULT 0 CHECK (call_count >= 0),
                version INTEGER NOT NULL DEFAULT 0,
                invoice_ref TEXT,
                UNIQUE (tenant_id, period_start),
                CHECK (period_end > period_start)
            );

            CREATE INDEX IF NOT EXISTS idx_usage_period_current
                ON usage_period (tenant_id, period_end DESC);

            CREATE TABLE IF NOT EXISTS usage_transaction (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                period_id INTEGER NOT NULL REFERENCES usage_period (id),
                seconds_used INTEGER NOT NULL CHECK (seconds_used > 0),
                minutes_used TEXT NOT NULL,
                included_minutes TEXT NOT NULL,
                overage_minutes TEXT NOT NULL,
                charge INTEGER NOT NULL CHECK (charge >= 0),
                included_total TEXT NOT NULL,
                overage_total TEXT NOT NULL,
                overage_charge_total INTEGER NOT NULL,
                usage_percent TEXT NOT NULL,
                crossed_limit INTEGER NOT NULL DEFAULT 0,
                recorded_at TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                UNIQUE (tenant_id, source_id)
            );

            CREATE INDEX IF NOT EXISTS idx_usage_transaction_period
                ON usage_transaction (period_id);

            CREATE TABLE IF NOT EXISTS usage_alert (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                threshold INTEGER NOT NULL CHECK (threshold > 0 AND threshold <= 100),
                severity TEXT NOT NULL CHECK (severity IN ('info', 'warning', 'critical')),
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                period_start TEXT NOT NULL,
                usage_percent TEXT NOT NULL,
                minutes_used TEXT NOT NULL,
                included_minutes INTEGER NOT NULL,
                overage_minutes TEXT NOT NULL DEFAULT '0',
                overage_charge INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                channels_attempted TEXT NOT NULL DEFAULT '[]',
                channels_confirmed TEXT NOT NULL DEFAULT '[]',
                acknowledged INTEGER NOT NULL DEFAULT 0,
                acknowledged_at TEXT,
                acknowledged_by TEXT,
                UNIQUE (tenant_id, threshold, period_start)
            );

            CREATE INDEX IF NOT EXISTS idx_usage_alert_threshold
                ON usage_alert (tenant_id, threshold, created_at DESC);

            CREATE TABLE IF NOT EXISTS in_app_notification (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                severity TEXT NOT NULL,
                alert_id INTEGER REFERENCES usage_alert (id),
                created_at TEXT NOT NULL,
                read INTEGER NOT NULL DEFAULT 0
            );
        """)
    finally:
        conn.close()


class SqliteUsageStore:
    """Storage for usage periods, the transaction ledger and alerts.

    Every method opens its own connection unless one is passed in. Passing
    the connection yielded by ``atomic()`` makes several calls commit or
    roll back together.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    @contextmanager
    def atomic(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed calls as one transaction holding the write lock."""
        with transaction(self.db_path) as conn:
            yield conn

    @contextmanager
    def _connect(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_connection(self.db_path)
        try:
            yield own
        finally:
            own.close()

    # -- periods ---------------------------------------------------------

    def get_active_period(
        self,
        tenant_id: str,
        now: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[UsagePeriod]:
        """Return the tenant's period whose window contains ``now``, if any."""
        with self._connect(conn) as c:
            row = c.execute(f"""
                SELECT {_PERIOD_COLUMNS} FROM usage_period
                WHERE tenant_id = ? AND period_start <= ? AND period_end > ?
                ORDER BY period_start DESC LIMIT 1
            """, (tenant_id, _ts(now), _ts(now))).fetchone()
        return _row_to_period(row) if row else None

    def get_period(
        self,
        period_id: int,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[UsagePeriod]:
        with self._connect(conn) as c:
            row = c.execute(
                f"SELECT {_PERIOD_COLUMNS} FROM usage_period WHERE id = ?",
                (period_id,)
            ).fetchone()
        return _row_to_period(row) if row else None

    def create_period(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> UsagePeriod:
        """Create the period for a window, or return it if another caller won.

        Concurrent creators converge on one row through the
        ``(tenant_id, period_start)`` uniqueness constraint.
        """
        with self._connect(conn) as c:
            c.execute("""
                INSERT INTO usage_period (tenant_id, period_start, period_end)
                VALUES (?, ?, ?)
                ON CONFLICT (tenant_id, period_start) DO NOTHING
            """, (tenant_id, _ts(start), _ts(end)))
            row = c.execute(f"""
                SELECT {_PERIOD_COLUMNS} FROM usage_period
                WHERE tenant_id = ? AND period_start = ?
            """, (tenant_id, _ts(start))).fetchone()
        return _row_to_period(row)

    def apply_usage(
        self,
        period_id: int,
        expected_version: int,
        delta: UsageDelta,
        conn: Optional[sqlite3.Connection] = None
    ) -> UsagePeriod:
        """Add a usage delta to a period if it is still at ``expected_version``.

        Returns:
            The updated period

        Raises:
            VersionConflict: If another writer updated the period first
        """
        with self._connect(conn) as c:
            row = c.execute(
                f"SELECT {_PERIOD_COLUMNS} FROM usage_period WHERE id = ?",
                (period_id,)
            ).fetchone()
            if row is None or row[12] != expected_version:
                raise VersionConflict(period_id, expected_version)
            current = _row_to_period(row)

            blocked = current.blocked or delta.blocked_reason is not None
            blocked_reason = current.blocked_reason or delta.blocked_reason
            cursor = c.execute("""
                UPDATE usage_period SET
                    included_minutes_used = ?,
                    overage_minutes_used = ?,
                    overage_charge = ?,
                    blocked = ?,
                    blocked_reason = ?,
                    call_count = call_count + 1,
                    version = version + 1
                WHERE id = ? AND version = ?
            """, (
                str(current.included_minutes_used + delta.included_minutes),
                str(current.overage_minutes_used + delta.overage_minutes),
                current.overage_charge + delta.charge,
                int(blocked),
                blocked_reason,
                period_id,
                expected_version
            ))
            if cursor.rowcount != 1:
                raise VersionConflict(period_id, expected_version)
            row = c.execute(
                f"SELECT {_PERIOD_COLUMNS} FROM usage_period WHERE id = ?",
                (period_id,)
            ).fetchone()
        return _row_to_period(row)

    def advance_ratchet_if_below(
        self,
        period_id: int,
        new_threshold: int,
        expected_current: Optional[int] = ANY_THRESHOLD,
        now: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> bool:
        """Raise ``last_alerted_threshold`` to ``new_threshold`` if it is lower.

        When ``expected_current`` is given (``None`` included), the update
        also requires the stored value to equal it.

        Returns:
            True if this call advanced the ratchet
        """
        query = """
            UPDATE usage_period SET
                last_alerted_threshold = ?,
                last_alert_sent_at = ?
            WHERE id = ?
              AND (last_alerted_threshold IS NULL OR last_alerted_threshold < ?)
        """
        params: list = [
            new_threshold,
            _ts(now) if now else None,
            period_id,
            new_threshold
        ]
        if expected_current != ANY_THRESHOLD:
            query += " AND last_alerted_threshold IS ?"
            params.append(expected_current)

        with self._connect(conn) as c:
            cursor = c.execute(query, params)
        return cursor.rowcount == 1

    def list_periods(
        self,
        tenant_id: str,
        limit: int = 12,
        offset: int = 0
    ) -> List[UsagePeriod]:
        """Billing history for a tenant, newest period first."""
        with self._connect(None) as c:
            rows = c.execute(f"""
                SELECT {_PERIOD_COLUMNS} FROM usage_period
                WHERE tenant_id = ?
                ORDER BY period_start DESC LIMIT ? OFFSET ?
            """, (tenant_id, limit, offset)).fetchall()
        return [_row_to_period(row) for row in rows]

    def count_periods(self, tenant_id: str) -> int:
        with self._connect(None) as c:
            row = c.execute(
                "SELECT COUNT(*) FROM usage_period WHERE tenant_id = ?",
                (tenant_id,)
            ).fetchone()
        return row[0]

    def mark_overage_billed(
        self,
        tenant_id: str,
        period_start: datetime,
        invoice_ref: str
    ) -> bool:
        """Attach an external invoice reference to a period, at most once."""
        with self._connect(None) as c:
            cursor = c.execute("""
                UPDATE usage_period SET invoice_ref = ?
                WHERE tenant_id = ? AND period_start = ? AND invoice_ref IS NULL
            """, (invoice_ref, tenant_id, _ts(period_start)))
        return cursor.rowcount == 1

    # -- transactions ----------------------------------------------------

    def insert_transaction_if_absent(
        self,
        txn: UsageTransaction,
        conn: Optional[sqlite3.Connection] = None
    ) -> InsertOutcome:
        """Append a transaction unless its ``(tenant_id, source_id)`` exists.

        Returns:
            InsertOutcome with the stored transaction when it already existed
        """
        with self._connect(conn) as c:
            cursor = c.execute("""
                INSERT INTO usage_transaction
                (tenant_id, source_id, period_id, seconds_used, minutes_used,
                 included_minutes, overage_minutes, charge, included_total,
                 overage_total, overage_charge_total, usage_percent,
                 crossed_limit, recorded_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, source_id) DO NOTHING
            """, (
                txn.tenant_id,
                txn.source_id,
                txn.period_id,
                txn.seconds_used,
                str(txn.minutes_used),
                str(txn.included_minutes),
                str(txn.overage_minutes),
                txn.charge,
                str(txn.included_total),
                str(txn.overage_total),
                txn.overage_charge_total,
                str(txn.usage_percent),
                int(txn.crossed_limit),
                _ts(txn.recorded_at),
                json.dumps(txn.metadata, sort_keys=True)
            ))
            if cursor.rowcount == 1:
                return InsertOutcome(inserted=True)
            existing = self.get_transaction(txn.tenant_id, txn.source_id, conn=c)
        return InsertOutcome(inserted=False, existing=existing)

    def get_transaction(
        self,
        tenant_id: str,
        source_id: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[UsageTransaction]:
        with self._connect(conn) as c:
            row = c.execute(f"""
                SELECT {_TRANSACTION_COLUMNS} FROM usage_transaction
                WHERE tenant_id = ? AND source_id = ?
            """, (tenant_id, source_id)).fetchone()
        return _row_to_transaction(row) if row else None

    def list_transactions(self, period_id: int) -> List[UsageTransaction]:
        """All transactions recorded against a period, oldest first."""
        with self._connect(None) as c:
            rows = c.execute(f"""
                SELECT {_TRANSACTION_COLUMNS} FROM usage_transaction
                WHERE period_id = ? ORDER BY id
            """, (period_id,)).fetchall()
        return [_row_to_transaction(row) for row in rows]

    # -- alerts ----------------------------------------------------------

    def insert_alert_if_absent(
        self,
        alert: Alert,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Alert]:
        """Insert an alert unless one exists for its (tenant, threshold, period).

        Returns:
            The stored alert with its id, or None if it already existed
        """
        with self._connect(conn) as c:
            cursor = c.execute("""
                INSERT INTO usage_alert
                (tenant_id, threshold, severity, title, message, period_start,
                 usage_percent, minutes_used, included_minutes, overage_minutes,
                 overage_charge, created_at, channels_attempted, channels_confirmed)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, threshold, period_start) DO NOTHING
            """, (
                alert.tenant_id,
                alert.threshold,
                alert.severity,
                alert.title,
                alert.message,
                _ts(alert.period_start),
                str(alert.usage_percent),
                str(alert.minutes_used),
                alert.included_minutes,
                str(alert.overage_minutes),
                alert.overage_charge,
                _ts(alert.created_at),
                json.dumps(list(alert.channels_attempted)),
                json.dumps(list(alert.channels_confirmed))
            ))
            if cursor.rowcount != 1:
                return None
            alert_id = cursor.lastrowid
            return self.get_alert(alert_id, conn=c)

    def get_alert(
        self,
        alert_id: int,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Alert]:
        with self._connect(conn) as c:
            row = c.execute(
                f"SELECT {_ALERT_COLUMNS} FROM usage_alert WHERE id = ?",
                (alert_id,)
            ).fetchone()
        return _row_to_alert(row) if row else None

    def alert_created_since(
        self,
        tenant_id: str,
        threshold: int,
        since: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> bool:
        """Whether an alert for this tenant and threshold exists at or after ``since``."""
        with self._connect(conn) as c:
            row = c.execute("""
                SELECT 1 FROM usage_alert
                WHERE tenant_id = ? AND threshold = ? AND created_at >= ?
                LIMIT 1
            """, (tenant_id, threshold, _ts(since))).fetchone()
        return row is not None

    def update_alert_channels(
        self,
        alert_id: int,
        attempted: Sequence[str],
        confirmed: Sequence[str]
    ) -> None:
        with self._connect(None) as c:
            c.execute("""
                UPDATE usage_alert SET channels_attempted = ?, channels_confirmed = ?
                WHERE id = ?
            """, (json.dumps(list(attempted)), json.dumps(list(confirmed)), alert_id))

    def acknowledge_alert(self, alert_id: int, by: str, now: datetime) -> bool:
        """Mark an alert acknowledged. The first acknowledgement wins.

        Returns:
            True if the alert exists (acknowledged now or earlier)
        """
        with self._connect(None) as c:
            cursor = c.execute("""
                UPDATE usage_alert SET
                    acknowledged = 1, acknowledged_at = ?, acknowledged_by = ?
                WHERE id = ? AND acknowledged = 0
            """, (_ts(now), by, alert_id))
            if cursor.rowcount == 1:
                return True
            row = c.execute("SELECT 1 FROM usage_alert WHERE id = ?", (alert_id,)).fetchone()
        return row is not None

    def acknowledge_all_alerts(self, tenant_id: str, by: str, now: datetime) -> int:
        with self._connect(None) as c:
            cursor = c.execute("""
                UPDATE usage_alert SET
                    acknowledged = 1, acknowledged_at = ?, acknowledged_by = ?
                WHERE tenant_id = ? AND acknowledged = 0
            """, (_ts(now), by, tenant_id))
        return cursor.rowcount

    def list_recent_alerts(self, tenant_id: str, limit: int = 20) -> List[Alert]:
        """Alerts for a tenant, newest first."""
        with self._connect(None) as c:
            rows = c.execute(f"""
                SELECT {_ALERT_COLUMNS} FROM usage_alert
                WHERE tenant_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
            """, (tenant_id, limit)).fetchall()
        return [_row_to_alert(row) for row in rows]

    def list_unacknowledged_alerts(self, tenant_id: str, limit: int = 10) -> List[Alert]:
        with self._connect(None) as c:
            rows = c.execute(f"""
                SELECT {_ALERT_COLUMNS} FROM usage_alert
                WHERE tenant_id = ? AND acknowledged = 0
                ORDER BY created_at DESC, id DESC LIMIT ?
            """, (tenant_id, limit)).fetchall()
        return [_row_to_alert(row) for row in rows]

    def count_unacknowledged_alerts(self, tenant_id: str) -> int:
        with self._connect(None) as c:
            row = c.execute(
                "SELECT COUNT(*) FROM usage_alert WHERE tenant_id = ? AND acknowledged = 0",
                (tenant_id,)
            ).fetchone()
        return row[0]

    def count_alerts(self, tenant_id: str, threshold: int, period_start: datetime) -> int:
        with self._connect(None) as c:
            row = c.execute("""
                SELECT COUNT(*) FROM usage_alert
                WHERE tenant_id = ? AND threshold = ? AND period_start = ?
            """, (tenant_id, threshold, _ts(period_start))).fetchone()
        return row[0]

    # -- in-app notifications --------------------------------------------

    def insert_notification(self, notification: InAppNotification) -> int:
        with self._connect(None) as c:
            cursor = c.execute("""
                INSERT INTO in_app_notification
                (tenant_id, kind, title, message, severity, alert_id, created_at, read)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                notification.tenant_id,
                notification.kind,
                notification.title,
                notification.message,
                notification.severity,
                notification.alert_id,
                _ts(notification.created_at),
                int(notification.read)
            ))
        return cursor.lastrowid

    def list_notifications(self, tenant_id: str, limit: int = 50) -> List[InAppNotification]:
        with self._connect(None) as c:
            rows = c.execute("""
                SELECT id, tenant_id, kind, title, message, severity, alert_id,
                       created_at, read
                FROM in_app_notification
                WHERE tenant_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
            """, (tenant_id, limit)).fetchall()
        return [
            InAppNotification(
                id=row[0],
                tenant_id=row[1],
                kind=row[2],
                title=row[3],
                message=row[4],
                severity=row[5],
                alert_id=row[6],
                created_at=datetime.fromisoformat(row[7]),
                read=bool(row[8])
            )
            for row in rows
        ]
