"""
Repository pattern for data access.

Holds every SQL statement of the ledger: allowance periods, the usage
event log, credit settings, plans, accounts and roles.

Consistency rests on storage-level guarantees, not in-process locks:
- UNIQUE(account_id, period_start) turns concurrent period creation into
  a single winner plus losers that re-read.
- UNIQUE(account_id, idempotency_key) makes a charge apply at most once.
- Charges run inside BEGIN IMMEDIATE with a conditional increment, so two
  concurrent charges can never both pass the balance check.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from ai_credit_ledger.core.credits import credits_for_tokens
from ai_credit_ledger.core.errors import AllowanceRaceLost, StorageUnavailable
from ai_credit_ledger.core.period import as_utc
from .db import (
    DEFAULT_BUSY_TIMEOUT,
    DEFAULT_DB_PATH,
    immediate_transaction,
    open_connection,
)
from .models import (
    ADMIN_ADJUSTMENT_FEATURE,
    AllowanceMetadata,
    AllowancePeriod,
    AllowanceSource,
    Plan,
    UsageEvent,
)

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS allowance_period (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        tokens_granted INTEGER NOT NULL CHECK (tokens_granted >= 0),
        tokens_used INTEGER NOT NULL DEFAULT 0 CHECK (tokens_used >= 0),
        source TEXT NOT NULL,
        base_tokens INTEGER,
        rollover_tokens INTEGER,
        plan TEXT,
        created_by TEXT,
        low_balance_warned INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (period_start < period_end),
        UNIQUE (account_id, period_start)
    );

    CREATE INDEX IF NOT EXISTS idx_allowance_period_account_end
        ON allowance_period (account_id, period_end);

    CREATE TABLE IF NOT EXISTS usage_event (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        allowance_id TEXT NOT NULL REFERENCES allowance_period (id),
        idempotency_key TEXT NOT NULL,
        feature TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        credits_charged REAL NOT NULL,
        tokens_per_credit INTEGER NOT NULL,
        tokens_granted_after INTEGER NOT NULL,
        tokens_used_after INTEGER NOT NULL,
        balance_applied INTEGER NOT NULL DEFAULT 1,
        model TEXT,
        actor TEXT,
        channel TEXT,
        request_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        UNIQUE (account_id, idempotency_key)
    );

    CREATE INDEX IF NOT EXISTS idx_usage_event_account_created
        ON usage_event (account_id, created_at);

    CREATE TABLE IF NOT EXISTS credit_setting (
        key TEXT PRIMARY KEY,
        value_int INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS account (
        account_id TEXT PRIMARY KEY,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS account_plan (
        account_id TEXT PRIMARY KEY,
        plan TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS user_role (
        actor TEXT NOT NULL,
        role TEXT NOT NULL,
        PRIMARY KEY (actor, role)
    );
"""

_INSERT_PERIOD_SQL = """
    INSERT INTO allowance_period
    (id, account_id, period_start, period_end, tokens_granted, tokens_used,
     source, base_tokens, rollover_tokens, plan, created_by,
     low_balance_warned, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_EVENT_SQL = """
    INSERT INTO usage_event
    (id, account_id, allowance_id, idempotency_key, feature, prompt_tokens,
     completion_tokens, total_tokens, credits_charged, tokens_per_credit,
     tokens_granted_after, tokens_used_after, balance_applied, model, actor,
     channel, request_id, metadata, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class ChargeStatus(Enum):
    """Outcome of a charge transaction."""
    APPLIED = "applied"            # event recorded, balance incremented
    PARTIAL = "partial"            # event recorded, increment failed
    DUPLICATE = "duplicate"        # idempotency key already used
    INSUFFICIENT = "insufficient"  # rejected, nothing written


@dataclass(frozen=True)
class ChargeRecord:
    """What ``record_charge`` did, with the rows involved."""
    status: ChargeStatus
    event: Optional[UsageEvent] = None
    period: Optional[AllowancePeriod] = None
    error: Optional[str] = None
    pending_tokens: int = 0  # recorded but not yet applied to the period


class _IncrementRejected(Exception):
    """Conditional increment matched no row; the charge must roll back."""


def _to_db(instant: datetime) -> str:
    """Fixed-width UTC ISO format so text order equals time order."""
    return as_utc(instant).isoformat(timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _is_unique_violation(error: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(error)


def _parse_plan(value: Optional[str]) -> Optional[Plan]:
    try:
        return Plan(value) if value else None
    except ValueError:
        return None


def _row_to_period(row: sqlite3.Row) -> AllowancePeriod:
    return AllowancePeriod(
        id=row["id"],
        account_id=row["account_id"],
        period_start=_from_db(row["period_start"]),
        period_end=_from_db(row["period_end"]),
        tokens_granted=row["tokens_granted"],
        tokens_used=row["tokens_used"],
        source=AllowanceSource(row["source"]),
        metadata=AllowanceMetadata(
            base_tokens=row["base_tokens"],
            rollover_tokens=row["rollover_tokens"],
            plan=_parse_plan(row["plan"]),
            created_by=row["created_by"],
        ),
        low_balance_warned=bool(row["low_balance_warned"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        id=row["id"],
        account_id=row["account_id"],
        allowance_id=row["allowance_id"],
        idempotency_key=row["idempotency_key"],
        feature=row["feature"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        total_tokens=row["total_tokens"],
        credits_charged=row["credits_charged"],
        tokens_per_credit=row["tokens_per_credit"],
        tokens_granted_after=row["tokens_granted_after"],
        tokens_used_after=row["tokens_used_after"],
        balance_applied=bool(row["balance_applied"]),
        model=row["model"],
        actor=row["actor"],
        channel=row["channel"],
        request_id=row["request_id"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=_from_db(row["created_at"]),
    )


def _period_params(period: AllowancePeriod, now: datetime) -> tuple:
    meta = period.metadata
    return (
        period.id,
        period.account_id,
        _to_db(period.period_start),
        _to_db(period.period_end),
        period.tokens_granted,
        period.tokens_used,
        period.source.value,
        meta.base_tokens,
        meta.rollover_tokens,
        meta.plan.value if meta.plan else None,
        meta.created_by,
        int(period.low_balance_warned),
        _to_db(period.created_at or now),
        _to_db(period.updated_at or now),
    )


def _event_params(event: UsageEvent) -> tuple:
    return (
        event.id,
        event.account_id,
        event.allowance_id,
        event.idempotency_key,
        event.feature,
        event.prompt_tokens,
        event.completion_tokens,
        event.total_tokens,
        event.credits_charged,
        event.tokens_per_credit,
        event.tokens_granted_after,
        event.tokens_used_after,
        int(event.balance_applied),
        event.model,
        event.actor,
        event.channel,
        event.request_id,
        json.dumps(event.metadata, sort_keys=True, default=str),
        _to_db(event.created_at),
    )


class LedgerRepository:
    """Repository for allowance periods, usage events and their collaborators.

    Every method opens its own connection, so instances hold no state
    beyond configuration and can be shared freely between threads.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a writer waits on a locked database
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self):
        return open_connection(self.db_path, self.busy_timeout)

    # ------------------------------------------------------------------
    # Allowance periods
    # ------------------------------------------------------------------

    def find_period_containing(
        self,
        account_id: str,
        instant: datetime
    ) -> Optional[AllowancePeriod]:
        """Get the period with ``period_start <= instant < period_end``."""
        stamp = _to_db(instant)
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM allowance_period
                WHERE account_id = ? AND period_start <= ? AND period_end > ?
                ORDER BY period_start DESC LIMIT 1
                """,
                (account_id, stamp, stamp),
            ).fetchone()
            return _row_to_period(row) if row else None

    def find_previous_period(
        self,
        account_id: str,
        before: datetime
    ) -> Optional[AllowancePeriod]:
        """Get the most recent period that ended at or before ``before``."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM allowance_period
                WHERE account_id = ? AND period_end <= ?
                ORDER BY period_end DESC LIMIT 1
                """,
                (account_id, _to_db(before)),
            ).fetchone()
            return _row_to_period(row) if row else None

    def get_period(self, period_id: str) -> Optional[AllowancePeriod]:
        """Get a period by id."""
        with self._connect() as conn:
            return self._fetch_period(conn, period_id)

    def list_periods(self, account_id: str) -> List[AllowancePeriod]:
        """All periods of an account, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM allowance_period WHERE account_id = ? ORDER BY period_start",
                (account_id,),
            ).fetchall()
            return [_row_to_period(row) for row in rows]

    def insert_period(self, period: AllowancePeriod, now: datetime) -> AllowancePeriod:
        """Insert a new period.

        Raises:
            AllowanceRaceLost: A period already exists for
                ``(account_id, period_start)``
        """
        with self._connect() as conn:
            try:
                conn.execute(_INSERT_PERIOD_SQL, _period_params(period, now))
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e):
                    raise AllowanceRaceLost(period.account_id, period.period_start) from e
                raise
        return replace(
            period,
            created_at=period.created_at or now,
            updated_at=period.updated_at or now,
        )

    def accounts_with_period_containing(self, instant: datetime) -> Set[str]:
        """Accounts that already have a period covering ``instant``."""
        stamp = _to_db(instant)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT account_id FROM allowance_period
                WHERE period_start <= ? AND period_end > ?
                """,
                (stamp, stamp),
            ).fetchall()
            return {row["account_id"] for row in rows}

    def claim_low_balance_warning(self, period_id: str, now: datetime) -> bool:
        """Set the warned flag of a period.

        Returns:
            True only for the caller whose update flipped the flag
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE allowance_period
                SET low_balance_warned = 1, updated_at = ?
                WHERE id = ? AND low_balance_warned = 0
                """,
                (_to_db(now), period_id),
            )
            return cursor.rowcount == 1

    def apply_adjustment(
        self,
        account_id: str,
        period_start: datetime,
        period_end: datetime,
        new_granted: int,
        new_used: int,
        actor: str,
        plan: Plan,
        tokens_per_credit: int,
        now: datetime
    ) -> Tuple[AllowancePeriod, UsageEvent]:
        """Overwrite (or create) the period's counters and log the delta.

        The period write and the synthetic ``admin_adjustment`` event are
        committed together.

        Returns:
            Tuple of (updated period, adjustment event)
        """
        with self._connect() as conn:
            with immediate_transaction(conn):
                row = conn.execute(
                    "SELECT * FROM allowance_period WHERE account_id = ? AND period_start = ?",
                    (account_id, _to_db(period_start)),
                ).fetchone()

                if row:
                    existing = _row_to_period(row)
                    conn.execute(
                        """
                        UPDATE allowance_period
                        SET tokens_granted = ?, tokens_used = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (new_granted, new_used, _to_db(now), existing.id),
                    )
                    period = replace(
                        existing,
                        tokens_granted=new_granted,
                        tokens_used=new_used,
                        updated_at=now,
                    )
                    tokens_delta = new_granted - existing.tokens_granted
                    details = {
                        "adjustment_type": "manual",
                        "tokens_granted_before": existing.tokens_granted,
                        "tokens_granted_after": new_granted,
                        "tokens_used_before": existing.tokens_used,
                        "tokens_used_after": new_used,
                        "tokens_delta": tokens_delta,
                        "used_delta": new_used - existing.tokens_used,
                    }
                else:
                    period = AllowancePeriod(
                        id=uuid.uuid4().hex,
                        account_id=account_id,
                        period_start=period_start,
                        period_end=period_end,
                        tokens_granted=new_granted,
                        tokens_used=new_used,
                        source=AllowanceSource.ADMIN_MANUAL,
                        metadata=AllowanceMetadata(
                            base_tokens=new_granted,
                            rollover_tokens=0,
                            plan=plan,
                            created_by=actor,
                        ),
                        created_at=now,
                        updated_at=now,
                    )
                    conn.execute(_INSERT_PERIOD_SQL, _period_params(period, now))
                    tokens_delta = new_granted
                    details = {
                        "adjustment_type": "create",
                        "tokens_granted_after": new_granted,
                        "tokens_used_after": new_used,
                        "tokens_delta": tokens_delta,
                        "used_delta": new_used,
                    }

                event = UsageEvent(
                    id=uuid.uuid4().hex,
                    account_id=account_id,
                    allowance_id=period.id,
                    idempotency_key=f"admin-{account_id}-{uuid.uuid4().hex}",
                    feature=ADMIN_ADJUSTMENT_FEATURE,
                    prompt_tokens=0,
                    completion_tokens=0,
                    total_tokens=tokens_delta,
                    credits_charged=credits_for_tokens(tokens_delta, tokens_per_credit),
                    tokens_per_credit=tokens_per_credit,
                    tokens_granted_after=new_granted,
                    tokens_used_after=new_used,
                    actor=actor,
                    metadata=details,
                    created_at=now,
                )
                conn.execute(_INSERT_EVENT_SQL, _event_params(event))
                return period, event

    # ------------------------------------------------------------------
    # Usage events
    # ------------------------------------------------------------------

    def get_event(self, event_id: str) -> Optional[UsageEvent]:
        """Get an event by id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM usage_event WHERE id = ?", (event_id,)
            ).fetchone()
            return _row_to_event(row) if row else None

    def get_event_by_key(self, account_id: str, idempotency_key: str) -> Optional[UsageEvent]:
        """Get the event recorded under an idempotency key, if any."""
        with self._connect() as conn:
            return self._fetch_event_by_key(conn, account_id, idempotency_key)

    def list_events(
        self,
        account_id: str,
        feature: Optional[str] = None,
        limit: int = 100
    ) -> List[UsageEvent]:
        """Get events of an account, newest first.

        Args:
            account_id: Account to list
            feature: Optional filter for a specific feature
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by creation time (newest first)
        """
        query = "SELECT * FROM usage_event WHERE account_id = ?"
        params: list = [account_id]
        if feature:
            query += " AND feature = ?"
            params.append(feature)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_row_to_event(row) for row in rows]

    def record_charge(self, draft: UsageEvent) -> ChargeRecord:
        """Record a usage event and increment its period, atomically.

        Runs in one BEGIN IMMEDIATE transaction:
        1. An event with the same idempotency key wins: DUPLICATE.
        2. If the charge does not fit the balance: INSUFFICIENT, no writes.
           Tokens of earlier events still waiting for reconciliation count
           as used, so a failed increment never frees balance.
        3. The event is inserted, then the period is incremented with a
           conditional UPDATE. If the increment itself fails, the event is
           still committed with ``balance_applied = 0``: PARTIAL.

        Args:
            draft: Event to record. The ``*_after`` and ``balance_applied``
                fields are filled in here. ``tokens_used_after`` includes
                pending tokens.

        Returns:
            ChargeRecord describing the outcome
        """
        with self._connect() as conn:
            try:
                with immediate_transaction(conn):
                    existing = self._fetch_event_by_key(
                        conn, draft.account_id, draft.idempotency_key
                    )
                    if existing:
                        return ChargeRecord(ChargeStatus.DUPLICATE, event=existing)

                    period = self._fetch_period(conn, draft.allowance_id)
                    if period is None:
                        raise StorageUnavailable(
                            f"Allowance period {draft.allowance_id} not found"
                        )

                    pending = self._pending_tokens(conn, period.id)
                    projected = period.tokens_used + pending + draft.total_tokens
                    if projected > period.tokens_granted:
                        return ChargeRecord(
                            ChargeStatus.INSUFFICIENT, period=period, pending_tokens=pending
                        )

                    event = replace(
                        draft,
                        tokens_granted_after=period.tokens_granted,
                        tokens_used_after=projected,
                        balance_applied=False,
                    )
                    try:
                        conn.execute(_INSERT_EVENT_SQL, _event_params(event))
                    except sqlite3.IntegrityError as e:
                        if not _is_unique_violation(e):
                            raise
                        winner = self._fetch_event_by_key(
                            conn, draft.account_id, draft.idempotency_key
                        )
                        return ChargeRecord(ChargeStatus.DUPLICATE, event=winner)

                    try:
                        applied = self._apply_increment(conn, event)
                    except sqlite3.Error as e:
                        return ChargeRecord(
                            ChargeStatus.PARTIAL,
                            event=event,
                            period=period,
                            error=str(e),
                            pending_tokens=pending,
                        )
                    if not applied:
                        raise _IncrementRejected()

                    return ChargeRecord(
                        ChargeStatus.APPLIED,
                        event=replace(event, balance_applied=True),
                        period=replace(
                            period, tokens_used=period.tokens_used + draft.total_tokens
                        ),
                        pending_tokens=pending,
                    )
            except _IncrementRejected:
                return ChargeRecord(
                    ChargeStatus.INSUFFICIENT,
                    period=self._fetch_period(conn, draft.allowance_id),
                    pending_tokens=self._pending_tokens(conn, draft.allowance_id),
                )

    def _apply_increment(self, conn: sqlite3.Connection, event: UsageEvent) -> bool:
        """Increment the period by the event's tokens inside a savepoint.

        Returns:
            False if the conditional update matched no row
        """
        conn.execute("SAVEPOINT apply_balance")
        try:
            cursor = conn.execute(
                """
                UPDATE allowance_period
                SET tokens_used = tokens_used + ?, updated_at = ?
                WHERE id = ? AND tokens_used + ? <= tokens_granted
                """,
                (
                    event.total_tokens,
                    _to_db(event.created_at),
                    event.allowance_id,
                    event.total_tokens,
                ),
            )
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK TO apply_balance")
                conn.execute("RELEASE apply_balance")
                return False
            conn.execute(
                "UPDATE usage_event SET balance_applied = 1 WHERE id = ?",
                (event.id,),
            )
        except sqlite3.Error:
            conn.execute("ROLLBACK TO apply_balance")
            conn.execute("RELEASE apply_balance")
            raise
        conn.execute("RELEASE apply_balance")
        return True

    def reconcile_unapplied(self, account_id: str, now: datetime) -> List[UsageEvent]:
        """Apply events whose balance increment never landed.

        The increment is unconditional: the usage already happened.
        ``balance_applied`` is the only event column ever updated.

        Returns:
            The events that were applied
        """
        with self._connect() as conn:
            with immediate_transaction(conn):
                rows = conn.execute(
                    """
                    SELECT * FROM usage_event
                    WHERE account_id = ? AND balance_applied = 0
                    ORDER BY created_at, rowid
                    """,
                    (account_id,),
                ).fetchall()
                events = [_row_to_event(row) for row in rows]
                for event in events:
                    conn.execute(
                        """
                        UPDATE allowance_period
                        SET tokens_used = tokens_used + ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (event.total_tokens, _to_db(now), event.allowance_id),
                    )
                    conn.execute(
                        "UPDATE usage_event SET balance_applied = 1 WHERE id = ?",
                        (event.id,),
                    )
                return [replace(event, balance_applied=True) for event in events]

    def _pending_tokens(self, conn: sqlite3.Connection, allowance_id: str) -> int:
        """Tokens of events recorded against a period but not yet applied to it."""
        row = conn.execute(
            """
            SELECT COALESCE(SUM(total_tokens), 0) AS pending FROM usage_event
            WHERE allowance_id = ? AND balance_applied = 0
            """,
            (allowance_id,),
        ).fetchone()
        return row["pending"]

    def _fetch_period(self, conn: sqlite3.Connection, period_id: str) -> Optional[AllowancePeriod]:
        row = conn.execute(
            "SELECT * FROM allowance_period WHERE id = ?", (period_id,)
        ).fetchone()
        return _row_to_period(row) if row else None

    def _fetch_event_by_key(
        self,
        conn: sqlite3.Connection,
        account_id: str,
        idempotency_key: str
    ) -> Optional[UsageEvent]:
        row = conn.execute(
            "SELECT * FROM usage_event WHERE account_id = ? AND idempotency_key = ?",
            (account_id, idempotency_key),
        ).fetchone()
        return _row_to_event(row) if row else None

    # ------------------------------------------------------------------
    # Credit settings
    # ------------------------------------------------------------------

    def get_settings(self) -> Dict[str, int]:
        """All stored settings as a key -> integer mapping."""
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value_int FROM credit_setting").fetchall()
            return {row["key"]: row["value_int"] for row in rows}

    def upsert_setting(self, key: str, value: int, now: datetime) -> None:
        """Insert or overwrite a setting."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO credit_setting (key, value_int, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE
                SET value_int = excluded.value_int, updated_at = excluded.updated_at
                """,
                (key, value, _to_db(now)),
            )

    # ------------------------------------------------------------------
    # Accounts, plans and roles
    # ------------------------------------------------------------------

    def register_account(self, account_id: str, now: datetime, active: bool = True) -> None:
        """Insert an account, or update its active flag if it exists."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account (account_id, active, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT (account_id) DO UPDATE SET active = excluded.active
                """,
                (account_id, int(active), _to_db(now)),
            )

    def set_account_active(self, account_id: str, active: bool) -> bool:
        """Set the active flag. Returns False for unknown accounts."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE account SET active = ? WHERE account_id = ?",
                (int(active), account_id),
            )
            return cursor.rowcount == 1

    def account_exists(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM account WHERE account_id = ?", (account_id,)
            ).fetchone()
            return row is not None

    def list_active_accounts(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT account_id FROM account WHERE active = 1 ORDER BY account_id"
            ).fetchall()
            return [row["account_id"] for row in rows]

    def get_plan(self, account_id: str) -> Optional[str]:
        """Stored plan value of an account, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT plan FROM account_plan WHERE account_id = ?", (account_id,)
            ).fetchone()
            return row["plan"] if row else None

    def set_plan(self, account_id: str, plan: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account_plan (account_id, plan, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (account_id) DO UPDATE
                SET plan = excluded.plan, updated_at = excluded.updated_at
                """,
                (account_id, plan, _to_db(now)),
            )

    def grant_role(self, actor: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_role (actor, role) VALUES (?, ?)",
                (actor, role),
            )

    def revoke_role(self, actor: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM user_role WHERE actor = ? AND role = ?",
                (actor, role),
            )

    def has_role(self, actor: str, role: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM user_role WHERE actor = ? AND role = ?",
                (actor, role),
            ).fetchone()
            return row is not None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    ``usage_event`` is an append-only log: rows are never deleted and only
    the ``balance_applied`` bookkeeping flag is ever updated.

    Args:
        db_path: Path to SQLite database file
    """
    with open_connection(db_path) as conn:
        conn.executescript(SCHEMA)
