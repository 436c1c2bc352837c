"""
Local email delivery state touched by Postmark reconciliation.

Records are keyed by the Postmark MessageID. Status only moves forward
along queued < sent < delivered < bounced/spam_complaint/failed. The
stores enforce that ordering in the write itself (under the store lock,
or in the SQL WHERE/CASE), so a webhook that lands between a read and a
correction is never overwritten with an older status.

Provider events (delivered, bounced, opened, clicked, spam_complaint) are
kept in a per-email event log keyed by message, type, time and recipient;
recording the same event twice is a no-op.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from opsutils.retry import retry_database_operation

logger = logging.getLogger(__name__)

STATUS_RANK = {
    "queued": 0,
    "sent": 1,
    "delivered": 2,
    "bounced": 3,
    "spam_complaint": 3,
    "failed": 3,
}

EVENT_TYPES = ("delivered", "bounced", "opened", "clicked", "spam_complaint")

RECONCILIATION_SOURCE = "reconciliation"


def status_rank(status: str | None) -> int:
    return STATUS_RANK.get(status, -1)


def is_status_advance(current: str | None, new: str) -> bool:
    """True if moving from ``current`` to ``new`` is a forward correction."""
    if current is None:
        return True
    return status_rank(new) > status_rank(current)


def status_rank_sql(column: str) -> str:
    """SQL expression ranking ``column`` like STATUS_RANK (unknown and NULL rank -1)."""
    cases = " ".join(f"WHEN '{status}' THEN {rank}" for status, rank in STATUS_RANK.items())
    return f"(CASE {column} {cases} ELSE -1 END)"


@dataclass(frozen=True)
class EmailRecord:
    postmark_message_id: str
    status: str
    direction: str = "outbound"
    from_address: str = ""
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    subject: str = ""
    message_stream: str = ""
    in_reply_to: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    bounced_at: datetime | None = None
    state_source: str = "webhook"
    last_reconciled_at: datetime | None = None
    reconciliation_notes: str | None = None


@dataclass(frozen=True)
class EmailEvent:
    postmark_message_id: str
    event_type: str
    occurred_at: datetime
    recipient: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    source: str = RECONCILIATION_SOURCE

    @property
    def key(self) -> tuple[str, str, datetime, str]:
        return (self.postmark_message_id, self.event_type, self.occurred_at, self.recipient)


class EmailStateStore(ABC):
    @abstractmethod
    def get_by_message_id(self, message_id: str) -> EmailRecord | None:
        """Fetch the local record for a Postmark MessageID."""

    @abstractmethod
    def upsert(self, record: EmailRecord) -> None:
        """
        Insert a record, or refresh it if the MessageID already exists

        The status of an existing record is only replaced when the new
        status ranks higher.
        """

    @abstractmethod
    def update_status(
        self,
        message_id: str,
        status: str,
        bounced_at: datetime | None = None,
        delivered_at: datetime | None = None,
        note: str | None = None,
    ) -> bool:
        """
        Move an existing record forward to ``status``

        Returns:
            False if no record exists for message_id, or its stored
            status already ranks at or above ``status``
        """

    @abstractmethod
    def list_outbound(self, start: datetime, end: datetime) -> list[EmailRecord]:
        """Outbound records sent within [start, end], oldest first."""

    @abstractmethod
    def record_event(self, event: EmailEvent) -> bool:
        """
        Append an event to the email's event log

        Returns:
            False if the same event was already recorded
        """

    @abstractmethod
    def list_events(self, message_id: str) -> list[EmailEvent]:
        """Events recorded for one email, oldest first."""


class InMemoryEmailStore(EmailStateStore):
    def __init__(self, records: list[EmailRecord] | None = None):
        self._records = {r.postmark_message_id: r for r in records or []}
        self._events: dict[tuple, EmailEvent] = {}
        self._lock = threading.Lock()

    def get_by_message_id(self, message_id: str) -> EmailRecord | None:
        with self._lock:
            return self._records.get(message_id)

    def upsert(self, record: EmailRecord) -> None:
        with self._lock:
            existing = self._records.get(record.postmark_message_id)
            if existing is None:
                self._records[record.postmark_message_id] = record
                return
            status = record.status if is_status_advance(existing.status, record.status) else existing.status
            self._records[record.postmark_message_id] = replace(
                existing,
                status=status,
                state_source=record.state_source,
                last_reconciled_at=record.last_reconciled_at,
            )

    def update_status(
        self,
        message_id: str,
        status: str,
        bounced_at: datetime | None = None,
        delivered_at: datetime | None = None,
        note: str | None = None,
    ) -> bool:
        with self._lock:
            existing = self._records.get(message_id)
            if existing is None or not is_status_advance(existing.status, status):
                return False
            self._records[message_id] = replace(
                existing,
                status=status,
                bounced_at=bounced_at or existing.bounced_at,
                delivered_at=delivered_at or existing.delivered_at,
                state_source=RECONCILIATION_SOURCE,
                last_reconciled_at=datetime.now(UTC),
                reconciliation_notes=note,
            )
            return True

    def list_outbound(self, start: datetime, end: datetime) -> list[EmailRecord]:
        with self._lock:
            records = [
                r for r in self._records.values()
                if r.direction == "outbound" and r.sent_at is not None and start <= r.sent_at <= end
            ]
        return sorted(records, key=lambda r: r.sent_at)

    def record_event(self, event: EmailEvent) -> bool:
        with self._lock:
            if event.key in self._events:
                return False
            self._events[event.key] = event
            return True

    def list_events(self, message_id: str) -> list[EmailEvent]:
        with self._lock:
            events = [e for e in self._events.values() if e.postmark_message_id == message_id]
        return sorted(events, key=lambda e: e.occurred_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


EVENTS_TABLE = "email_events"

CREATE_EVENTS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
    id                   BIGSERIAL PRIMARY KEY,
    postmark_message_id  TEXT NOT NULL,
    event_type           TEXT NOT NULL,
    occurred_at          TIMESTAMPTZ NOT NULL,
    recipient            TEXT NOT NULL DEFAULT '',
    details              JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    source               TEXT NOT NULL,
    recorded_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (postmark_message_id, event_type, occurred_at, recipient)
);
"""


class PostgresEmailStore(EmailStateStore):
    """
    Email state in the application's ``emails`` table

    Events go to ``email_events``, created by ensure_schema(). The
    ``emails`` table itself belongs to the application.

    Args:
        connect: Zero-argument callable returning a new psycopg2 connection
        table: Table name
    """

    COLUMNS = (
        "postmark_message_id, status, direction, from_address, to_addresses, cc_addresses, "
        "subject, message_stream, in_reply_to, sent_at, delivered_at, bounced_at, "
        "state_source, last_reconciled_at, reconciliation_notes"
    )
    EVENT_COLUMNS = "postmark_message_id, event_type, occurred_at, recipient, details, source"

    def __init__(self, connect: Callable[[], Any], table: str = "emails"):
        self._connect = connect
        self.table = table

    @classmethod
    def from_config(cls, config: dict[str, Any], table: str = "emails") -> "PostgresEmailStore":
        return cls(lambda: psycopg2.connect(
            host=config["host"],
            port=config.get("port", 5432),
            database=config["database"],
            user=config["username"],
            password=config["password"],
        ), table=table)

    def _execute(self, sql: str, params: tuple | None = None, fetch: bool = False) -> Any:
        conn = self._connect()
        try:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute(sql, params)
                    if fetch:
                        return cursor.fetchall()
                    return cursor.rowcount
        finally:
            conn.close()

    @retry_database_operation(max_retries=3)
    def ensure_schema(self) -> None:
        self._execute(CREATE_EVENTS_TABLE_SQL)
        logger.info(f"Ensured email event table {EVENTS_TABLE}")

    @retry_database_operation(max_retries=3)
    def get_by_message_id(self, message_id: str) -> EmailRecord | None:
        rows = self._execute(
            f"SELECT {self.COLUMNS} FROM {self.table} WHERE postmark_message_id = %s",
            (message_id,),
            fetch=True,
        )
        return _row_to_record(rows[0]) if rows else None

    @retry_database_operation(max_retries=3)
    def upsert(self, record: EmailRecord) -> None:
        current_rank = status_rank_sql(f"{self.table}.status")
        self._execute(
            f"""
            INSERT INTO {self.table} ({self.COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (postmark_message_id) DO UPDATE SET
                status = CASE
                    WHEN {status_rank_sql("EXCLUDED.status")} > {current_rank} THEN EXCLUDED.status
                    ELSE {self.table}.status
                END,
                state_source = EXCLUDED.state_source,
                last_reconciled_at = EXCLUDED.last_reconciled_at
            """,
            (
                record.postmark_message_id,
                record.status,
                record.direction,
                record.from_address,
                list(record.to_addresses),
                list(record.cc_addresses),
                record.subject,
                record.message_stream,
                record.in_reply_to,
                record.sent_at,
                record.delivered_at,
                record.bounced_at,
                record.state_source,
                record.last_reconciled_at,
                record.reconciliation_notes,
            ),
        )

    @retry_database_operation(max_retries=3)
    def update_status(
        self,
        message_id: str,
        status: str,
        bounced_at: datetime | None = None,
        delivered_at: datetime | None = None,
        note: str | None = None,
    ) -> bool:
        updated = self._execute(
            f"""
            UPDATE {self.table}
            SET status = %s,
                bounced_at = COALESCE(%s, bounced_at),
                delivered_at = COALESCE(%s, delivered_at),
                state_source = %s,
                last_reconciled_at = NOW(),
                reconciliation_notes = %s
            WHERE postmark_message_id = %s
              AND {status_rank_sql("status")} < %s
            """,
            (status, bounced_at, delivered_at, RECONCILIATION_SOURCE, note, message_id, status_rank(status)),
        )
        return updated > 0

    @retry_database_operation(max_retries=3)
    def list_outbound(self, start: datetime, end: datetime) -> list[EmailRecord]:
        rows = self._execute(
            f"SELECT {self.COLUMNS} FROM {self.table} "
            f"WHERE direction = 'outbound' AND sent_at >= %s AND sent_at <= %s "
            f"ORDER BY sent_at",
            (start, end),
            fetch=True,
        )
        return [_row_to_record(row) for row in rows]

    @retry_database_operation(max_retries=3)
    def record_event(self, event: EmailEvent) -> bool:
        inserted = self._execute(
            f"""
            INSERT INTO {EVENTS_TABLE} ({self.EVENT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (postmark_message_id, event_type, occurred_at, recipient) DO NOTHING
            """,
            (
                event.postmark_message_id,
                event.event_type,
                event.occurred_at,
                event.recipient,
                Json(event.details),
                event.source,
            ),
        )
        return inserted > 0

    @retry_database_operation(max_retries=3)
    def list_events(self, message_id: str) -> list[EmailEvent]:
        rows = self._execute(
            f"SELECT {self.EVENT_COLUMNS} FROM {EVENTS_TABLE} "
            f"WHERE postmark_message_id = %s ORDER BY occurred_at",
            (message_id,),
            fetch=True,
        )
        return [EmailEvent(**{**row, "details": row["details"] or {}}) for row in rows]


def _row_to_record(row: dict[str, Any]) -> EmailRecord:
    return EmailRecord(**{
        **row,
        "to_addresses": list(row["to_addresses"] or []),
        "cc_addresses": list(row.get("cc_addresses") or []),
    })
