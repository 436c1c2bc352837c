"""
Postmark bounce sync task.

Repairs local email delivery state when Postmark webhooks were missed:

1. Outbound messages: backfill messages Postmark sent that have no local
   record, and advance local statuses that lag behind Postmark's.
2. Bounces: mark known messages as bounced (or spam_complaint).
3. Inbound messages: backfill received messages with no local record.
4. Message events: for local outbound emails sent in the window, record
   missed delivered/bounced/opened/clicked/spam_complaint events and
   advance the status they imply.

Records are processed in batches of 50. A failure on one record is
logged and counted as skipped; a failure of a whole step is reported in
``Summary.errors`` and the remaining steps still run.
"""

from collections.abc import Iterable, Iterator
from dataclasses import replace
from datetime import UTC, datetime
from itertools import islice

from opsutils.tracing import add_span_attributes, add_span_event

from ..models import Discrepancy, Summary
from ..schedule import Schedule
from ..task import ReconcileContext, ReconciliationTask
from .email_store import (
    RECONCILIATION_SOURCE,
    EmailEvent,
    EmailRecord,
    EmailStateStore,
    InMemoryEmailStore,
    is_status_advance,
)
from .postmark_client import Bounce, InboundMessage, MessageEvent, OutboundMessage, PostmarkClient

BATCH_SIZE = 50

POSTMARK_STATUS_MAP = {
    "Queued": "queued",
    "Processed": "sent",
    "Sent": "sent",
    "Delivered": "delivered",
    "Bounced": "bounced",
    "HardBounce": "bounced",
    "SoftBounce": "bounced",
    "SpamComplaint": "spam_complaint",
    "ManuallyDropped": "failed",
}

# Postmark message event types, as reported by message details and webhooks
EVENT_TYPE_MAP = {
    "Delivered": "delivered",
    "Delivery": "delivered",
    "Bounced": "bounced",
    "Bounce": "bounced",
    "HardBounce": "bounced",
    "SoftBounce": "bounced",
    "SpamComplaint": "spam_complaint",
    "Opened": "opened",
    "Open": "opened",
    "LinkClicked": "clicked",
    "Click": "clicked",
}

# Event types that imply a delivery status
EVENT_STATUS_MAP = {
    "delivered": "delivered",
    "bounced": "bounced",
    "spam_complaint": "spam_complaint",
}


def map_postmark_status(status: str) -> str:
    return POSTMARK_STATUS_MAP.get(status, "sent")


def map_bounce_status(bounce_type: str) -> str:
    return "spam_complaint" if bounce_type == "SpamComplaint" else "bounced"


def map_event_type(event_type: str) -> str | None:
    return EVENT_TYPE_MAP.get(event_type)


def batched(items: Iterable, size: int) -> Iterator[list]:
    iterator = iter(items)
    while batch := list(islice(iterator, size)):
        yield batch


class PostmarkBounceSyncTask(ReconciliationTask):
    """
    Reconcile Postmark outbound messages and bounces against local email state

    Args:
        client: Postmark client (default: built from POSTMARK_API_TOKEN when set)
        store: Local email state (default: in-memory)
        api_token: Token used when no client is given
    """

    task_id = "postmark-bounce-sync"
    display_name = "Postmark bounce sync"
    description = "Backfill missed messages, bounces and delivery events from Postmark"
    default_schedule = Schedule.every(minutes=5)
    default_window_hours = 72

    def __init__(
        self,
        client: PostmarkClient | None = None,
        store: EmailStateStore | None = None,
        api_token: str | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._client = client
        self._api_token = api_token
        self.store = store if store is not None else InMemoryEmailStore()

    @property
    def client(self) -> PostmarkClient:
        if self._client is None:
            self._client = PostmarkClient(api_token=self._api_token)
        return self._client

    def validate_config(self) -> list[str]:
        try:
            client = self.client
        except ValueError:
            return ["POSTMARK_API_TOKEN environment variable is not set"]

        try:
            if not client.health_check():
                return ["Postmark API health check failed"]
        except Exception as e:
            return [f"Postmark API connection failed: {e}"]
        return []

    def reconcile(self, context: ReconcileContext) -> Summary:
        log = context.log
        log.info(
            f"Reconciling Postmark window {context.window_start.isoformat()} "
            f"to {context.window_end.isoformat()}"
        )

        summary = Summary()
        errors = []
        for step_name, step in (
            ("Outbound", self._reconcile_outbound),
            ("Bounce", self._reconcile_bounces),
            ("Inbound", self._reconcile_inbound),
            ("Events", self._reconcile_events),
        ):
            try:
                summary = summary.merge(step(context))
            except Exception as e:
                message = f"{step_name} reconciliation failed: {e}"
                log.error(message, exc_info=True)
                add_span_event("reconciliation.step_failed", step=step_name.lower(), error=str(e))
                errors.append(message)

        summary.errors.extend(errors)
        add_span_attributes(backfilled=summary.backfilled, skipped=summary.skipped)
        log.info(
            f"Postmark reconciliation complete: scanned={summary.scanned}, "
            f"backfilled={summary.backfilled}, corrected={summary.corrected}, "
            f"skipped={summary.skipped}"
        )
        return summary

    def _reconcile_outbound(self, context: ReconcileContext) -> Summary:
        summary = Summary()
        messages = self.client.iter_outbound_messages(context.window_start, context.window_end)

        for batch_number, batch in enumerate(batched(messages, BATCH_SIZE), start=1):
            context.log.debug(f"Processing outbound batch {batch_number} ({len(batch)} messages)")
            for message in batch:
                summary.scanned += 1
                try:
                    self._process_outbound(message, summary)
                except Exception as e:
                    summary.skipped += 1
                    context.log.warning(
                        f"Failed to process outbound message {message.message_id}: {e}",
                        message_id=message.message_id,
                    )

        return summary

    def _process_outbound(self, message: OutboundMessage, summary: Summary) -> None:
        status = map_postmark_status(message.status)
        existing = self.store.get_by_message_id(message.message_id)

        if existing is None:
            self._backfill(EmailRecord(
                postmark_message_id=message.message_id,
                status=status,
                from_address=message.sender,
                to_addresses=list(message.recipients),
                subject=message.subject,
                message_stream=message.message_stream,
                sent_at=message.received_at,
                state_source=RECONCILIATION_SOURCE,
                last_reconciled_at=datetime.now(UTC),
            ), summary)
            return

        if is_status_advance(existing.status, status):
            self._advance(
                existing,
                status,
                summary,
                note=f"State corrected from {existing.status} to {status} (Postmark status {message.status})",
            )

    def _reconcile_bounces(self, context: ReconcileContext) -> Summary:
        summary = Summary()
        bounces = self.client.iter_bounces(context.window_start, context.window_end)

        for batch_number, batch in enumerate(batched(bounces, BATCH_SIZE), start=1):
            context.log.debug(f"Processing bounce batch {batch_number} ({len(batch)} bounces)")
            for bounce in batch:
                summary.scanned += 1
                try:
                    self._process_bounce(bounce, summary)
                except Exception as e:
                    summary.skipped += 1
                    context.log.warning(
                        f"Failed to process bounce {bounce.bounce_id} for {bounce.message_id}: {e}",
                        message_id=bounce.message_id,
                    )

        return summary

    def _process_bounce(self, bounce: Bounce, summary: Summary) -> None:
        existing = self.store.get_by_message_id(bounce.message_id)
        if existing is None:
            # Not sent through this application
            summary.skipped += 1
            return

        status = map_bounce_status(bounce.bounce_type)
        if is_status_advance(existing.status, status):
            self._advance(
                existing,
                status,
                summary,
                bounced_at=bounce.bounced_at,
                note=f"State corrected from {existing.status} to {status} ({bounce.bounce_type} bounce)",
            )

    def _reconcile_inbound(self, context: ReconcileContext) -> Summary:
        summary = Summary()
        messages = self.client.iter_inbound_messages(context.window_start, context.window_end)

        for batch_number, batch in enumerate(batched(messages, BATCH_SIZE), start=1):
            context.log.debug(f"Processing inbound batch {batch_number} ({len(batch)} messages)")
            for message in batch:
                summary.scanned += 1
                try:
                    self._process_inbound(message, summary)
                except Exception as e:
                    summary.skipped += 1
                    context.log.warning(
                        f"Failed to process inbound message {message.message_id}: {e}",
                        message_id=message.message_id,
                    )

        return summary

    def _process_inbound(self, message: InboundMessage, summary: Summary) -> None:
        if self.store.get_by_message_id(message.message_id) is not None:
            return

        self._backfill(EmailRecord(
            postmark_message_id=message.message_id,
            status="delivered",
            direction="inbound",
            from_address=message.sender,
            to_addresses=list(message.recipients),
            cc_addresses=list(message.cc),
            subject=message.subject,
            in_reply_to=message.in_reply_to,
            sent_at=message.received_at,
            delivered_at=message.received_at,
            state_source=RECONCILIATION_SOURCE,
            last_reconciled_at=datetime.now(UTC),
        ), summary)

    def _reconcile_events(self, context: ReconcileContext) -> Summary:
        summary = Summary()
        records = self.store.list_outbound(context.window_start, context.window_end)

        for batch_number, batch in enumerate(batched(records, BATCH_SIZE), start=1):
            context.log.debug(f"Processing event batch {batch_number} ({len(batch)} emails)")
            for record in batch:
                summary.scanned += 1
                try:
                    events = self.client.get_message_events(record.postmark_message_id)
                    self._process_events(record, events, summary)
                except Exception as e:
                    summary.skipped += 1
                    context.log.warning(
                        f"Failed to reconcile events for {record.postmark_message_id}: {e}",
                        message_id=record.postmark_message_id,
                    )

        return summary

    def _process_events(self, record: EmailRecord, events: list[MessageEvent], summary: Summary) -> None:
        timed = sorted((e for e in events if e.received_at is not None), key=lambda e: e.received_at)
        for event in timed:
            event_type = map_event_type(event.event_type)
            if event_type is None:
                continue

            logged = self.store.record_event(EmailEvent(
                postmark_message_id=record.postmark_message_id,
                event_type=event_type,
                occurred_at=event.received_at,
                recipient=event.recipient,
                details=dict(event.details),
            ))
            if logged:
                summary.record(Discrepancy(
                    record_id=record.postmark_message_id,
                    field_name="event",
                    expected=event_type,
                    observed=None,
                    action="log_event",
                ))

            status = EVENT_STATUS_MAP.get(event_type)
            if status is None or not is_status_advance(record.status, status):
                continue
            delivered = status == "delivered"
            if self._advance(
                record,
                status,
                summary,
                delivered_at=event.received_at if delivered else None,
                bounced_at=None if delivered else event.received_at,
                note=f"State corrected from {record.status} to {status} ({event.event_type} event)",
            ):
                record = replace(record, status=status)

    def _backfill(self, record: EmailRecord, summary: Summary) -> None:
        self.store.upsert(record)
        summary.record(Discrepancy(
            record_id=record.postmark_message_id,
            field_name="record",
            expected=record.status,
            observed=None,
            action="backfill",
        ))

    def _advance(
        self,
        existing: EmailRecord,
        status: str,
        summary: Summary,
        bounced_at: datetime | None = None,
        delivered_at: datetime | None = None,
        note: str | None = None,
    ) -> bool:
        # The store refuses the write when the stored status has moved on
        # since it was read, e.g. a webhook landed mid-run.
        applied = self.store.update_status(
            existing.postmark_message_id,
            status,
            bounced_at=bounced_at,
            delivered_at=delivered_at,
            note=note,
        )
        if applied:
            summary.record(Discrepancy(
                record_id=existing.postmark_message_id,
                field_name="status",
                expected=status,
                observed=existing.status,
                action="update_status",
            ))
        return applied
