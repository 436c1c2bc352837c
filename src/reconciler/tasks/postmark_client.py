"""
Postmark Messages/Bounces API client for reconciliation

Fetches outbound messages, inbound messages and bounces for a time window
with full offset/count pagination, and the event history of a single
outbound message. Rate limiting (HTTP 429) and server errors are
retried with exponential backoff; other HTTP errors fail immediately.
"""

import logging
import os
from email.utils import parsedate_to_datetime
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from opsutils.retry import retry_with_backoff

from ..errors import ReconciliationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.postmarkapp.com"

# Postmark returns at most 500 records per request and refuses
# offset + count beyond 10,000 for message and bounce searches.
PAGE_SIZE = 500
MAX_RESULT_WINDOW = 10_000

_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class PostmarkAPIError(ReconciliationError):
    """Non-2xx response from the Postmark API."""

    retryable = False

    def __init__(self, status_code: int, message: str, error_code: int | None = None):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(f"Postmark API error {status_code}: {message}")


class PostmarkRateLimitError(PostmarkAPIError):
    retryable = True


class PostmarkServerError(PostmarkAPIError):
    retryable = True


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    return getattr(exc, "retryable", False)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Unparseable Postmark timestamp: {value!r}")
        return None


def parse_message_date(value: str | None) -> datetime | None:
    """Parse an inbound Date header (RFC 2822), falling back to ISO 8601."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return parse_timestamp(value)


@dataclass(frozen=True)
class OutboundMessage:
    message_id: str
    status: str
    recipients: list[str] = field(default_factory=list)
    sender: str = ""
    subject: str = ""
    message_stream: str = ""
    received_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "OutboundMessage":
        return cls(
            message_id=data["MessageID"],
            status=data.get("Status", ""),
            recipients=[r["Email"] for r in data.get("To") or [] if r.get("Email")],
            sender=data.get("From", ""),
            subject=data.get("Subject", ""),
            message_stream=data.get("MessageStream", ""),
            received_at=parse_timestamp(data.get("ReceivedAt")),
            metadata=data.get("Metadata") or {},
        )


@dataclass(frozen=True)
class InboundMessage:
    message_id: str
    sender: str
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    subject: str = ""
    received_at: datetime | None = None
    in_reply_to: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "InboundMessage":
        from_full = data.get("FromFull") or {}
        headers = {h.get("Name", "").lower(): h.get("Value") for h in data.get("Headers") or []}
        return cls(
            message_id=data["MessageID"],
            sender=from_full.get("Email") or data.get("From", ""),
            sender_name=from_full.get("Name") or data.get("FromName", ""),
            recipients=[r["Email"] for r in data.get("ToFull") or [] if r.get("Email")],
            cc=[r["Email"] for r in data.get("CcFull") or [] if r.get("Email")],
            subject=data.get("Subject", ""),
            received_at=parse_message_date(data.get("Date")) or parse_timestamp(data.get("ReceivedAt")),
            in_reply_to=headers.get("in-reply-to"),
        )


@dataclass(frozen=True)
class MessageEvent:
    """One entry of an outbound message's event history (Delivered, Opened, ...)"""

    message_id: str
    event_type: str
    received_at: datetime | None = None
    recipient: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, message_id: str, data: dict[str, Any]) -> "MessageEvent":
        return cls(
            message_id=message_id,
            event_type=data.get("Type") or data.get("RecordType", ""),
            received_at=parse_timestamp(data.get("ReceivedAt")),
            recipient=data.get("Recipient", ""),
            details=data.get("Details") or {},
        )


@dataclass(frozen=True)
class Bounce:
    bounce_id: int
    message_id: str
    bounce_type: str
    email: str = ""
    description: str = ""
    bounced_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Bounce":
        return cls(
            bounce_id=data["ID"],
            message_id=data["MessageID"],
            bounce_type=data.get("Type", ""),
            email=data.get("Email", ""),
            description=data.get("Description", ""),
            bounced_at=parse_timestamp(data.get("BouncedAt")),
        )


class PostmarkClient:
    """
    Postmark server API client

    Args:
        api_token: Server API token (default: from POSTMARK_API_TOKEN env var)
        base_url: API base URL
        timeout: Request timeout in seconds
        max_retries: Retries for rate-limited or failed requests
        session: requests.Session to use (default: a new session)

    Raises:
        ValueError: If no API token is available
    """

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        session: requests.Session | None = None,
    ):
        self.api_token = api_token or os.getenv("POSTMARK_API_TOKEN")
        if not self.api_token:
            raise ValueError(
                "Postmark API token not provided. Set POSTMARK_API_TOKEN environment variable "
                "or pass api_token parameter."
            )

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "X-Postmark-Server-Token": self.api_token,
        })

        self._get = retry_with_backoff(
            max_retries=max_retries,
            base_delay=1.0,
            max_delay=30.0,
            retry_if=_is_retryable,
        )(self._request)

    def _request(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug(f"GET {url} {params or {}}")

        response = self.session.get(url, params=params, timeout=self.timeout)

        if response.status_code == 429:
            raise PostmarkRateLimitError(429, "rate limit exceeded")
        if response.status_code >= 500:
            raise PostmarkServerError(response.status_code, response.text[:200])
        if response.status_code >= 400:
            message, error_code = response.text[:200], None
            try:
                body = response.json()
                message = body.get("Message", message)
                error_code = body.get("ErrorCode")
            except ValueError:
                pass
            raise PostmarkAPIError(response.status_code, message, error_code)

        return response.json()

    def _paginate(
        self,
        path: str,
        items_key: str,
        start: datetime,
        end: datetime,
    ) -> Iterator[dict[str, Any]]:
        offset = 0
        while True:
            if offset >= MAX_RESULT_WINDOW:
                logger.warning(
                    f"Stopped paginating {path} at Postmark's {MAX_RESULT_WINDOW} result limit; "
                    f"narrow the reconciliation window to see older records"
                )
                return

            page = self._get(path, params={
                "count": min(PAGE_SIZE, MAX_RESULT_WINDOW - offset),
                "offset": offset,
                "fromdate": start.strftime(_DATE_FORMAT),
                "todate": end.strftime(_DATE_FORMAT),
            })
            items = page.get(items_key) or []
            total = page.get("TotalCount", 0)
            logger.debug(f"Fetched {len(items)} {items_key} (offset: {offset}, total: {total})")

            yield from items

            offset += len(items)
            if not items or offset >= total:
                return

    def iter_outbound_messages(self, start: datetime, end: datetime) -> Iterator[OutboundMessage]:
        for item in self._paginate("/messages/outbound", "Messages", start, end):
            yield OutboundMessage.from_api(item)

    def iter_inbound_messages(self, start: datetime, end: datetime) -> Iterator[InboundMessage]:
        for item in self._paginate("/messages/inbound", "InboundMessages", start, end):
            yield InboundMessage.from_api(item)

    def iter_bounces(self, start: datetime, end: datetime) -> Iterator[Bounce]:
        for item in self._paginate("/bounces", "Bounces", start, end):
            yield Bounce.from_api(item)

    def get_message_events(self, message_id: str) -> list[MessageEvent]:
        """
        Fetch the event history of one outbound message

        Raises:
            PostmarkAPIError: If Postmark does not know the message
        """
        details = self._get(f"/messages/outbound/{message_id}/details")
        return [MessageEvent.from_api(message_id, event) for event in details.get("MessageEvents") or []]

    def health_check(self) -> bool:
        """
        Check if the Postmark API is reachable with this token

        Returns:
            True if the server endpoint answers, False otherwise
        """
        try:
            self._request("/server")
            return True
        except (requests.RequestException, PostmarkAPIError) as e:
            logger.error(f"Postmark health check failed: {e}")
            return False
