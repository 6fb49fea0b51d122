"""Data model classes for the SMS ingestion core."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

CATEGORIES = [
    "Food",
    "Travel",
    "Shopping",
    "Bills",
    "Entertainment",
    "Health",
    "Transfer",
    "Income",
    "Investment",
    "Other",
]

DIRECTIONS = ("debit", "credit")


def to_amount(value) -> Optional[Decimal]:
    """Coerce a classifier/server amount into a positive 2dp Decimal, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            value = value.replace(",", "").replace("₹", "").strip()
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount.quantize(Decimal("0.01"))


def normalize_category(value) -> str:
    """Map a free-form category onto CATEGORIES (case-insensitive), default Other."""
    if not isinstance(value, str):
        return "Other"
    for cat in CATEGORIES:
        if cat.lower() == value.strip().lower():
            return cat
    return "Other"


def parse_timestamp(value) -> Optional[datetime]:
    """Parse epoch milliseconds or an ISO 8601 string into an aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def logo_url(name: str, domain: Optional[str]) -> str:
    """Merchant logo for the ledger UI; initials avatar when the domain is unknown."""
    if domain:
        return f"https://img.logo.dev/{domain}"
    return f"https://ui-avatars.com/api/?name={quote(name or 'Unknown')}&background=random"


@dataclass
class RawMessage:
    """An inbound SMS observation from the platform."""
    sender: str
    body: str
    received_at: datetime  # aware, UTC
    external_id: str = ""  # platform message id (_id), when provided

    def to_dict(self) -> dict:
        return {
            "sender": self.sender,
            "body": self.body,
            "received_at": self.received_at.isoformat(),
            "external_id": self.external_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RawMessage":
        received = parse_timestamp(data.get("received_at")) or datetime.now(timezone.utc)
        return cls(
            sender=str(data.get("sender") or ""),
            body=str(data.get("body") or ""),
            received_at=received,
            external_id=str(data.get("external_id") or ""),
        )

    @classmethod
    def from_platform_event(cls, event: dict) -> "RawMessage":
        """Build from the Android receiver shape: originatingAddress, body, timestamp (ms), _id."""
        received = parse_timestamp(event.get("timestamp"))
        if received is None:
            # Redeliveries of this SMS will not share a fingerprint bucket
            logger.warning("SMS event without a usable timestamp (%r), using receive time",
                           event.get("timestamp"))
            received = datetime.now(timezone.utc)
        return cls(
            sender=str(event.get("originatingAddress") or event.get("address") or ""),
            body=str(event.get("body") or ""),
            received_at=received,
            external_id=str(event.get("_id") or ""),
        )


@dataclass
class ParsedCandidate:
    """A classifier's structured guess about a raw message."""
    amount: Decimal
    name: str = "Unknown Purchase"
    category: str = "Other"
    direction: str = "debit"  # debit|credit
    payment_method: str = ""
    reference_id: str = ""
    occurred_at: Optional[datetime] = None
    source_institution: str = ""
    merchant_domain: str = ""
    raw_text: str = ""
    category_confident: bool = False  # False when the classifier fell back to Other

    def to_payload(self) -> dict:
        """Transaction-creation payload in the ledger backend's field names."""
        occurred = self.occurred_at or datetime.now(timezone.utc)
        return {
            "name": self.name,
            "amount": float(self.amount),
            "category": self.category,
            "type": self.direction,
            "note": "Auto-detected from SMS",
            "is_auto": True,
            "transaction_date": occurred.isoformat(),
            "payment_method": self.payment_method or None,
            "reference_id": self.reference_id or None,
            "source": self.source_institution or None,
            "sms_body": self.raw_text,
            "merchant_domain": self.merchant_domain or None,
            "image_address": logo_url(self.name, self.merchant_domain),
        }


@dataclass
class PendingEntry:
    """A creation payload held locally until it can be submitted."""
    payload: dict
    queued_at: int  # epoch ms, identity of the entry within the queue

    @property
    def reference_id(self) -> str:
        return str(self.payload.get("reference_id") or "")

    def to_dict(self) -> dict:
        return {"payload": self.payload, "queued_at": self.queued_at}

    @classmethod
    def from_dict(cls, data: dict) -> "PendingEntry":
        return cls(payload=dict(data.get("payload") or {}), queued_at=int(data.get("queued_at", 0)))


class Outcome(str, Enum):
    """Terminal branches of the per-message state machine."""
    DUPLICATE_DELIVERY = "duplicate_delivery"
    ALREADY_SEEN = "already_seen"
    NOT_A_TRANSACTION = "not_a_transaction"
    CLASSIFIER_ERROR = "classifier_error"
    ALREADY_RECORDED = "already_recorded"
    SUBMITTED = "submitted"
    QUEUED = "queued"
    QUEUE_FAILED = "queue_failed"  # could not be stored anywhere, left unmarked for the next sync


@dataclass
class IngestionResult:
    outcome: Outcome
    fingerprint: str = ""
    candidate: Optional[ParsedCandidate] = None
    transaction: Optional[dict] = None  # remote record when SUBMITTED
    message: Optional[RawMessage] = None


@dataclass
class SyncSummary:
    """Aggregate counts reported once per manual sync."""
    created: int = 0
    skipped_duplicate: int = 0
    flushed: int = 0
    flush_failed: int = 0
    queued: int = 0
    queue_failed: int = 0
    not_transactions: int = 0
    deferred: int = 0
    snapshot_fallback: bool = False  # True when remote list failed and the cache was used
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "skipped_duplicate": self.skipped_duplicate,
            "flushed": self.flushed,
            "flush_failed": self.flush_failed,
            "queued": self.queued,
            "queue_failed": self.queue_failed,
            "not_transactions": self.not_transactions,
            "deferred": self.deferred,
            "snapshot_fallback": self.snapshot_fallback,
            "errors": list(self.errors),
        }
