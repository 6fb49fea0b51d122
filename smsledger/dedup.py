"""Deduplication engine — SMS fingerprints, processed-set checks, transaction matching.

Three layers, cheapest first:
1. RecentBodyFilter: the platform sometimes fires several native events for one
   SMS within a few seconds. Catch those by body prefix before anything else.
2. Processed SMS set: have we already run this physical message through the
   pipeline (any outcome)? Checked before the classifier is called.
3. Known transactions: has the backend already recorded this bank event?
   Reference id match is authoritative; amount + calendar day is a heuristic.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import date, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from smsledger.errors import StorageError
from smsledger.models import ParsedCandidate, RawMessage, parse_timestamp, to_amount
from smsledger.storage import LocalStore

logger = logging.getLogger(__name__)

FINGERPRINT_BODY_CHARS = 40
DEFAULT_BUCKET_SECONDS = 60

RECENT_BODY_CHARS = 80
RECENT_WINDOW_SECONDS = 3.0
RECENT_CAPACITY = 50


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------

def fingerprint(message: RawMessage, bucket_seconds: int = DEFAULT_BUCKET_SECONDS) -> str:
    """Stable identity for a physical SMS: sender, received-at bucket, body prefix.

    Pure function of serializable fields, so the foreground service, a headless
    invocation and a backup-file read of the same message agree. The platform
    message id is not used: live events and backup exports don't share it.
    """
    sender = (message.sender or "").strip().lower()
    received = message.received_at
    if received.tzinfo is None:
        received = received.replace(tzinfo=timezone.utc)
    bucket = int(received.timestamp()) // max(bucket_seconds, 1)
    body = " ".join((message.body or "").split())[:FINGERPRINT_BODY_CHARS]
    digest = hashlib.sha256(f"{sender}|{bucket}|{body}".encode("utf-8")).hexdigest()
    return f"sms:{digest[:32]}"


# ---------------------------------------------------------------------------
# Near-duplicate delivery filter (in-memory, per process)
# ---------------------------------------------------------------------------

class RecentBodyFilter:
    """Time-bounded map of body prefix → last seen, for duplicate native events."""

    def __init__(
        self,
        window_seconds: float = RECENT_WINDOW_SECONDS,
        capacity: int = RECENT_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.capacity = capacity
        self._clock = clock
        self._recent: dict[str, float] = {}

    def is_duplicate(self, body: str) -> bool:
        """True if the same body prefix was seen within the window. Records the sighting."""
        key = (body or "")[:RECENT_BODY_CHARS]
        now = self._clock()
        last = self._recent.get(key)
        if last is not None and now - last < self.window_seconds:
            return True
        self._recent[key] = now
        if len(self._recent) > self.capacity:
            oldest = min(self._recent, key=self._recent.get)
            del self._recent[oldest]
        return False

    def __len__(self) -> int:
        return len(self._recent)


# ---------------------------------------------------------------------------
# Known server transactions (one snapshot per batch)
# ---------------------------------------------------------------------------

def _transaction_day(txn: dict, tz: ZoneInfo) -> Optional[date]:
    for key in ("transaction_date", "date", "createdAt", "created_at"):
        dt = parse_timestamp(txn.get(key))
        if dt:
            return dt.astimezone(tz).date()
    return None


@dataclass
class KnownTransactions:
    """Lookup sets built once from a list of remote (or cached) transactions."""
    reference_ids: set = field(default_factory=set)  # lower-cased
    amount_days: dict = field(default_factory=dict)  # Decimal → set[date]

    @classmethod
    def from_transactions(cls, transactions: list[dict], tz_name: str = "UTC") -> "KnownTransactions":
        tz = ZoneInfo(tz_name)
        known = cls()
        for txn in transactions or []:
            if not isinstance(txn, dict):
                continue
            ref = str(txn.get("reference_id") or "").strip().lower()
            if ref:
                known.reference_ids.add(ref)
            amount = to_amount(txn.get("amount"))
            day = _transaction_day(txn, tz)
            if amount is not None and day is not None:
                known.amount_days.setdefault(amount, set()).add(day)
        return known

    def __len__(self) -> int:
        return len(self.reference_ids) + sum(len(d) for d in self.amount_days.values())


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DedupEngine:
    """Message-level and transaction-level duplicate checks over a LocalStore.

    Checks never write to the store; only mark_message_seen does. A check that
    can't read the store answers "not a duplicate" so a storage glitch can't
    silently drop a real transaction.
    """

    def __init__(
        self,
        store: LocalStore,
        amount_date_enabled: bool = True,
        day_tolerance: int = 0,
        tz_name: str = "UTC",
        bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
    ):
        self.store = store
        self.amount_date_enabled = amount_date_enabled
        self.day_tolerance = max(day_tolerance, 0)
        self.tz_name = tz_name
        self.bucket_seconds = bucket_seconds

    def fingerprint(self, message: RawMessage) -> str:
        return fingerprint(message, self.bucket_seconds)

    def is_message_already_seen(self, fp: str) -> bool:
        try:
            return self.store.is_sms_processed(fp)
        except StorageError as e:
            logger.warning("Processed-set read failed, treating %s as unseen: %s", fp, e)
            return False

    def processed_snapshot(self) -> set[str]:
        """Whole processed set for batch pre-filtering; empty on read failure."""
        try:
            return set(self.store.processed_ids())
        except StorageError as e:
            logger.warning("Processed-set read failed, treating all as unseen: %s", e)
            return set()

    def mark_message_seen(self, fp: str) -> None:
        try:
            self.store.mark_sms_processed(fp)
        except StorageError as e:
            logger.error("Failed to mark %s as processed: %s", fp, e)

    def is_transaction_already_recorded(
        self,
        candidate: ParsedCandidate,
        known: Optional[KnownTransactions],
    ) -> bool:
        """Reference id first (authoritative), then amount + day heuristic."""
        if not known:
            return False

        ref = (candidate.reference_id or "").strip().lower()
        if ref and ref in known.reference_ids:
            logger.info("Already recorded by reference id %s", candidate.reference_id)
            return True

        if not self.amount_date_enabled or candidate.occurred_at is None:
            return False

        days = known.amount_days.get(candidate.amount)
        if not days:
            return False
        day = candidate.occurred_at.astimezone(ZoneInfo(self.tz_name)).date()
        for known_day in days:
            if abs((known_day - day).days) <= self.day_tolerance:
                logger.info(
                    "Already recorded by amount+date heuristic: %s on %s", candidate.amount, day
                )
                return True
        return False
