"""Ingestion pipeline — one raw SMS in, exactly one terminal outcome out.

    RECEIVED -> duplicate delivery / already seen              -> end
             -> CLASSIFYING -> not a transaction / classifier error -> mark seen, end
             -> CANDIDATE_READY -> already recorded           -> mark seen, end
             -> SUBMITTING -> submitted (notify listeners)     -> mark seen, end
                           -> queued (pending queue)           -> mark seen, end
                           -> queue failed (nothing stored)    -> end, retried by next sync

The same IngestionPipeline runs in the foreground service and in headless
invocations; only the token provider, notifier and recent-body filter differ.
"""

import inspect
import logging
from collections import deque
from typing import Callable, Optional

from smsledger.dedup import DedupEngine, KnownTransactions, RecentBodyFilter
from smsledger.errors import AuthUnavailableError, ClassifierError, LedgerApiError, StorageError
from smsledger.models import IngestionResult, Outcome, ParsedCandidate, RawMessage
from smsledger.storage import LocalStore
from smsledger.tools.classifier import Classifier
from smsledger.tools.ledger import LedgerClient, transaction_id
from smsledger.tools.notify import Notifier

logger = logging.getLogger(__name__)

Listener = Callable[[IngestionResult], object]

# Outcomes that listeners hear about (foreground confirmation / failure signal)
LISTENER_OUTCOMES = {Outcome.SUBMITTED, Outcome.QUEUED}


class IngestionPipeline:

    def __init__(
        self,
        dedup: DedupEngine,
        classifier: Classifier,
        ledger: LedgerClient,
        store: LocalStore,
        token_provider,
        notifier: Optional[Notifier] = None,
        recent_filter: Optional[RecentBodyFilter] = None,
    ):
        self.dedup = dedup
        self.classifier = classifier
        self.ledger = ledger
        self.store = store
        self.token_provider = token_provider
        self.notifier = notifier
        self.recent_filter = recent_filter
        self._listeners: list[Listener] = []

    # -----------------------------------------------------------------------
    # Listener registry
    # -----------------------------------------------------------------------

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register a callback for SUBMITTED/QUEUED results. Returns an unsubscribe function."""
        self._listeners.append(callback)
        logger.info("Ingestion listener added. Total listeners: %d", len(self._listeners))
        return lambda: self.remove_listener(callback)

    def remove_listener(self, callback: Listener) -> None:
        self._listeners = [cb for cb in self._listeners if cb is not callback]

    async def _notify_listeners(self, result: IngestionResult) -> None:
        for callback in list(self._listeners):
            try:
                ret = callback(result)
                if inspect.isawaitable(ret):
                    await ret
            except Exception:
                logger.exception("Error in ingestion listener callback")

    # -----------------------------------------------------------------------
    # Per-message state machine
    # -----------------------------------------------------------------------

    def known_from_cache(self) -> KnownTransactions:
        """Known server state for the single-message path: the cached snapshot."""
        return KnownTransactions.from_transactions(
            self.store.load_cached_transactions(), self.dedup.tz_name
        )

    async def handle_raw_message(
        self,
        message: RawMessage,
        known: Optional[KnownTransactions] = None,
        on_candidate: Optional[Callable[[ParsedCandidate], None]] = None,
        check_recent: bool = True,
    ) -> IngestionResult:
        """Drive one message to a terminal outcome. Never raises.

        check_recent=False skips the duplicate-delivery filter; batch callers
        replay distinct historical messages that may share a body.
        """
        if check_recent and self.recent_filter and self.recent_filter.is_duplicate(message.body):
            logger.info("Duplicate SMS event from %s, skipping", message.sender)
            return IngestionResult(Outcome.DUPLICATE_DELIVERY, message=message)

        fp = self.dedup.fingerprint(message)
        if self.dedup.is_message_already_seen(fp):
            logger.info("SMS already processed, skipping: %s", fp)
            return IngestionResult(Outcome.ALREADY_SEEN, fingerprint=fp, message=message)

        candidate, outcome = await self._classify(message)
        if outcome is not None:
            self.dedup.mark_message_seen(fp)
            return IngestionResult(outcome, fingerprint=fp, message=message)

        if known is None:
            known = self.known_from_cache()
        if self.dedup.is_transaction_already_recorded(candidate, known):
            self.dedup.mark_message_seen(fp)
            return IngestionResult(
                Outcome.ALREADY_RECORDED, fingerprint=fp, candidate=candidate, message=message
            )

        if on_candidate:
            try:
                on_candidate(candidate)
            except Exception:
                logger.exception("Error in on_candidate hook")

        result = await self._submit(candidate, fp, message)
        if result.outcome == Outcome.QUEUE_FAILED:
            return result
        self.dedup.mark_message_seen(fp)
        if result.outcome in LISTENER_OUTCOMES:
            await self._notify_listeners(result)
        if result.outcome == Outcome.SUBMITTED:
            await self._maybe_request_category(result)
        return result

    async def _classify(self, message: RawMessage) -> tuple[Optional[ParsedCandidate], Optional[Outcome]]:
        """Returns (candidate, None) when ready to submit, else (None, terminal outcome)."""
        try:
            candidate = await self.classifier.classify(message.body, message.sender)
        except ClassifierError as e:
            logger.warning("Classifier failed for SMS from %s: %s", message.sender, e)
            return None, Outcome.CLASSIFIER_ERROR
        except Exception:
            logger.exception("Unexpected classifier error for SMS from %s", message.sender)
            return None, Outcome.CLASSIFIER_ERROR

        if candidate is None or candidate.amount is None or candidate.amount <= 0:
            logger.info("SMS from %s is not a financial transaction", message.sender)
            return None, Outcome.NOT_A_TRANSACTION

        if candidate.occurred_at is None:
            candidate.occurred_at = message.received_at
        if not candidate.raw_text:
            candidate.raw_text = message.body
        return candidate, None

    async def _require_token(self) -> str:
        token = await self.token_provider.get_token()
        if not token:
            raise AuthUnavailableError("No auth token available")
        return token

    async def _submit(self, candidate: ParsedCandidate, fp: str, message: RawMessage) -> IngestionResult:
        payload = candidate.to_payload()
        try:
            token = await self._require_token()
            created = await self.ledger.create_transaction(token, payload)
        except AuthUnavailableError:
            logger.warning("No auth token, queuing transaction for later sync")
            return self._queue(payload, candidate, fp, message)
        except LedgerApiError as e:
            logger.warning("Ledger API failed, queuing locally: %s", e)
            return self._queue(payload, candidate, fp, message)

        logger.info("Transaction created: %s (%s %s)", transaction_id(created) or "?",
                    candidate.name, candidate.amount)
        return IngestionResult(
            Outcome.SUBMITTED, fingerprint=fp, candidate=candidate,
            transaction=created, message=message,
        )

    def _queue(self, payload: dict, candidate: ParsedCandidate, fp: str, message: RawMessage) -> IngestionResult:
        try:
            self.store.add_to_pending_queue(payload)
        except StorageError as e:
            logger.error("Failed to queue transaction %s, leaving SMS unprocessed: %s",
                         candidate.reference_id or fp, e)
            return IngestionResult(Outcome.QUEUE_FAILED, fingerprint=fp, candidate=candidate, message=message)
        return IngestionResult(Outcome.QUEUED, fingerprint=fp, candidate=candidate, message=message)

    async def _maybe_request_category(self, result: IngestionResult) -> None:
        """Ask the user for a category when the classifier wasn't confident (at most once)."""
        if not self.notifier or result.candidate.category_confident:
            return
        txn_id = transaction_id(result.transaction)
        if not txn_id:
            return
        try:
            await self.notifier.request_category(txn_id, result.candidate.name, result.candidate.amount)
        except Exception:
            logger.exception("Category notification failed for %s", txn_id)


# ---------------------------------------------------------------------------
# Foreground variant
# ---------------------------------------------------------------------------

MAX_DISPLAYED = 100

SIGNAL_TEXT = {
    Outcome.SUBMITTED: ("success", "Transaction saved"),
    Outcome.QUEUED: ("info", "Saved offline — will sync later"),
    Outcome.QUEUE_FAILED: ("error", "Could not save transaction — will retry on next sync"),
}


class ForegroundIngestor:
    """Live listener path: in-memory token, optimistic list updates, per-message signal."""

    def __init__(self, pipeline: IngestionPipeline):
        self.pipeline = pipeline
        self.displayed: list[dict] = []
        self.signals: deque = deque(maxlen=20)

    def load_displayed(self) -> None:
        """Seed the displayed list from the offline snapshot."""
        self.displayed = list(self.pipeline.store.load_cached_transactions())[:MAX_DISPLAYED]

    def _prepend_optimistic(self, candidate: ParsedCandidate) -> None:
        entry = {**candidate.to_payload(), "pending": True}
        self.displayed.insert(0, entry)
        del self.displayed[MAX_DISPLAYED:]

    def _settle(self, result: IngestionResult) -> None:
        """Swap the optimistic row for the server record once confirmed."""
        if result.outcome != Outcome.SUBMITTED or not result.transaction:
            return
        ref = result.candidate.reference_id
        for i, row in enumerate(self.displayed):
            if row.get("pending") and row.get("sms_body") == result.candidate.raw_text \
                    and (row.get("reference_id") or "") == (ref or ""):
                self.displayed[i] = result.transaction
                return

    async def on_sms_event(self, event: dict) -> dict:
        """Handle one platform event; returns the outcome and a lightweight UI signal."""
        message = RawMessage.from_platform_event(event)
        logger.info("SMS received from %s", message.sender)
        result = await self.pipeline.handle_raw_message(message, on_candidate=self._prepend_optimistic)
        self._settle(result)

        signal = None
        if result.outcome in SIGNAL_TEXT:
            level, text = SIGNAL_TEXT[result.outcome]
            signal = {"level": level, "text": f"{text}: {result.candidate.name} ₹{result.candidate.amount}"}
            self.signals.append(signal)
        return {
            "outcome": result.outcome.value,
            "fingerprint": result.fingerprint,
            "transaction_id": transaction_id(result.transaction),
            "signal": signal,
        }
