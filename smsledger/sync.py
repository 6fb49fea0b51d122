"""Manual sync — flush the offline queue, then backfill recent bank SMS.

Serial and throttled on purpose: one manual tap must not burn through the
classifier's rate limit, so candidates are capped per run and processed one
at a time with a fixed delay. Candidates over the cap are left unmarked and
picked up by the next run.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from smsledger.dedup import KnownTransactions
from smsledger.errors import LedgerApiError, StorageError
from smsledger.models import Outcome, RawMessage, SyncSummary
from smsledger.pipeline import IngestionPipeline
from smsledger.tools.sms_backup import MessageSource

logger = logging.getLogger(__name__)

DEFAULT_DAYS_BACK = 7
DEFAULT_MAX_ITEMS = 30
DEFAULT_ITEM_DELAY = 1.5


class SyncFlow:

    def __init__(
        self,
        pipeline: IngestionPipeline,
        source: MessageSource,
        days_back: int = DEFAULT_DAYS_BACK,
        max_items: int = DEFAULT_MAX_ITEMS,
        item_delay: float = DEFAULT_ITEM_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pipeline = pipeline
        self.source = source
        self.days_back = days_back
        self.max_items = max_items
        self.item_delay = item_delay
        self._sleep = sleep

    @property
    def store(self):
        return self.pipeline.store

    async def run(self) -> SyncSummary:
        summary = SyncSummary()
        token = await self.pipeline.token_provider.get_token()

        await self._flush_queue(token, summary)

        candidates = await self._fetch_candidates(summary)
        batch, deferred = self._select(candidates)
        summary.deferred = deferred
        if deferred:
            logger.info("Sync capped at %d candidates, %d deferred to the next run",
                        self.max_items, deferred)

        if batch:
            known = await self._snapshot(token, summary)
            await self._process(batch, known, summary)

        logger.info("Sync complete: %s", summary.to_dict())
        return summary

    # -----------------------------------------------------------------------
    # Phase 1: pending queue
    # -----------------------------------------------------------------------

    async def _flush_queue(self, token: str | None, summary: SyncSummary) -> None:
        try:
            queue = self.store.get_pending_queue()
        except StorageError as e:
            logger.error("Could not read pending queue: %s", e)
            summary.errors.append("pending queue unreadable")
            return
        if not queue:
            return
        if not token:
            logger.warning("No auth token, leaving %d pending transactions queued", len(queue))
            summary.flush_failed = len(queue)
            return

        synced: list[int] = []
        for entry in queue:
            try:
                await self.pipeline.ledger.create_transaction(token, entry.payload)
                synced.append(entry.queued_at)
            except LedgerApiError as e:
                logger.warning("Pending transaction %s still failing: %s",
                               entry.reference_id or entry.queued_at, e)
                summary.flush_failed += 1

        try:
            self.store.remove_synced_from_queue(synced)
        except StorageError as e:
            # Created on the server but still queued: the next run resubmits them
            logger.error("Failed to remove %d synced entries from queue: %s", len(synced), e)
            summary.errors.append(f"pending queue not pruned, {len(synced)} created entries may be resubmitted")
            summary.flush_failed += len(synced)
            return
        summary.flushed = len(synced)
        logger.info("Flushed %d/%d pending transactions", len(synced), len(queue))

    # -----------------------------------------------------------------------
    # Phases 2-4: candidate window, pre-filter, cap
    # -----------------------------------------------------------------------

    async def _fetch_candidates(self, summary: SyncSummary) -> list[RawMessage]:
        try:
            return await self.source.get_recent_candidates(self.days_back)
        except Exception as e:
            logger.error("Failed to read recent SMS: %s", e)
            summary.errors.append("message source unavailable")
            return []

    def _select(self, candidates: list[RawMessage]) -> tuple[list[RawMessage], int]:
        """Drop already-processed and in-batch repeats, then cap. Returns (batch, deferred)."""
        processed = self.pipeline.dedup.processed_snapshot()
        unprocessed: list[RawMessage] = []
        batch_fps: set = set()
        for msg in candidates:
            fp = self.pipeline.dedup.fingerprint(msg)
            if fp in processed or fp in batch_fps:
                continue
            batch_fps.add(fp)
            unprocessed.append(msg)
        return unprocessed[:self.max_items], max(len(unprocessed) - self.max_items, 0)

    # -----------------------------------------------------------------------
    # Phase 5: one server snapshot for the whole batch
    # -----------------------------------------------------------------------

    async def _snapshot(self, token: str | None, summary: SyncSummary) -> KnownTransactions:
        tz_name = self.pipeline.dedup.tz_name
        if token:
            try:
                transactions = await self.pipeline.ledger.list_transactions(token)
                self.store.cache_transactions(transactions)
                return KnownTransactions.from_transactions(transactions, tz_name)
            except LedgerApiError as e:
                logger.warning("Could not fetch server transactions, using local cache: %s", e)
        summary.snapshot_fallback = True
        return self.pipeline.known_from_cache()

    # -----------------------------------------------------------------------
    # Phase 6: serial, throttled classification
    # -----------------------------------------------------------------------

    async def _process(self, batch: list[RawMessage], known: KnownTransactions, summary: SyncSummary) -> None:
        for i, msg in enumerate(batch):
            if i and self.item_delay > 0:
                await self._sleep(self.item_delay)
            result = await self.pipeline.handle_raw_message(msg, known=known, check_recent=False)
            if result.outcome == Outcome.SUBMITTED:
                summary.created += 1
            elif result.outcome == Outcome.QUEUED:
                summary.queued += 1
            elif result.outcome == Outcome.QUEUE_FAILED:
                summary.queue_failed += 1
            elif result.outcome in (Outcome.ALREADY_RECORDED, Outcome.ALREADY_SEEN):
                summary.skipped_duplicate += 1
            elif result.outcome in (Outcome.NOT_A_TRANSACTION, Outcome.CLASSIFIER_ERROR):
                summary.not_transactions += 1
