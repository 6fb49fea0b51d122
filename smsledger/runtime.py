"""Component wiring for the foreground service and headless invocations.

Everything is constructed once per process here and passed down explicitly;
no ingestion state lives at module level.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from smsledger import config
from smsledger.auth import FileTokenStore, MemoryTokenProvider
from smsledger.dedup import DedupEngine, RecentBodyFilter
from smsledger.pipeline import ForegroundIngestor, IngestionPipeline
from smsledger.recording import RecordingGuard
from smsledger.storage import LocalStore
from smsledger.sync import SyncFlow
from smsledger.tools.classifier import AnthropicClassifier, Classifier, KeywordClassifier
from smsledger.tools.ledger import LedgerClient
from smsledger.tools.notify import LogNotifier, Notifier, WebhookNotifier
from smsledger.tools.sms_backup import XmlBackupSource

logger = logging.getLogger(__name__)


@dataclass
class Components:
    store: LocalStore
    pipeline: IngestionPipeline
    token_provider: object
    token_store: FileTokenStore
    foreground: Optional[ForegroundIngestor] = None
    sync: Optional[SyncFlow] = None
    webhook_secret: str = ""
    recorder: Optional[RecordingGuard] = None  # voice entry, injected by the host app


def build_classifier() -> Classifier:
    if config.ANTHROPIC_API_KEY:
        return AnthropicClassifier(
            api_key=config.ANTHROPIC_API_KEY,
            model=config.CLASSIFIER_MODEL,
            timeout=config.CLASSIFIER_TIMEOUT,
        )
    logger.warning("ANTHROPIC_API_KEY not set — using offline keyword classifier")
    return KeywordClassifier()


def build_notifier() -> Notifier:
    if config.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(config.NOTIFY_WEBHOOK_URL)
    return LogNotifier()


def _dedup(store: LocalStore) -> DedupEngine:
    return DedupEngine(
        store,
        amount_date_enabled=config.DEDUP_AMOUNT_DATE_ENABLED,
        day_tolerance=config.DEDUP_DAY_TOLERANCE,
        tz_name=config.DEDUP_TIMEZONE,
        bucket_seconds=config.FINGERPRINT_BUCKET_SECONDS,
    )


def build_foreground() -> Components:
    """Long-running service: in-memory token, duplicate-delivery filter, manual sync."""
    store = LocalStore(config.DATA_DIR, config.PROCESSED_SMS_CAPACITY)
    token_store = FileTokenStore(config.DATA_DIR)
    token_provider = MemoryTokenProvider(fallback=token_store)
    pipeline = IngestionPipeline(
        dedup=_dedup(store),
        classifier=build_classifier(),
        ledger=LedgerClient(config.LEDGER_API_BASE, refresher=token_provider.refresh),
        store=store,
        token_provider=token_provider,
        recent_filter=RecentBodyFilter(),
    )
    foreground = ForegroundIngestor(pipeline)
    foreground.load_displayed()
    sync = SyncFlow(
        pipeline,
        XmlBackupSource(config.SMS_BACKUP_DIR or config.DATA_DIR / "sms_backup"),
        days_back=config.SYNC_DAYS_BACK,
        max_items=config.SYNC_MAX_ITEMS,
        item_delay=config.SYNC_ITEM_DELAY,
    )
    return Components(
        store=store,
        pipeline=pipeline,
        token_provider=token_provider,
        token_store=token_store,
        foreground=foreground,
        sync=sync,
        webhook_secret=config.LEDGER_WEBHOOK_SECRET,
    )


def build_headless() -> Components:
    """One-shot invocation: durable token store, category notifications, no UI."""
    store = LocalStore(config.DATA_DIR, config.PROCESSED_SMS_CAPACITY)
    token_store = FileTokenStore(config.DATA_DIR)
    pipeline = IngestionPipeline(
        dedup=_dedup(store),
        classifier=build_classifier(),
        ledger=LedgerClient(config.LEDGER_API_BASE, refresher=token_store.refresh),
        store=store,
        token_provider=token_store,
        notifier=build_notifier(),
    )
    return Components(store=store, pipeline=pipeline, token_provider=token_store, token_store=token_store)
