"""Local durable store — cached transactions, pending-sync queue, processed SMS ids.

Every key lives in its own JSON file under the data directory so the
foreground service and one-shot headless invocations can share state across
process restarts. Writes are atomic (write to a per-process .tmp then rename); there is no
cross-process lock, so concurrent read-modify-write is last-writer-wins.
"""

import json
import logging
import os
import time
from pathlib import Path

from smsledger.errors import StorageError
from smsledger.models import PendingEntry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File names
# ---------------------------------------------------------------------------

TRANSACTIONS_FILE = "transactions_cache.json"
PENDING_SYNC_FILE = "pending_sync.json"
PROCESSED_SMS_FILE = "processed_sms_ids.json"
LAST_SYNC_FILE = "last_sync_time.json"

DEFAULT_PROCESSED_CAPACITY = 500


class LocalStore:
    """JSON-file store shared by all ingestion entry points."""

    def __init__(self, data_dir: Path, processed_capacity: int = DEFAULT_PROCESSED_CAPACITY):
        self.data_dir = Path(data_dir)
        self.processed_capacity = processed_capacity

    # -----------------------------------------------------------------------
    # File I/O (atomic writes)
    # -----------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _load_json(self, name: str, default):
        """Load a JSON file. Missing file → default; unreadable or corrupt → StorageError."""
        filepath = self._path(name)
        try:
            if not filepath.exists():
                return default
            return json.loads(filepath.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to load {filepath}: {e}") from e

    def _save_json(self, name: str, data) -> None:
        """Save JSON atomically using tmp-file + rename."""
        filepath = self._path(name)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            tmp = filepath.with_name(f"{filepath.name}.{os.getpid()}.tmp")
            tmp.write_text(json.dumps(data, indent=2, default=str))
            tmp.replace(filepath)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to save {filepath}: {e}") from e

    # -----------------------------------------------------------------------
    # Cached transaction snapshot
    # -----------------------------------------------------------------------

    def cache_transactions(self, transactions: list[dict]) -> None:
        """Overwrite the cached snapshot wholesale and stamp the sync time."""
        try:
            self._save_json(TRANSACTIONS_FILE, transactions)
            self._save_json(LAST_SYNC_FILE, {"last_sync_time": int(time.time() * 1000)})
        except StorageError as e:
            logger.error("cache_transactions failed: %s", e)

    def load_cached_transactions(self) -> list[dict]:
        """Return the cached snapshot, or [] if nothing is cached or it can't be read."""
        try:
            data = self._load_json(TRANSACTIONS_FILE, [])
        except StorageError as e:
            logger.warning("load_cached_transactions failed: %s", e)
            return []
        return data if isinstance(data, list) else []

    def get_last_sync_time(self) -> int | None:
        """Epoch ms of the last successful snapshot fetch."""
        try:
            data = self._load_json(LAST_SYNC_FILE, {})
        except StorageError:
            return None
        value = data.get("last_sync_time") if isinstance(data, dict) else None
        return int(value) if value is not None else None

    # -----------------------------------------------------------------------
    # Pending-sync queue
    # -----------------------------------------------------------------------

    def _read_queue(self) -> list[dict]:
        data = self._load_json(PENDING_SYNC_FILE, [])
        return data if isinstance(data, list) else []

    def get_pending_queue(self) -> list[PendingEntry]:
        """All pending entries, oldest first. Raises StorageError if unreadable."""
        return [PendingEntry.from_dict(item) for item in self._read_queue()]

    def add_to_pending_queue(self, payload: dict) -> bool:
        """Append a creation payload. Returns False if its reference_id is already queued."""
        queue = self._read_queue()
        ref = str(payload.get("reference_id") or "")
        if ref and any(str(q.get("payload", {}).get("reference_id") or "") == ref for q in queue):
            logger.info("Skipping duplicate pending transaction: %s", ref)
            return False

        queued_at = int(time.time() * 1000)
        taken = {q.get("queued_at") for q in queue}
        while queued_at in taken:
            queued_at += 1

        queue.append(PendingEntry(payload=dict(payload), queued_at=queued_at).to_dict())
        self._save_json(PENDING_SYNC_FILE, queue)
        logger.info("Added to pending queue. Total: %d", len(queue))
        return True

    def remove_synced_from_queue(self, synced_queued_ats: list[int]) -> None:
        """Remove entries by queued_at identity; entries added since the read are kept."""
        synced = set(synced_queued_ats)
        if not synced:
            return
        queue = self._read_queue()
        remaining = [q for q in queue if q.get("queued_at") not in synced]
        self._save_json(PENDING_SYNC_FILE, remaining)

    def clear_pending_queue(self) -> None:
        self._save_json(PENDING_SYNC_FILE, [])

    # -----------------------------------------------------------------------
    # Processed SMS ids (bounded, oldest evicted first)
    # -----------------------------------------------------------------------

    def processed_ids(self) -> list[str]:
        data = self._load_json(PROCESSED_SMS_FILE, [])
        return data if isinstance(data, list) else []

    def is_sms_processed(self, sms_id: str) -> bool:
        return sms_id in self.processed_ids()

    def mark_sms_processed(self, sms_id: str) -> None:
        """Idempotent insert; trims to the newest `processed_capacity` ids."""
        ids = self.processed_ids()
        if sms_id in ids:
            return
        ids.append(sms_id)
        if len(ids) > self.processed_capacity:
            ids = ids[-self.processed_capacity:]
        self._save_json(PROCESSED_SMS_FILE, ids)
