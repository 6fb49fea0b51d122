"""Environment variable loading and validation."""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

REQUIRED_VARS = [
    "LEDGER_API_BASE",
]


def _load_env():
    missing = [v for v in REQUIRED_VARS if not os.getenv(v)]
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        print("Copy .env.example to .env and fill in all values.", file=sys.stderr)
        sys.exit(1)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


_load_env()

# Ledger backend
LEDGER_API_BASE: str = os.environ["LEDGER_API_BASE"].rstrip("/")

# Anthropic (optional — without it the offline keyword parser is used)
ANTHROPIC_API_KEY: str = os.environ.get("ANTHROPIC_API_KEY", "")
CLASSIFIER_MODEL: str = os.environ.get("CLASSIFIER_MODEL", "claude-haiku-4-5-20251001")
CLASSIFIER_TIMEOUT: float = float(os.environ.get("CLASSIFIER_TIMEOUT", "20"))

# Shared secret for /api/v1/* endpoint protection on the foreground service
LEDGER_WEBHOOK_SECRET: str = os.environ.get("LEDGER_WEBHOOK_SECRET", "")

# Push relay for category-ask notifications (optional — logged only when unset)
NOTIFY_WEBHOOK_URL: str = os.environ.get("NOTIFY_WEBHOOK_URL", "")

# SMS Backup & Restore export directory, read by manual sync
SMS_BACKUP_DIR: str = os.environ.get("SMS_BACKUP_DIR", "")

# Local durable store (Docker vs local dev)
DATA_DIR: Path = Path(
    os.environ.get("DATA_DIR")
    or ("/app/data" if Path("/app/data").exists() else "data")
)

# Dedup / sync tunables
PROCESSED_SMS_CAPACITY: int = int(os.environ.get("PROCESSED_SMS_CAPACITY", "500"))
FINGERPRINT_BUCKET_SECONDS: int = int(os.environ.get("FINGERPRINT_BUCKET_SECONDS", "60"))
DEDUP_AMOUNT_DATE_ENABLED: bool = _env_bool("DEDUP_AMOUNT_DATE_ENABLED", True)
DEDUP_DAY_TOLERANCE: int = int(os.environ.get("DEDUP_DAY_TOLERANCE", "0"))
DEDUP_TIMEZONE: str = os.environ.get("DEDUP_TIMEZONE", "UTC")
SYNC_DAYS_BACK: int = int(os.environ.get("SYNC_DAYS_BACK", "7"))
SYNC_MAX_ITEMS: int = int(os.environ.get("SYNC_MAX_ITEMS", "30"))
SYNC_ITEM_DELAY: float = float(os.environ.get("SYNC_ITEM_DELAY", "1.5"))
