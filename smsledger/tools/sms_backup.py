"""Historical SMS source — SMS Backup & Restore XML exports (sms-*.xml).

Used by manual sync to backfill bank alerts the live listener missed. Only
received messages that look like banking alerts are returned.
"""

import io
import logging
import re
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from smsledger.models import RawMessage

logger = logging.getLogger(__name__)

BOM_UTF8 = b"\xef\xbb\xbf"
BOM_UTF16_LE = b"\xff\xfe"
BOM_UTF16_BE = b"\xfe\xff"

INBOX_TYPE = "1"

# Common banking keywords (Indian bank alerts)
TRANSACTION_PATTERN = re.compile(
    r"debited|credited|withdrawn|deposited|paid|received|transaction|balance|INR|Rs\.?",
    re.IGNORECASE,
)


def looks_like_transaction(body: str) -> bool:
    return bool(body) and bool(TRANSACTION_PATTERN.search(body))


class MessageSource(ABC):

    @abstractmethod
    async def get_recent_candidates(self, days_back: int) -> list[RawMessage]:
        """Received banking-looking messages from the last `days_back` days, oldest first."""
        ...


def _read_xml_text(path: Path) -> str:
    """Decode with BOM detection; exports vary between UTF-8 and UTF-16."""
    raw = path.read_bytes()
    if raw.startswith(BOM_UTF8):
        return raw[len(BOM_UTF8):].decode("utf-8", errors="replace")
    if raw.startswith(BOM_UTF16_LE):
        return raw[len(BOM_UTF16_LE):].decode("utf-16-le", errors="replace")
    if raw.startswith(BOM_UTF16_BE):
        return raw[len(BOM_UTF16_BE):].decode("utf-16-be", errors="replace")
    return raw.decode("utf-8", errors="replace")


def parse_sms_file(path: Path) -> list[RawMessage]:
    """Parse received <sms> nodes from one export. Returns [] on unreadable files."""
    messages: list[RawMessage] = []
    try:
        content = re.sub(r"<\?xml-stylesheet[^?]*\?>", "", _read_xml_text(path))
        for _event, el in ET.iterparse(io.StringIO(content), events=("end",)):
            if el.tag.lower() != "sms":
                continue
            if el.get("type", "") == INBOX_TYPE:
                try:
                    ts = int(el.get("date") or "0")
                except ValueError:
                    ts = 0
                if ts > 0:
                    messages.append(RawMessage(
                        sender=el.get("address") or "",
                        body=el.get("body") or "",
                        received_at=datetime.fromtimestamp(ts / 1000, tz=timezone.utc),
                        external_id=el.get("_id") or "",
                    ))
            el.clear()
    except ET.ParseError as e:
        logger.error("XML parse error in %s: %s", path.name, e)
    except OSError as e:
        logger.error("File read error %s: %s", path.name, e)
        return []

    logger.info("Parsed %d received SMS from %s", len(messages), path.name)
    return messages


class XmlBackupSource(MessageSource):

    def __init__(self, directory: Path, clock: Callable[[], datetime] | None = None):
        self.directory = Path(directory)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_recent_candidates(self, days_back: int) -> list[RawMessage]:
        if not self.directory.is_dir():
            logger.warning("SMS backup directory not found: %s", self.directory)
            return []

        since = self._clock() - timedelta(days=days_back)
        seen: set = set()
        results: list[RawMessage] = []
        for path in sorted(self.directory.glob("sms-*.xml")):
            for msg in parse_sms_file(path):
                # Overlapping exports repeat the same message
                key = (msg.received_at, msg.sender, msg.body)
                if key in seen:
                    continue
                seen.add(key)
                if msg.received_at >= since and looks_like_transaction(msg.body):
                    results.append(msg)

        results.sort(key=lambda m: m.received_at)
        logger.info("Found %d candidate bank SMS in the last %d days", len(results), days_back)
        return results
