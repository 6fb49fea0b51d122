"""Bearer token resolution for the foreground service and headless invocations.

The foreground service keeps the session token in memory (pushed to it by the
app on login). Headless invocations have no in-memory context and read the
durable token file instead.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

TOKEN_FILE = "auth_token.json"


class MemoryTokenProvider:
    """In-memory token for the long-running foreground process."""

    def __init__(self, token: Optional[str] = None, fallback: "FileTokenStore | None" = None):
        self._token = token
        self.fallback = fallback

    def set_token(self, token: Optional[str]) -> None:
        self._token = token or None

    async def get_token(self) -> Optional[str]:
        if self._token:
            return self._token
        if self.fallback:
            return await self.fallback.get_token()
        return None

    async def refresh(self) -> Optional[str]:
        """Pick up a token another process wrote to the durable store."""
        if not self.fallback:
            return None
        token = await self.fallback.get_token()
        if token and token != self._token:
            self._token = token
            return token
        return None


class FileTokenStore:
    """Durable token store shared with the app's login flow (0600 JSON file)."""

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / TOKEN_FILE

    async def get_token(self) -> Optional[str]:
        try:
            if not self.path.exists():
                return None
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read token store: %s", e)
            return None
        token = data.get("token") if isinstance(data, dict) else None
        return token or None

    async def refresh(self) -> Optional[str]:
        return await self.get_token()

    def set_token(self, token: Optional[str]) -> None:
        """Save the token atomically; None clears it (logout)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps({"token": token}))
        os.chmod(tmp, 0o600)
        tmp.replace(self.path)
